#!/usr/bin/env python3
"""
Protected Area Overlay

Intersects watershed polygons with protected-area polygons. Each
intersecting (watershed, protected area) pair becomes one fragment row;
fragments are unioned per watershed later, never summed, so overlapping
holdings are only counted once.
"""

import geopandas as gpd
import pandas as pd
from tqdm import tqdm

from coverage_config import PROTECTED_NAME, WATERSHED_ID
from watershed_geometry_utils import POLYGONAL_TYPES, extract_polygons, require_projected

FRAGMENT_COLUMNS = ['protected_index', 'is_polygonal', 'fragment_area']


def intersect_watersheds_with_protected(watersheds, protected, crs, id_column=WATERSHED_ID,
                                        name_column=PROTECTED_NAME, show_progress=True):
    """
    Compute intersection fragments between watersheds and protected areas

    Candidate pairs come from the protected layer's spatial index and are
    confirmed with an exact intersects test before the intersection is cut.

    Args:
        watersheds: Validated GeoDataFrame of watershed polygons
        protected: Validated, filtered GeoDataFrame of protected-area polygons
        crs: Projected CRS both layers must already be in
        id_column: Watershed identifier column
        name_column: Protected-area name column (optional in the input)
        show_progress: Show a tqdm progress bar over watersheds

    Returns:
        GeoDataFrame with one row per intersecting pair: watershed id,
        protected-area name, intersection geometry, is_polygonal flag and
        fragment_area (zero for point/line intersections)
    """
    require_projected(watersheds, crs, 'watersheds')
    target = require_projected(protected, crs, 'protected areas')

    columns = [id_column, name_column] + FRAGMENT_COLUMNS + ['geometry']
    records = []

    if len(watersheds) and len(protected):
        protected_geoms = protected.geometry.reset_index(drop=True)
        protected_names = (protected[name_column].reset_index(drop=True)
                           if name_column in protected.columns
                           else pd.Series([None] * len(protected)))
        protected_index = protected.index.to_list()
        spatial_index = protected.sindex

        rows = zip(watersheds[id_column].tolist(), watersheds.geometry.tolist())
        for watershed_id, ws_geom in tqdm(rows, total=len(watersheds),
                                          desc="Intersecting watersheds",
                                          disable=not show_progress):
            if ws_geom is None or ws_geom.is_empty:
                continue

            candidates = spatial_index.query(ws_geom, predicate='intersects')
            for pos in sorted(candidates):
                fragment = ws_geom.intersection(protected_geoms.iloc[pos])
                if fragment.is_empty:
                    continue

                polygonal = extract_polygons(fragment)
                records.append({
                    id_column: watershed_id,
                    name_column: protected_names.iloc[pos],
                    'protected_index': protected_index[pos],
                    'is_polygonal': fragment.geom_type in POLYGONAL_TYPES or not polygonal.is_empty,
                    'fragment_area': polygonal.area,
                    'geometry': fragment,
                })

    fragments = gpd.GeoDataFrame(pd.DataFrame(records, columns=columns),
                                 geometry='geometry', crs=target)

    touched = fragments[id_column].nunique()
    print(f"✂️  Overlay: {len(fragments)} intersection fragments across "
          f"{touched} of {len(watersheds)} watersheds")
    non_polygonal = int((~fragments['is_polygonal'].astype(bool)).sum())
    if non_polygonal:
        print(f"   {non_polygonal} fragments are points/lines and carry no area")

    return fragments
