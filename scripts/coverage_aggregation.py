#!/usr/bin/env python3
"""
Coverage Aggregation

Turns intersection fragments into one coverage record per watershed:

    total_area         area of the (dissolved) watershed polygon
    protected_area     area of the union of its protected fragments
    percent_protected  round(100 * protected_area / total_area), 0-100

Both areas are measured with the same function in the same projected CRS.
The two fill rules below are kept as named functions because they change
what the regression sees.
"""

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.ops import unary_union

from coverage_config import WATERSHED_ID
from coverage_errors import JoinIntegrityError
from watershed_geometry_utils import extract_polygons, polygon_areas, require_projected

COVERAGE_COLUMNS = ['total_area', 'protected_area', 'percent_protected']


def fill_missing_protected_area(protected_area):
    """Watersheds with no intersecting protected area have protected_area 0"""
    return protected_area.fillna(0.0)


def percent_protected_policy(protected_area, total_area):
    """
    Percent of a watershed's area that is protected

    round(100 * protected / total) to whole percent, clipped to [0, 100]
    so floating point overshoot on fully covered watersheds stays at 100.
    A missing protected area or a zero/undefined total gives 0.

    Args:
        protected_area: Series of protected areas
        total_area: Series of total areas (same index)

    Returns:
        Series of float percentages, never null
    """
    protected_area = pd.to_numeric(protected_area, errors='coerce')
    total_area = pd.to_numeric(total_area, errors='coerce')

    usable = total_area.notna() & (total_area > 0) & protected_area.notna()
    ratio = pd.Series(0.0, index=total_area.index)
    ratio[usable] = 100.0 * protected_area[usable] / total_area[usable]

    return ratio.round(0).clip(lower=0.0, upper=100.0)


def dissolve_watersheds(watersheds, id_column=WATERSHED_ID):
    """
    Merge rows that share a watershed id into a single geometry

    Args:
        watersheds: GeoDataFrame, possibly with several rows per id
        id_column: Watershed identifier column

    Returns:
        GeoDataFrame with one row per id; other columns keep their first value
    """
    if watersheds[id_column].is_unique:
        return watersheds.copy()

    duplicated = int(watersheds[id_column].duplicated().sum())
    print(f"   Merging {duplicated} extra polygons that share a watershed id")

    dissolved = watersheds.dissolve(by=id_column, as_index=False, aggfunc='first')
    dissolved[dissolved.geometry.name] = dissolved.geometry.apply(extract_polygons)
    return dissolved


def union_fragments(fragments, crs, id_column=WATERSHED_ID):
    """
    Union polygonal fragments per watershed

    Overlapping protected areas inside one watershed collapse into a single
    geometry here, so their shared area is only counted once.

    Args:
        fragments: GeoDataFrame from intersect_watersheds_with_protected
        crs: Projected CRS the fragments are in
        id_column: Watershed identifier column

    Returns:
        GeoDataFrame with one row per watershed: id, unit_count, geometry
    """
    target = require_projected(fragments, crs, 'fragments')

    polygonal = fragments[fragments['is_polygonal'].astype(bool)]
    records = []
    for watershed_id, group in polygonal.groupby(id_column, sort=True):
        merged = extract_polygons(unary_union(group.geometry.tolist()))
        records.append({
            id_column: watershed_id,
            'unit_count': len(group),
            'geometry': merged,
        })

    return gpd.GeoDataFrame(pd.DataFrame(records, columns=[id_column, 'unit_count', 'geometry']),
                            geometry='geometry', crs=target)


def check_coverage_integrity(expected_ids, coverage, id_column=WATERSHED_ID):
    """Exactly one coverage record per expected watershed id, or JoinIntegrityError"""
    expected = set(expected_ids)
    counts = coverage[id_column].value_counts()

    missing = sorted(expected - set(counts.index), key=str)
    if missing:
        raise JoinIntegrityError(
            f"{len(missing)} watersheds have no coverage record",
            stage='coverage_aggregation', identifiers=missing)

    duplicated = sorted(counts[counts > 1].index, key=str)
    if duplicated:
        raise JoinIntegrityError(
            f"{len(duplicated)} watersheds have more than one coverage record",
            stage='coverage_aggregation', identifiers=duplicated)

    unexpected = sorted(set(counts.index) - expected, key=str)
    if unexpected:
        raise JoinIntegrityError(
            f"{len(unexpected)} coverage records belong to no input watershed",
            stage='coverage_aggregation', identifiers=unexpected)


def build_coverage_records(watersheds, fragments, crs, id_column=WATERSHED_ID,
                           keep_columns=None):
    """
    Build the per-watershed coverage table

    Args:
        watersheds: Validated, filtered GeoDataFrame of watershed polygons
        fragments: GeoDataFrame from intersect_watersheds_with_protected
        crs: Projected CRS for both area calculations
        id_column: Watershed identifier column
        keep_columns: Extra watershed columns to carry (e.g. the name)

    Returns:
        Tuple of (coverage DataFrame, protected-union GeoDataFrame)
    """
    print("📐 Aggregating protected coverage per watershed...")

    dissolved = dissolve_watersheds(watersheds, id_column)
    keep_columns = [c for c in (keep_columns or []) if c in dissolved.columns and c != id_column]

    totals = pd.DataFrame({
        id_column: dissolved[id_column].to_numpy(),
        'total_area': polygon_areas(dissolved, crs, 'watersheds').to_numpy(),
    })
    for column in keep_columns:
        totals[column] = dissolved[column].to_numpy()

    unions = union_fragments(fragments, crs, id_column)
    protected = pd.DataFrame({
        id_column: unions[id_column].to_numpy(),
        'protected_area': polygon_areas(unions, crs, 'protected union').to_numpy()
        if len(unions) else np.array([], dtype=float),
    })
    if protected.empty:
        protected[id_column] = protected[id_column].astype(totals[id_column].dtype)

    try:
        coverage = totals.merge(protected, on=id_column, how='left', validate='one_to_one')
    except pd.errors.MergeError as e:
        raise JoinIntegrityError(f"Coverage join is not one-to-one: {e}",
                                 stage='coverage_aggregation')

    orphans = sorted(set(protected[id_column]) - set(totals[id_column]), key=str)
    if orphans:
        raise JoinIntegrityError(
            f"{len(orphans)} protected fragments belong to no retained watershed",
            stage='coverage_aggregation', identifiers=orphans)

    no_overlap = int(coverage['protected_area'].isna().sum())
    coverage['protected_area'] = fill_missing_protected_area(coverage['protected_area'])
    coverage['percent_protected'] = percent_protected_policy(
        coverage['protected_area'], coverage['total_area'])

    check_coverage_integrity(dissolved[id_column].unique(), coverage, id_column)

    coverage = coverage[[id_column] + keep_columns + COVERAGE_COLUMNS]

    print(f"   Coverage records: {len(coverage)}")
    print(f"   Watersheds with no protected overlap: {no_overlap}")
    if len(coverage):
        print(f"   Median percent protected: {coverage['percent_protected'].median():.0f}%")

    return coverage, unions
