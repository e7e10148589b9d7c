#!/usr/bin/env python3
"""
Watershed Geometry Utilities

Shared functions for repairing invalid polygons and keeping every layer in
one projected CRS before any overlay or area calculation.

Common defects in the watershed and CPAD layers are self-intersections
(bow-tie rings), duplicate vertices and ring orientation errors. Repairs
keep every polygonal piece so no area is lost; a polygon that is empty or
degenerate after repair is dropped and reported instead of aborting the run.
"""

import geopandas as gpd
from pyproj import CRS
from pyproj.exceptions import CRSError
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union
from shapely.validation import explain_validity, make_valid

from coverage_errors import ConfigurationError, DataQualityError

POLYGONAL_TYPES = ('Polygon', 'MultiPolygon')


def extract_polygons(geom):
    """Return the polygonal part of a geometry (empty Polygon if there is none)"""
    if geom is None or geom.is_empty:
        return Polygon()

    if geom.geom_type in POLYGONAL_TYPES:
        return geom

    if hasattr(geom, 'geoms'):
        polygons = []
        for part in geom.geoms:
            part = extract_polygons(part)
            if not part.is_empty:
                polygons.append(part)
        if not polygons:
            return Polygon()
        if len(polygons) == 1:
            return polygons[0]
        return unary_union(polygons)

    # Points and lines carry no area
    return Polygon()


def fix_geometry(geom):
    """
    Repair an invalid polygon without dropping area

    make_valid splits a self-intersecting ring into its pieces and may return
    a GeometryCollection with stray lines or points; all polygonal pieces are
    kept. buffer(0) is only used when make_valid itself fails.

    Args:
        geom: Shapely geometry (Polygon or MultiPolygon)

    Returns:
        Valid Polygon/MultiPolygon, or None if nothing polygonal survives
    """
    if geom is None or geom.is_empty:
        return None

    if geom.is_valid:
        return geom

    try:
        fixed_geom = make_valid(geom)
    except GEOSException:
        fixed_geom = geom.buffer(0)

    fixed_geom = extract_polygons(fixed_geom)

    if fixed_geom.is_empty or fixed_geom.area <= 0:
        return None

    if not fixed_geom.is_valid:
        fixed_geom = extract_polygons(fixed_geom.buffer(0))
        if fixed_geom.is_empty or not fixed_geom.is_valid:
            return None

    return fixed_geom


def repair_geometries(gdf, id_column, label='features'):
    """
    Repair every geometry in a GeoDataFrame

    Args:
        gdf: GeoDataFrame to repair (not modified)
        id_column: Column naming each feature, used in error reports
        label: Layer name for progress output

    Returns:
        Tuple of (repaired GeoDataFrame, list of DataQualityError for removed features)
    """
    invalid_mask = ~gdf.geometry.is_valid | gdf.geometry.is_empty | gdf.geometry.isna()
    invalid_count = int(invalid_mask.sum())

    print(f"🔧 Validating {len(gdf)} {label}...")
    if invalid_count == 0:
        print(f"   ✅ All geometries are valid")
        return gdf.copy(), []

    print(f"   ⚠️  Found {invalid_count} invalid or empty geometries")

    identifiers = gdf[id_column].tolist()
    invalid = invalid_mask.tolist()
    geometries = []
    failures = []
    keep = []
    fixed_count = 0

    for pos, geom in enumerate(gdf.geometry):
        if not invalid[pos]:
            geometries.append(geom)
            keep.append(pos)
            continue

        reason = explain_validity(geom) if geom is not None and not geom.is_empty else 'Empty geometry'
        fixed_geom = fix_geometry(geom)

        if fixed_geom is None:
            error = DataQualityError(
                f"Could not repair {label} geometry ({reason})",
                stage='geometry_validation',
                identifiers=[identifiers[pos]],
            )
            print(f"     ⚠️  Removed {identifiers[pos]} - could not fix geometry ({reason})")
            failures.append(error)
            geometries.append(geom)
            continue

        geometries.append(fixed_geom)
        keep.append(pos)
        fixed_count += 1

    repaired = gdf.copy()
    repaired[gdf.geometry.name] = gpd.GeoSeries(geometries, index=gdf.index, crs=gdf.crs)
    repaired = repaired.iloc[keep]

    print(f"   ✅ Fixed {fixed_count} geometries, removed {len(failures)} features")
    return repaired, failures


def projected_crs(crs):
    """Parse a CRS and make sure planar area formulas are valid in it"""
    if crs is None:
        raise ConfigurationError("No CRS given for area calculations", stage='crs')

    try:
        parsed = CRS.from_user_input(crs)
    except CRSError as e:
        raise ConfigurationError(f"Unrecognised CRS {crs!r}: {e}", stage='crs')

    if parsed.is_geographic or not parsed.is_projected:
        raise ConfigurationError(
            f"CRS {parsed.to_string()} is geographic; reproject to a planar CRS first",
            stage='crs', identifiers=[parsed.to_string()])

    return parsed


def to_projected_crs(gdf, crs, label='layer'):
    """
    Reproject a layer into the analysis CRS

    Args:
        gdf: GeoDataFrame with a CRS set
        crs: Target projected CRS
        label: Layer name for error messages

    Returns:
        GeoDataFrame in the target CRS
    """
    target = projected_crs(crs)

    if gdf.crs is None:
        raise ConfigurationError(f"{label} has no CRS; cannot reproject safely",
                                 stage='crs', identifiers=[label])

    if gdf.crs == target:
        return gdf.copy()

    print(f"   Reprojecting {label} from {gdf.crs.to_string()} to {target.to_string()}")
    return gdf.to_crs(target)


def require_projected(gdf, crs, label='layer'):
    """Fail fast unless a layer is already in the expected projected CRS"""
    target = projected_crs(crs)

    if gdf.crs is None:
        raise ConfigurationError(f"{label} has no CRS", stage='crs', identifiers=[label])

    if gdf.crs.is_geographic:
        raise ConfigurationError(
            f"{label} is in geographic CRS {gdf.crs.to_string()}; planar areas would be wrong",
            stage='crs', identifiers=[label])

    if gdf.crs != target:
        raise ConfigurationError(
            f"{label} is in {gdf.crs.to_string()}, expected {target.to_string()}",
            stage='crs', identifiers=[label])

    return target


def polygon_areas(gdf, crs, label='layer'):
    """Planar area of each row, in the CRS's native area unit"""
    require_projected(gdf, crs, label)
    return gdf.geometry.apply(lambda g: extract_polygons(g).area)


def as_multipolygon(geom):
    """Promote a Polygon to a one-part MultiPolygon for uniform GeoJSON output"""
    if geom is None or geom.is_empty:
        return MultiPolygon()
    if geom.geom_type == 'Polygon':
        return MultiPolygon([geom])
    return geom
