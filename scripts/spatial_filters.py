#!/usr/bin/env python3
"""
Spatial Filters

Selects the watershed polygons that have population records and the
protected areas that were in place for the whole observation window.
"""

import pandas as pd

from coverage_config import (
    ADULT_LIFE_STAGE,
    DEFAULT_CUTOFF_YEAR,
    LIFE_STAGE,
    PROTECTED_YEAR,
    UNKNOWN_YEAR_SENTINELS,
    WATERSHED_ID,
    validate_year,
)


def observed_watershed_ids(observations, id_column=WATERSHED_ID, life_stage=ADULT_LIFE_STAGE):
    """Set of watershed ids with at least one observation at the given life stage"""
    if LIFE_STAGE in observations.columns:
        observations = observations[observations[LIFE_STAGE] == life_stage]
    return set(observations[id_column].dropna().unique())


def filter_watersheds_by_observations(watersheds, observed_ids, id_column=WATERSHED_ID):
    """
    Keep only watersheds that have at least one population observation

    Args:
        watersheds: GeoDataFrame of watershed polygons
        observed_ids: Iterable of watershed ids present in the population table
        id_column: Watershed identifier column

    Returns:
        GeoDataFrame of retained watersheds
    """
    observed_ids = set(observed_ids)
    mask = watersheds[id_column].isin(observed_ids)
    retained = watersheds[mask].copy()

    candidates = watersheds[id_column].nunique()
    kept = retained[id_column].nunique()
    print(f"📍 Watersheds with population records: {kept} of {candidates} candidates")

    unmatched = observed_ids - set(watersheds[id_column].dropna().unique())
    if unmatched:
        print(f"   ⚠️  {len(unmatched)} observed ids have no watershed polygon")

    return retained


def unknown_year_mask(years):
    """True where an establishment year is missing, non-numeric or a sentinel"""
    numeric = pd.to_numeric(years, errors='coerce')
    return numeric.isna() | numeric.isin(UNKNOWN_YEAR_SENTINELS)


def missing_year_fraction(protected, year_column=PROTECTED_YEAR):
    """Share of protected areas with an unknown establishment year"""
    if len(protected) == 0:
        return 0.0
    return float(unknown_year_mask(protected[year_column]).mean())


def filter_protected_areas_by_year(protected, cutoff_year=DEFAULT_CUTOFF_YEAR,
                                   year_column=PROTECTED_YEAR):
    """
    Keep protected areas established before the cutoff year

    Areas with an unknown establishment year are kept: they are more likely
    old holdings with incomplete records than recent acquisitions.

    Args:
        protected: GeoDataFrame of protected-area polygons
        cutoff_year: Areas established in or after this year are dropped
        year_column: Establishment year column

    Returns:
        GeoDataFrame of retained protected areas
    """
    cutoff_year = validate_year(cutoff_year, 'cutoff_year')

    unknown = unknown_year_mask(protected[year_column])
    years = pd.to_numeric(protected[year_column], errors='coerce')
    mask = unknown | (years < cutoff_year)

    retained = protected[mask].copy()

    print(f"🏞️  Protected areas established before {cutoff_year} (or unknown): "
          f"{len(retained)} of {len(protected)}")
    print(f"   Unknown establishment year: {int(unknown.sum())} "
          f"({missing_year_fraction(protected, year_column) * 100:.1f}%)")

    return retained
