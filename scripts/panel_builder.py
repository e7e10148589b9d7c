#!/usr/bin/env python3
"""
Panel Builder

Builds the regression panel: one row per (unit, brood year, species) with
the aggregated population value and the parent watershed's percent
protected.

Aggregation rules:
- several estimation methods / metrics for the same group are averaged
- for whole-watershed totals, population sub-units are summed after that
- at population granularity every sub-unit gets its watershed's single
  percent_protected value; a watershed with two different values is a join
  bug and raises instead of being papered over
"""

import pandas as pd

from coverage_aggregation import fill_missing_protected_area, percent_protected_policy
from coverage_config import (
    ADULT_LIFE_STAGE,
    BROOD_YEAR,
    LIFE_STAGE,
    METRIC,
    PANEL_COLUMNS,
    POPULATION,
    SPECIES,
    VALUE,
    WATERSHED_ID,
)
from coverage_errors import ConfigurationError, DataQualityError, JoinIntegrityError


def select_adult_observations(observations, id_column=WATERSHED_ID,
                              life_stage=ADULT_LIFE_STAGE, metric=None):
    """
    Keep adult observations that can be joined to a watershed

    Args:
        observations: Population monitoring DataFrame
        id_column: Spatial join key column
        life_stage: Life stage to keep
        metric: Optional single metric type to keep (e.g. 'Spawner abundance')

    Returns:
        Filtered copy with numeric Value and integer Brood Year
    """
    required = [id_column, LIFE_STAGE, SPECIES, BROOD_YEAR, VALUE]
    missing_columns = [c for c in required if c not in observations.columns]
    if missing_columns:
        raise DataQualityError(f"Population table is missing columns {missing_columns}",
                               stage='panel_builder', identifiers=missing_columns)

    adults = observations[observations[LIFE_STAGE] == life_stage]
    no_key = int(adults[id_column].isna().sum())
    selected = adults[adults[id_column].notna()].copy()

    if metric is not None:
        selected = selected[selected[METRIC] == metric].copy()

    selected[VALUE] = pd.to_numeric(selected[VALUE], errors='coerce')
    selected[BROOD_YEAR] = pd.to_numeric(selected[BROOD_YEAR], errors='coerce')

    bad_years = int(selected[BROOD_YEAR].isna().sum())
    selected = selected[selected[BROOD_YEAR].notna()].copy()
    selected[BROOD_YEAR] = selected[BROOD_YEAR].astype(int)

    print(f"🐟 Adult observations: {len(selected)} of {len(observations)} rows")
    if no_key:
        print(f"   Excluded {no_key} adult rows with no {id_column}")
    if bad_years:
        print(f"   Excluded {bad_years} rows with no usable brood year")

    return selected


def average_estimation_methods(observations, group_columns):
    """Collapse multiple estimation methods per group to their arithmetic mean"""
    aggregated = (observations
                  .groupby(group_columns, as_index=False, dropna=False)[VALUE]
                  .mean())
    return aggregated.rename(columns={VALUE: 'value'})


def sum_population_subunits(aggregated, id_column=WATERSHED_ID):
    """Sum population sub-units into one watershed total per species and year"""
    totals = (aggregated
              .groupby([id_column, SPECIES, BROOD_YEAR], as_index=False)['value']
              .sum(min_count=1))
    totals['unit'] = totals[id_column]
    return totals


def attach_coverage(panel, coverage, id_column=WATERSHED_ID):
    """
    Left-join percent_protected and total_area onto the panel

    Rows with no coverage record keep their place and get percent_protected 0
    by the same rule as the coverage table.

    Args:
        panel: Aggregated observation DataFrame
        coverage: Coverage DataFrame (one row per watershed)
        id_column: Spatial join key

    Returns:
        Joined DataFrame with the same number of rows as panel
    """
    coverage = coverage[[id_column, 'total_area', 'protected_area']]

    try:
        joined = panel.merge(coverage, on=id_column, how='left', validate='many_to_one')
    except pd.errors.MergeError:
        duplicated = coverage.loc[coverage[id_column].duplicated(), id_column].unique().tolist()
        raise JoinIntegrityError("Coverage table has duplicate watershed ids",
                                 stage='panel_builder', identifiers=duplicated)

    if len(joined) != len(panel):
        raise JoinIntegrityError(
            f"Coverage join changed the row count from {len(panel)} to {len(joined)}",
            stage='panel_builder')

    unmatched = sorted(joined.loc[joined['total_area'].isna(), id_column].unique(), key=str)
    if unmatched:
        print(f"   ⚠️  {len(unmatched)} watersheds in the panel have no coverage record; "
              f"percent_protected set to 0")

    joined['protected_area'] = fill_missing_protected_area(joined['protected_area'])
    joined['percent_protected'] = percent_protected_policy(
        joined['protected_area'], joined['total_area'])
    return joined.drop(columns='protected_area')


def assert_uniform_coverage(panel, id_column=WATERSHED_ID):
    """Raise JoinIntegrityError if any watershed carries more than one percent_protected"""
    distinct = panel.groupby(id_column)['percent_protected'].nunique(dropna=False)
    inconsistent = sorted(distinct[distinct > 1].index, key=str)
    if inconsistent:
        raise JoinIntegrityError(
            f"{len(inconsistent)} watersheds have inconsistent percent_protected",
            stage='panel_builder', identifiers=inconsistent)


def usable_units(panel, unit_column='unit', threshold=0):
    """
    (unit, species) series whose maximum value across all years is strictly above threshold

    Series that are zero in every year are treated as absences rather than
    real counts. Each species is judged on its own, so a watershed can keep
    its Coho series and lose an all-zero Chinook one.
    """
    maxima = panel.groupby([unit_column, SPECIES])['value'].max()
    return set(maxima[maxima > threshold].index)


def filter_usable_units(panel, unit_column='unit', threshold=0):
    """Drop (unit, species) series that never rise above the threshold"""
    keep = usable_units(panel, unit_column, threshold)
    pairs = pd.Series(list(zip(panel[unit_column], panel[SPECIES])), index=panel.index)
    filtered = panel[pairs.isin(keep)].copy()

    dropped = pairs.nunique() - len(keep)
    print(f"   Usable series: {len(keep)} (dropped {dropped} never above {threshold})")
    return filtered


def rebase_years(panel, baseline_year):
    """
    Add year_offset = brood year - baseline

    Args:
        panel: DataFrame with Species and Brood Year columns
        baseline_year: int, or {species: year} for per-species baselines

    Returns:
        Copy of panel with a year_offset column
    """
    rebased = panel.copy()

    if isinstance(baseline_year, dict):
        missing = sorted(set(rebased[SPECIES].unique()) - set(baseline_year), key=str)
        if missing:
            raise ConfigurationError(f"No baseline year for species {missing}",
                                     stage='panel_builder', identifiers=missing)
        baselines = rebased[SPECIES].map(baseline_year)
    else:
        baselines = baseline_year

    rebased['year_offset'] = (rebased[BROOD_YEAR] - baselines).astype(int)
    return rebased


def build_panel(observations, coverage, settings, id_column=WATERSHED_ID):
    """
    Build the regression-ready panel

    Args:
        observations: Population monitoring DataFrame
        coverage: Coverage DataFrame from build_coverage_records
        settings: Validated settings (unit, baseline_year, usable_threshold, metric)
        id_column: Spatial join key

    Returns:
        Panel DataFrame with PANEL_COLUMNS
    """
    print(f"📊 Building {settings['unit']}-level panel...")

    adults = select_adult_observations(observations, id_column, metric=settings.get('metric'))

    if settings['unit'] == 'population':
        if POPULATION not in adults.columns:
            raise DataQualityError("Population table has no Population column",
                                   stage='panel_builder', identifiers=[POPULATION])
        panel = average_estimation_methods(adults, [POPULATION, id_column, SPECIES, BROOD_YEAR])
        panel['unit'] = panel[POPULATION]
    else:
        group_columns = [id_column, SPECIES, BROOD_YEAR]
        if POPULATION in adults.columns:
            by_population = average_estimation_methods(adults, [POPULATION] + group_columns)
            panel = sum_population_subunits(by_population, id_column)
        else:
            panel = average_estimation_methods(adults, group_columns)
            panel['unit'] = panel[id_column]

    duplicated = panel.duplicated(['unit', SPECIES, BROOD_YEAR])
    if duplicated.any():
        units = sorted(panel.loc[duplicated, 'unit'].unique(), key=str)
        raise JoinIntegrityError(
            "Population units map to more than one watershed",
            stage='panel_builder', identifiers=units)

    panel = attach_coverage(panel, coverage, id_column)
    assert_uniform_coverage(panel, id_column)

    panel = panel[panel['value'].notna()]
    panel = filter_usable_units(panel, 'unit', settings['usable_threshold'])
    panel = rebase_years(panel, settings['baseline_year'])

    panel = (panel[PANEL_COLUMNS]
             .sort_values(['unit', SPECIES, BROOD_YEAR])
             .reset_index(drop=True))

    print(f"   Panel rows: {len(panel)} across {panel['unit'].nunique()} units, "
          f"{panel[SPECIES].nunique()} species")
    return panel
