"""Tests for building the regression panel."""

import numpy as np
import pandas as pd
import pytest

from coverage_config import load_settings
from coverage_errors import ConfigurationError, DataQualityError, JoinIntegrityError
from panel_builder import (
    PANEL_COLUMNS,
    assert_uniform_coverage,
    attach_coverage,
    average_estimation_methods,
    build_panel,
    filter_usable_units,
    rebase_years,
    select_adult_observations,
    sum_population_subunits,
    usable_units,
)


def values_panel(series_by_unit, species='Coho'):
    rows = []
    for unit, values in series_by_unit.items():
        for offset, value in enumerate(values):
            rows.append({'unit': unit, 'Species': species, 'Brood Year': 1990 + offset, 'value': value})
    return pd.DataFrame(rows)


class TestSelectAdultObservations:
    """Test select_adult_observations."""

    def test_keeps_only_mapped_adults(self, observations):
        adults = select_adult_observations(observations)
        assert set(adults['Life Stage']) == {'Adult'}
        assert adults['GEO_ID_POLY'].notna().all()
        assert len(adults) == 40

    def test_metric_filter(self, observations):
        assert len(select_adult_observations(observations, metric='Outmigrants')) == 0

    def test_missing_column_raises(self, observations):
        with pytest.raises(DataQualityError):
            select_adult_observations(observations.drop(columns='Value'))

    def test_unparseable_brood_year_dropped(self, observations):
        broken = observations.copy()
        broken['Brood Year'] = broken['Brood Year'].astype(object)
        broken.loc[0, 'Brood Year'] = 'unknown'
        assert len(select_adult_observations(broken)) == 39


class TestAggregation:
    """Test averaging estimation methods and summing sub-units."""

    def test_methods_averaged(self, observations):
        adults = select_adult_observations(observations)
        averaged = average_estimation_methods(
            adults, ['Population', 'GEO_ID_POLY', 'Species', 'Brood Year'])

        row = averaged[(averaged['Population'] == 'A-north') & (averaged['Brood Year'] == 1981)]
        assert row['value'].iloc[0] == pytest.approx(12.0)
        assert not averaged.duplicated(['Population', 'Species', 'Brood Year']).any()

    def test_subunits_summed(self, observations):
        adults = select_adult_observations(observations)
        averaged = average_estimation_methods(
            adults, ['Population', 'GEO_ID_POLY', 'Species', 'Brood Year'])
        totals = sum_population_subunits(averaged)

        first_year = totals[totals['Brood Year'] == 1981].set_index('unit')['value']
        assert first_year['A'] == pytest.approx(17.0)
        assert first_year['C'] == pytest.approx(30.0)


class TestUsableUnits:
    """Test the always-zero population filter."""

    def test_all_zero_population_excluded(self):
        panel = values_panel({'zeros': [0, 0, 0, 0], 'sparse': [0, 5, 0, 3]})
        assert usable_units(panel) == {('sparse', 'Coho')}

    def test_filter_drops_rows(self):
        panel = values_panel({'zeros': [0, 0, 0, 0], 'sparse': [0, 5, 0, 3]})
        filtered = filter_usable_units(panel)
        assert set(filtered['unit']) == {'sparse'}
        assert len(filtered) == 4

    def test_threshold(self):
        panel = values_panel({'low': [1, 2], 'high': [1, 20]})
        assert usable_units(panel, threshold=10) == {('high', 'Coho')}

    def test_species_judged_separately_within_unit(self):
        panel = pd.concat([values_panel({'C': [30, 29, 28, 27]}, 'Coho'),
                           values_panel({'C': [0, 0, 0, 0]}, 'Chinook')], ignore_index=True)
        filtered = filter_usable_units(panel)

        assert usable_units(panel) == {('C', 'Coho')}
        assert set(filtered['Species']) == {'Coho'}
        assert len(filtered) == 4


class TestAttachCoverage:
    """Test the coverage join."""

    def test_unmatched_rows_get_zero(self, coverage):
        panel = pd.DataFrame({'GEO_ID_POLY': ['A', 'Z'], 'value': [1.0, 2.0]})
        joined = attach_coverage(panel, coverage)

        assert len(joined) == 2
        assert list(joined['percent_protected']) == [60.0, 0.0]
        assert np.isnan(joined['total_area'].iloc[1])

    def test_duplicate_coverage_raises(self, coverage):
        doubled = pd.concat([coverage, coverage.iloc[[0]]], ignore_index=True)
        panel = pd.DataFrame({'GEO_ID_POLY': ['A'], 'value': [1.0]})
        with pytest.raises(JoinIntegrityError) as excinfo:
            attach_coverage(panel, doubled)
        assert excinfo.value.identifiers == ['A']

    def test_uniform_coverage_check(self):
        panel = pd.DataFrame({'GEO_ID_POLY': ['A', 'A', 'C'], 'percent_protected': [60.0, 40.0, 50.0]})
        with pytest.raises(JoinIntegrityError) as excinfo:
            assert_uniform_coverage(panel)
        assert excinfo.value.identifiers == ['A']


class TestRebaseYears:
    """Test year_offset."""

    def test_single_baseline(self):
        panel = pd.DataFrame({'Species': ['Coho', 'Coho'], 'Brood Year': [1981, 1990]})
        assert list(rebase_years(panel, 1981)['year_offset']) == [0, 9]

    def test_per_species_baseline(self):
        panel = pd.DataFrame({'Species': ['Coho', 'Chinook'], 'Brood Year': [2000, 2000]})
        rebased = rebase_years(panel, {'Coho': 1995, 'Chinook': 1981})
        assert list(rebased['year_offset']) == [5, 19]

    def test_missing_species_baseline_raises(self):
        panel = pd.DataFrame({'Species': ['Steelhead'], 'Brood Year': [2000]})
        with pytest.raises(ConfigurationError):
            rebase_years(panel, {'Coho': 1995})


class TestBuildPanel:
    """Test build_panel."""

    def test_watershed_panel(self, observations, coverage, settings):
        panel = build_panel(observations, coverage, settings)

        assert list(panel.columns) == PANEL_COLUMNS
        assert len(panel) == 20
        assert not panel.duplicated(['unit', 'Species', 'Brood Year']).any()
        first = panel[panel['year_offset'] == 0].set_index('unit')
        assert first.loc['A', 'value'] == pytest.approx(17.0)
        assert first.loc['A', 'percent_protected'] == 60.0
        assert first.loc['C', 'percent_protected'] == 50.0

    def test_population_panel_shares_parent_coverage(self, observations, coverage):
        settings = load_settings(unit='population', baseline_year=1985)
        panel = build_panel(observations, coverage, settings)

        assert sorted(panel['unit'].unique()) == ['A-north', 'A-south', 'C-main']
        per_unit = panel.groupby('unit')['percent_protected'].unique()
        assert list(per_unit['A-north']) == [60.0]
        assert list(per_unit['A-south']) == [60.0]
        assert panel['year_offset'].min() == -4

    def test_always_zero_population_dropped(self, observations, coverage):
        extra = observations.iloc[:1].copy()
        extra = pd.concat([extra] * 3, ignore_index=True)
        extra['Population'] = 'A-ghost'
        extra['Value'] = 0
        extra['Brood Year'] = [1981, 1982, 1983]
        settings = load_settings(unit='population')

        panel = build_panel(pd.concat([observations, extra], ignore_index=True), coverage, settings)
        assert 'A-ghost' not in set(panel['unit'])

    def test_all_zero_species_dropped_from_shared_watershed(self, observations, coverage, settings):
        chinook = observations[observations['Population'] == 'C-main'].copy()
        chinook['Species'] = 'Chinook'
        chinook['Value'] = 0

        panel = build_panel(pd.concat([observations, chinook], ignore_index=True), coverage, settings)
        assert 'Chinook' not in set(panel['Species'])
        assert len(panel[(panel['unit'] == 'C') & (panel['Species'] == 'Coho')]) == 10

    def test_population_in_two_watersheds_raises(self, observations, coverage):
        moved = observations.copy()
        moved.loc[moved['Population'] == 'C-main', 'Population'] = 'A-north'
        settings = load_settings(unit='population')
        with pytest.raises(JoinIntegrityError):
            build_panel(moved, coverage, settings)
