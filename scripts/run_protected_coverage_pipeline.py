#!/usr/bin/env python3
"""
Protected Land Coverage vs. Salmonid Populations Pipeline

Runs the full analysis:
1. Repair invalid watershed and protected-area polygons
2. Keep watersheds with population records and protected areas
   established before the cutoff year
3. Intersect watersheds with protected areas
4. Union fragments per watershed and compute percent protected
5. Join coverage onto brood-year population counts
6. Fit per-species panel regressions

Usage:
    python scripts/run_protected_coverage_pipeline.py \\
        --population data/salmonid_populations.csv \\
        --watersheds data/watersheds.shp \\
        --protected data/cpad_holdings.shp

    python scripts/run_protected_coverage_pipeline.py ... --unit population --baseline-year 1995
    python scripts/run_protected_coverage_pipeline.py ... --config analysis_config.json

Output Files (in --output-dir, default outputs/protected_coverage):
    coverage_records.csv        # one row per watershed
    panel.csv                   # regression input
    protected_union.geojson     # protected area per watershed (EPSG:4326)
    regression_results.csv      # per-species coefficients with 95% CIs
    pipeline_summary.json       # counts and data-quality context
"""

import argparse
import json
import sys
import warnings
from datetime import datetime
from pathlib import Path

import geopandas as gpd
import pandas as pd

from coverage_aggregation import build_coverage_records
from coverage_config import (
    AGGREGATION_UNITS,
    PROTECTED_NAME,
    PROTECTED_YEAR,
    SPECIES,
    WATERSHED_ID,
    WATERSHED_NAME,
    load_settings,
    validate_settings,
)
from coverage_errors import CoveragePipelineError, DataQualityError
from panel_builder import build_panel
from panel_regression import fit_species_models
from protected_overlay import intersect_watersheds_with_protected
from spatial_filters import (
    filter_protected_areas_by_year,
    filter_watersheds_by_observations,
    missing_year_fraction,
    observed_watershed_ids,
)
from watershed_geometry_utils import as_multipolygon, repair_geometries, to_projected_crs

warnings.filterwarnings('ignore')

OUTPUT_DIR = Path("outputs/protected_coverage")


def load_population_table(path):
    """Load the population monitoring CSV"""
    print(f"Loading population records from {path}")
    observations = pd.read_csv(path)
    print(f"Loaded {len(observations)} rows")
    return observations


def load_layer(path, crs, label):
    """Load a vector layer and reproject it into the analysis CRS"""
    print(f"Loading {label} from {path}")
    layer = gpd.read_file(path)
    print(f"Loaded {len(layer)} features, CRS: {layer.crs}")
    return to_projected_crs(layer, crs, label)


def drop_missing_keys(watersheds, id_column=WATERSHED_ID):
    """Remove watershed rows without an identifier, reporting them as data-quality errors"""
    missing = watersheds[id_column].isna()
    failures = [
        DataQualityError("Watershed polygon has no spatial join key",
                         stage='load', identifiers=[f"row {idx}"])
        for idx in watersheds.index[missing]
    ]
    if failures:
        print(f"   ⚠️  Dropped {len(failures)} watershed polygons with no {id_column}")
    return watersheds[~missing].copy(), failures


def run_pipeline(observations, watersheds, protected, settings, fit_models=True,
                 show_progress=True):
    """
    Run every stage on in-memory inputs

    Args:
        observations: Population monitoring DataFrame
        watersheds: Watershed GeoDataFrame in settings['crs']
        protected: Protected-area GeoDataFrame in settings['crs']
        settings: Validated settings from load_settings()
        fit_models: Fit the per-species regressions
        show_progress: Show the overlay progress bar

    Returns:
        Dict with coverage, protected_union, panel, regression, fits, summary
        and geometry_failures
    """
    crs = settings['crs']

    print("\n=== Stage 1: Geometry validation ===")
    watersheds, key_failures = drop_missing_keys(watersheds)
    watersheds, watershed_failures = repair_geometries(watersheds, WATERSHED_ID, 'watersheds')
    protected = protected.reset_index(drop=True)
    names = protected[PROTECTED_NAME] if PROTECTED_NAME in protected.columns else [None] * len(protected)
    protected['_feature'] = [f"{name if isinstance(name, str) and name else 'protected area'} (#{i})"
                             for i, name in enumerate(names)]
    protected, protected_failures = repair_geometries(protected, '_feature', 'protected areas')
    protected = protected.drop(columns='_feature')
    failures = key_failures + watershed_failures + protected_failures

    print("\n=== Stage 2: Spatial filters ===")
    observed = observed_watershed_ids(observations, WATERSHED_ID)
    retained_watersheds = filter_watersheds_by_observations(watersheds, observed, WATERSHED_ID)
    retained_protected = filter_protected_areas_by_year(
        protected, settings['cutoff_year'], PROTECTED_YEAR)

    print("\n=== Stage 3: Overlay ===")
    fragments = intersect_watersheds_with_protected(
        retained_watersheds, retained_protected, crs, WATERSHED_ID,
        show_progress=show_progress)

    print("\n=== Stage 4: Coverage ===")
    coverage, unions = build_coverage_records(
        retained_watersheds, fragments, crs, WATERSHED_ID, keep_columns=[WATERSHED_NAME])

    print("\n=== Stage 5: Panel ===")
    panel = build_panel(observations, coverage, settings, WATERSHED_ID)

    regression = None
    fits = []
    if fit_models:
        print("\n=== Stage 6: Regression ===")
        fixed_effect = settings['fixed_effect']
        regression, fits = fit_species_models(
            panel, fixed_effect, settings['cluster'], settings['include_area'])

    summary = {
        'timestamp': pd.Timestamp.now().isoformat(),
        'settings': settings,
        'watersheds': {
            'candidates': int(watersheds[WATERSHED_ID].nunique()),
            'retained': int(coverage[WATERSHED_ID].nunique()),
            'zero_overlap': int((coverage['protected_area'] == 0).sum()),
        },
        'protected_areas': {
            'loaded': int(len(protected)),
            'retained': int(len(retained_protected)),
            'unknown_year_pct': round(missing_year_fraction(protected, PROTECTED_YEAR) * 100, 1),
        },
        'fragments': int(len(fragments)),
        'panel': {
            'rows': int(len(panel)),
            'units': int(panel['unit'].nunique()),
            'species': sorted(panel[SPECIES].unique().tolist()),
        },
        'models_fitted': len(fits),
        'geometry_failures': [f.describe() for f in failures],
    }

    return {
        'coverage': coverage,
        'protected_union': unions,
        'panel': panel,
        'regression': regression,
        'fits': fits,
        'summary': summary,
        'geometry_failures': failures,
    }


def write_outputs(results, output_dir=OUTPUT_DIR):
    """Write tables, union geometries and the JSON summary"""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    results['coverage'].to_csv(output_dir / 'coverage_records.csv', index=False)
    results['panel'].to_csv(output_dir / 'panel.csv', index=False)

    unions = results['protected_union']
    if len(unions):
        unions = unions.copy()
        unions['geometry'] = unions.geometry.apply(as_multipolygon)
        unions.to_crs('EPSG:4326').to_file(output_dir / 'protected_union.geojson', driver='GeoJSON')

    if results['regression'] is not None:
        results['regression'].to_csv(output_dir / 'regression_results.csv', index=False)

    with open(output_dir / 'pipeline_summary.json', 'w') as f:
        json.dump(results['summary'], f, indent=2, default=str)

    print(f"\n💾 Outputs saved to: {output_dir}")
    return output_dir


def print_summary(summary):
    """Print the data-quality context an analyst needs to read the results"""
    print("\n" + "=" * 60)
    print("PROTECTED COVERAGE SUMMARY")
    print("=" * 60)
    ws = summary['watersheds']
    pa = summary['protected_areas']
    print(f"Watersheds retained: {ws['retained']} of {ws['candidates']}")
    print(f"Watersheds with no protected overlap: {ws['zero_overlap']}")
    print(f"Protected areas retained: {pa['retained']} of {pa['loaded']} "
          f"({pa['unknown_year_pct']}% unknown establishment year)")
    print(f"Panel: {summary['panel']['rows']} rows, {summary['panel']['units']} units")
    print(f"Models fitted: {summary['models_fitted']}")
    if summary['geometry_failures']:
        print(f"⚠️  Excluded features ({len(summary['geometry_failures'])}):")
        for failure in summary['geometry_failures']:
            print(f"   - {failure}")


def parse_baseline(value):
    """--baseline-year takes 1981 or Coho=1995,Chinook=1981"""
    if '=' not in value:
        return value
    baselines = {}
    for item in value.split(','):
        species, _, year = item.partition('=')
        baselines[species.strip()] = year.strip()
    return baselines


def build_parser():
    parser = argparse.ArgumentParser(
        description='Estimate protected-land coverage per watershed and its relation to salmonid counts')
    parser.add_argument('--population', required=True, help='Population monitoring CSV')
    parser.add_argument('--watersheds', required=True, help='Watershed polygon layer')
    parser.add_argument('--protected', required=True, help='Protected-area polygon layer')
    parser.add_argument('--output-dir', default=str(OUTPUT_DIR),
                        help=f'Output directory (default: {OUTPUT_DIR})')
    parser.add_argument('--config', help='JSON file of settings')
    parser.add_argument('--cutoff-year', type=int,
                        help='Drop protected areas established in or after this year (default: 1981)')
    parser.add_argument('--baseline-year', type=parse_baseline,
                        help='Year with year_offset 0, or Species=year pairs (default: 1981)')
    parser.add_argument('--unit', choices=AGGREGATION_UNITS,
                        help='Aggregate to whole watersheds or keep populations (default: watershed)')
    parser.add_argument('--usable-threshold', type=float,
                        help='Drop units whose maximum value is not above this (default: 0)')
    parser.add_argument('--crs', help='Projected CRS for areas (default: EPSG:3310)')
    parser.add_argument('--metric', help='Keep only this metric type')
    parser.add_argument('--cluster', help='Column to cluster standard errors on')
    parser.add_argument('--no-cluster', action='store_true', help='Use HC1 errors instead of clustering')
    parser.add_argument('--no-fixed-effect', action='store_true', help='Fit pooled OLS without unit fixed effects')
    parser.add_argument('--include-area', action='store_true', help='Add total_area as a covariate')
    parser.add_argument('--no-regression', action='store_true', help='Stop after building the panel')
    parser.add_argument('--no-progress', action='store_true', help='Hide the overlay progress bar')
    return parser


def main(argv=None):
    """Run the pipeline from the command line"""
    args = build_parser().parse_args(argv)

    print("=== Protected Land Coverage vs. Salmonid Populations ===")
    print(f"Started: {datetime.now().isoformat(timespec='seconds')}")

    try:
        settings = load_settings(
            args.config,
            cutoff_year=args.cutoff_year,
            baseline_year=args.baseline_year,
            unit=args.unit,
            usable_threshold=args.usable_threshold,
            crs=args.crs,
            metric=args.metric,
            cluster=args.cluster,
            include_area=True if args.include_area else None,
        )
        if args.no_cluster:
            settings['cluster'] = None
        if args.no_fixed_effect:
            settings['fixed_effect'] = None
        settings = validate_settings(settings)

        observations = load_population_table(args.population)
        watersheds = load_layer(args.watersheds, settings['crs'], 'watersheds')
        protected = load_layer(args.protected, settings['crs'], 'protected areas')

        results = run_pipeline(observations, watersheds, protected, settings,
                               fit_models=not args.no_regression,
                               show_progress=not args.no_progress)
    except CoveragePipelineError as e:
        print(f"\n❌ Pipeline failed: {e.describe()}")
        return 1

    write_outputs(results, args.output_dir)
    print_summary(results['summary'])
    print("\n🎉 Processing complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
