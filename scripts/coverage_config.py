"""
Configuration for the protected-coverage pipeline

Defaults live here as module constants. A run can override them from a JSON
file and from command-line flags; everything goes through load_settings()
so out-of-range values fail before any geometry is touched.
"""

import json
from pathlib import Path

from pyproj import CRS
from pyproj.exceptions import CRSError

from coverage_errors import ConfigurationError

# Source column names
WATERSHED_ID = 'GEO_ID_POLY'
WATERSHED_NAME = 'Watershed'
POPULATION = 'Population'
SPECIES = 'Species'
LIFE_STAGE = 'Life Stage'
BROOD_YEAR = 'Brood Year'
VALUE = 'Value'
METRIC = 'Metric'
ESTIMATION_METHOD = 'Estimation method'
PROTECTED_NAME = 'UNIT_NAME'
PROTECTED_YEAR = 'YR_EST'

# Analysis defaults
ANALYSIS_CRS = 'EPSG:3310'      # NAD83 / California Albers, metres
DEFAULT_CUTOFF_YEAR = 1981      # earliest brood year in the monitoring data
DEFAULT_BASELINE_YEAR = 1981
ADULT_LIFE_STAGE = 'Adult'
UNKNOWN_YEAR_SENTINELS = (0,)   # CPAD records unrecorded YR_EST as 0

# Plausible range for any year in the configuration
MIN_PLAUSIBLE_YEAR = 1850
MAX_PLAUSIBLE_YEAR = 2100

AGGREGATION_UNITS = ('watershed', 'population')

# Columns of the regression panel; fixed_effect and cluster must name one of them
PANEL_COLUMNS = ['unit', WATERSHED_ID, SPECIES, BROOD_YEAR, 'year_offset',
                 'value', 'percent_protected', 'total_area']

DEFAULT_SETTINGS = {
    'cutoff_year': DEFAULT_CUTOFF_YEAR,
    'baseline_year': DEFAULT_BASELINE_YEAR,
    'unit': 'watershed',
    'usable_threshold': 0,
    'crs': ANALYSIS_CRS,
    'metric': None,
    'fixed_effect': 'unit',
    'cluster': BROOD_YEAR,
    'include_area': False,
}


def validate_year(value, key):
    """Return value as int, raising ConfigurationError if it is not a plausible year"""
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a year, got {value!r}",
                                 stage='config', identifiers=[key])
    try:
        year = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ConfigurationError(f"{key} must be a year, got {value!r}",
                                 stage='config', identifiers=[key])
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"{key} must be a whole year, got {value!r}",
                                 stage='config', identifiers=[key])
    if not MIN_PLAUSIBLE_YEAR <= year <= MAX_PLAUSIBLE_YEAR:
        raise ConfigurationError(
            f"{key}={year} outside plausible range {MIN_PLAUSIBLE_YEAR}-{MAX_PLAUSIBLE_YEAR}",
            stage='config', identifiers=[key])
    return year


def validate_baseline(value):
    """Baseline is a single year or a {species: year} mapping"""
    if isinstance(value, dict):
        if not value:
            raise ConfigurationError("baseline_year mapping is empty",
                                     stage='config', identifiers=['baseline_year'])
        return {species: validate_year(year, f"baseline_year[{species}]")
                for species, year in value.items()}
    return validate_year(value, 'baseline_year')


def validate_crs(value):
    """Return the CRS string, raising unless it parses and is projected"""
    try:
        crs = CRS.from_user_input(value)
    except CRSError as e:
        raise ConfigurationError(f"Unrecognised CRS {value!r}: {e}",
                                 stage='config', identifiers=['crs'])
    if not crs.is_projected:
        raise ConfigurationError(
            f"CRS {value!r} is not projected; planar areas would be meaningless",
            stage='config', identifiers=['crs'])
    return value


def validate_settings(settings):
    """Validate a complete settings dict and return a normalised copy"""
    unknown = sorted(set(settings) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ConfigurationError(f"Unknown settings: {unknown}",
                                 stage='config', identifiers=unknown)

    validated = dict(settings)
    validated['cutoff_year'] = validate_year(settings['cutoff_year'], 'cutoff_year')
    validated['baseline_year'] = validate_baseline(settings['baseline_year'])
    validated['crs'] = validate_crs(settings['crs'])

    if settings['unit'] not in AGGREGATION_UNITS:
        raise ConfigurationError(
            f"unit must be one of {AGGREGATION_UNITS}, got {settings['unit']!r}",
            stage='config', identifiers=['unit'])

    threshold = settings['usable_threshold']
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
        raise ConfigurationError(
            f"usable_threshold must be a non-negative number, got {threshold!r}",
            stage='config', identifiers=['usable_threshold'])

    for key in ('fixed_effect', 'cluster'):
        column = settings[key]
        if column is not None and column not in PANEL_COLUMNS:
            raise ConfigurationError(
                f"{key} must be a panel column {PANEL_COLUMNS} or null, got {column!r}",
                stage='config', identifiers=[key])

    validated['include_area'] = bool(settings['include_area'])
    return validated


def load_settings(config_path=None, **overrides):
    """
    Build validated settings from defaults, an optional JSON file and overrides

    Args:
        config_path: Optional path to a JSON object of settings
        **overrides: Individual settings; None values are ignored

    Returns:
        Validated settings dict
    """
    settings = dict(DEFAULT_SETTINGS)

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}",
                                     stage='config', identifiers=[str(path)])
        with open(path, 'r') as f:
            file_settings = json.load(f)
        if not isinstance(file_settings, dict):
            raise ConfigurationError(f"Config file {path} must hold a JSON object",
                                     stage='config', identifiers=[str(path)])
        settings.update(file_settings)

    settings.update({k: v for k, v in overrides.items() if v is not None})
    return validate_settings(settings)
