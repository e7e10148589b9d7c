#!/usr/bin/env python3
"""
Panel regression of population counts on time and protected coverage

Model (pooled):
    value ~ year_offset * percent_protected [+ total_area]

Model (unit fixed effects):
    value ~ year_offset + year_offset:percent_protected + C(unit)

percent_protected and total_area do not vary within a unit, so their main
effects are absorbed by the fixed effects and only the trend and the
trend-by-protection interaction are estimated. Standard errors are
clustered when a cluster column is given and has at least three groups,
HC1 otherwise.
"""

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from coverage_config import SPECIES
from coverage_errors import ConfigurationError

MIN_OBSERVATIONS = 10
MIN_CLUSTERS = 3

COEFFICIENT_COLUMNS = ['term', 'estimate', 'std_error', 'p_value', 'ci_low', 'ci_high']


def quote_column(column):
    """Quote a column name for a patsy formula when it is not a plain identifier"""
    return column if column.isidentifier() else f"Q('{column}')"


def build_formula(fixed_effect=None, include_area=False):
    """
    Model formula for the panel

    Args:
        fixed_effect: Column absorbed as a fixed effect, or None for pooled OLS
        include_area: Add total_area as a covariate (pooled model only)

    Returns:
        Formula string
    """
    if fixed_effect:
        return f"value ~ year_offset + year_offset:percent_protected + C({quote_column(fixed_effect)})"

    formula = "value ~ year_offset * percent_protected"
    if include_area:
        formula += " + total_area"
    return formula


def coefficient_table(result, alpha=0.05, fixed_effect=False):
    """
    Estimates, standard errors and confidence intervals

    Fixed-effect dummies are excluded. With fixed effects the intercept is the
    reference unit's level, so it is excluded too.
    """
    ci = result.conf_int(alpha=alpha)
    table = pd.DataFrame({
        'term': result.params.index,
        'estimate': result.params.to_numpy(),
        'std_error': result.bse.to_numpy(),
        'p_value': result.pvalues.to_numpy(),
        'ci_low': ci[0].to_numpy(),
        'ci_high': ci[1].to_numpy(),
    })
    drop = table['term'].str.startswith('C(')
    if fixed_effect:
        drop |= table['term'] == 'Intercept'
    return table[~drop].reset_index(drop=True)


def fit_panel_model(panel, fixed_effect=None, cluster=None, include_area=False, label=None):
    """
    Fit the panel model with statsmodels OLS

    Args:
        panel: Panel DataFrame from build_panel
        fixed_effect: Column for unit fixed effects (e.g. 'unit'), or None
        cluster: Column to cluster standard errors on (e.g. 'Brood Year'), or None
        include_area: Add total_area as a covariate in the pooled model
        label: Name for progress output

    Returns:
        Dict with coefficients DataFrame and fit statistics, or None when the
        panel is too small to fit
    """
    label = label or 'panel'
    formula = build_formula(fixed_effect, include_area)

    needed = ['value', 'year_offset', 'percent_protected']
    if include_area and not fixed_effect:
        needed.append('total_area')
    needed += [c for c in (fixed_effect, cluster) if c]
    missing = [c for c in needed if c not in panel.columns]
    if missing:
        raise ConfigurationError(f"Panel has no column(s) {missing} for {label}",
                                 stage='regression', identifiers=missing)
    data = panel.dropna(subset=needed)

    if len(data) < MIN_OBSERVATIONS:
        print(f"  Skipping {label}: only {len(data)} observations")
        return None

    if fixed_effect and data[fixed_effect].nunique() < 2:
        print(f"  Skipping {label}: fixed effects need at least two units")
        return None

    try:
        model = smf.ols(formula, data=data)
        n_clusters = data[cluster].nunique() if cluster else 0
        if cluster and n_clusters >= MIN_CLUSTERS:
            groups = pd.factorize(data[cluster])[0]
            result = model.fit(cov_type='cluster', cov_kwds={'groups': groups})
            se_type = f"clustered ({cluster}, G={n_clusters})"
        else:
            # Too few clusters for cluster-robust; fall back to HC1
            result = model.fit(cov_type='HC1')
            se_type = 'HC1'
    except (ValueError, np.linalg.LinAlgError) as e:
        print(f"  Regression failed for {label}: {e}")
        return None

    return {
        'label': label,
        'formula': formula,
        'se_type': se_type,
        'n_obs': int(result.nobs),
        'n_units': int(data[fixed_effect].nunique()) if fixed_effect else None,
        'r_squared': float(result.rsquared),
        'coefficients': coefficient_table(result, fixed_effect=bool(fixed_effect)),
    }


def fit_species_models(panel, fixed_effect=None, cluster=None, include_area=False):
    """
    Fit one model per species

    Returns:
        Tuple of (long coefficient DataFrame with a Species column, list of fit dicts)
    """
    tables = []
    fits = []

    for species, species_panel in panel.groupby(SPECIES, sort=True):
        print(f"📈 Fitting {species} ({len(species_panel)} rows)...")
        fit = fit_panel_model(species_panel, fixed_effect, cluster, include_area, label=species)
        if fit is None:
            continue

        coefficients = fit['coefficients'].copy()
        coefficients.insert(0, SPECIES, species)
        coefficients['n_obs'] = fit['n_obs']
        coefficients['se_type'] = fit['se_type']
        tables.append(coefficients)
        fits.append(fit)

        for row in coefficients.itertuples(index=False):
            print(f"   {row.term}: {row.estimate:.3f} "
                  f"[{row.ci_low:.3f}, {row.ci_high:.3f}]")

    if not tables:
        return pd.DataFrame(columns=[SPECIES] + COEFFICIENT_COLUMNS + ['n_obs', 'se_type']), fits

    return pd.concat(tables, ignore_index=True), fits
