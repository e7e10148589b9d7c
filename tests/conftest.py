"""Shared fixtures: small synthetic watershed and protected-area layers in California Albers."""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

from coverage_config import load_settings

CRS = 'EPSG:3310'


def bowtie():
    """Self-intersecting ring made of two unit-area triangles"""
    return Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)])


@pytest.fixture
def settings():
    return load_settings()


@pytest.fixture
def watersheds():
    """A and C have observations, B does not. Each is 1000 m²."""
    return gpd.GeoDataFrame(
        {
            'GEO_ID_POLY': ['A', 'B', 'C'],
            'Watershed': ['Alder Creek', 'Bear Creek', 'Coyote Creek'],
        },
        geometry=[box(0, 0, 100, 10), box(200, 0, 210, 100), box(0, 20, 100, 30)],
        crs=CRS,
    )


@pytest.fixture
def protected():
    """
    P1 (300 m²) and P2 (400 m²) overlap by 100 m² inside A.
    P3 covers half of C. P4 and P5 were established after 1981.
    """
    return gpd.GeoDataFrame(
        {
            'UNIT_NAME': ['P1', 'P2', 'P3', 'P4', 'P5'],
            'YR_EST': [1970, np.nan, 1975, 1995, 2001],
        },
        geometry=[
            box(0, 0, 30, 10),
            box(20, 0, 60, 10),
            box(0, 20, 50, 30),
            box(60, 0, 100, 10),
            box(200, 0, 210, 100),
        ],
        crs=CRS,
    )


@pytest.fixture
def observations():
    """Adult Coho counts for three populations in A and C, 1981-1990, plus rows that get filtered"""
    rows = []
    for i, year in enumerate(range(1981, 1991)):
        rows.append(('A-north', 'Alder Creek', 'A', 'Coho', 'Adult', year, 10 + i, 'Spawner abundance', 'Redd count'))
        rows.append(('A-north', 'Alder Creek', 'A', 'Coho', 'Adult', year, 14 + i, 'Spawner abundance', 'Carcass survey'))
        rows.append(('A-south', 'Alder Creek', 'A', 'Coho', 'Adult', year, 5 + (i % 3), 'Spawner abundance', 'Redd count'))
        rows.append(('C-main', 'Coyote Creek', 'C', 'Coho', 'Adult', year, 30 - i, 'Spawner abundance', 'Weir count'))
    rows.append(('A-north', 'Alder Creek', 'A', 'Coho', 'Juvenile', 1985, 500, 'Outmigrants', 'Screw trap'))
    rows.append(('Unmapped', None, None, 'Coho', 'Adult', 1985, 7, 'Spawner abundance', 'Redd count'))
    return pd.DataFrame(rows, columns=[
        'Population', 'Watershed', 'GEO_ID_POLY', 'Species', 'Life Stage',
        'Brood Year', 'Value', 'Metric', 'Estimation method',
    ])


@pytest.fixture
def coverage():
    return pd.DataFrame({
        'GEO_ID_POLY': ['A', 'C'],
        'total_area': [1000.0, 1000.0],
        'protected_area': [600.0, 500.0],
        'percent_protected': [60.0, 50.0],
    })
