"""
Shared pytest fixtures: synthetic listings tables and a synthetic linear dataset.
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from airbnb_price.data_processing import clean_listings
from airbnb_price.features import FeatureSpec

NOISE_COLS = tuple(f"z{i}" for i in range(10))


@pytest.fixture
def raw_listings():
    """AB_NYC_2019-like raw table (string prices, missing reviews, a few bad rows)."""
    rng = np.random.default_rng(0)
    n = 400
    groups = rng.choice(["Manhattan", "Brooklyn", "Queens", "Bronx", "Staten Island"], size=n,
                        p=[0.45, 0.4, 0.1, 0.04, 0.01])
    room = rng.choice(["Entire home/apt", "Private room", "Shared room"], size=n, p=[0.5, 0.45, 0.05])
    n_reviews = rng.poisson(12, size=n).astype(float)
    n_reviews[:40] = 0
    rpm = np.round(n_reviews / 12.0 + rng.normal(0, 0.05, size=n), 3)
    rpm[n_reviews == 0] = np.nan
    rpm[50:60] = np.nan
    base = np.where(room == "Entire home/apt", 180, np.where(room == "Private room", 80, 45))
    price = np.round(base * np.where(groups == "Manhattan", 1.4, 1.0) + rng.normal(0, 20, size=n), 0)
    price = np.clip(price, 10, None)
    price_str = np.array([f"${p:,.2f}" for p in price], dtype=object)
    price_str[0] = "$0.00"
    price_str[1] = "$5,000.00"
    price_str[2] = "not a price"

    return pd.DataFrame({
        "id": np.arange(n),
        "name": [f"listing {i}" for i in range(n)],
        "neighbourhood_group": groups,
        "neighbourhood": [f"{g[:3]}-{rng.integers(0, 6)}" for g in groups],
        "latitude": rng.uniform(40.55, 40.88, size=n),
        "longitude": rng.uniform(-74.2, -73.75, size=n),
        "room_type": room,
        "price": price_str,
        "minimum_nights": rng.integers(1, 30, size=n).astype(float),
        "number_of_reviews": n_reviews,
        "reviews_per_month": rpm,
        "calculated_host_listings_count": rng.integers(1, 5, size=n).astype(float),
        "availability_365": rng.integers(0, 366, size=n).astype(float),
        "instant_bookable": rng.choice(["t", "f"], size=n),
    })


@pytest.fixture
def listings(raw_listings):
    df, _ = clean_listings(raw_listings)
    return df


@pytest.fixture
def linear_data():
    """1,000 rows: price = 50 + 20*x + N(0, 5), plus 10 independent noise columns."""
    rng = np.random.default_rng(7)
    n = 1000
    x = rng.uniform(0, 10, size=n)
    df = pd.DataFrame({"x": x})
    for c in NOISE_COLS:
        df[c] = rng.normal(0, 1, size=n)
    df["price"] = 50 + 20 * x + rng.normal(0, 5, size=n)
    return df


@pytest.fixture
def linear_spec():
    return FeatureSpec(numeric=("x",) + NOISE_COLS)
