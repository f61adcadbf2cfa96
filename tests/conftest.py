"""Shared synthetic datasets for the test suite."""

import numpy as np
import pandas as pd
import pytest

from kidney_exposure.dataset import Dataset
from kidney_exposure.forest import train_forest

SURVEY_SCHEMA = {
    "ckd": "continuous",
    "lead": "continuous",
    "cadmium": "continuous",
    "age": "continuous",
    "sex": {"kind": "categorical", "levels": [1, 2]},
}

FOREST_SCHEMA = {
    "y": "continuous",
    "x1": "continuous",
    "x2": "continuous",
    "noise": "continuous",
    "group": {"kind": "categorical", "levels": ["a", "b", "c"]},
    "rare": {"kind": "categorical", "levels": [0, 1]},
}

FOREST_FEATURES = ["x1", "x2", "noise", "group", "rare"]


def make_survey_frame(n: int = 900, seed: int = 7) -> pd.DataFrame:
    """Six strata with three PSUs each; PSU labels 1-3 reused in every stratum."""
    rng = np.random.default_rng(seed)
    idx = np.arange(n)
    stratum = idx % 6 + 1
    psu = (idx // 6) % 3 + 1
    lead = rng.lognormal(0.0, 0.5, n)
    cadmium = rng.lognormal(-1.0, 0.4, n)
    age = rng.uniform(20, 80, n)
    sex = rng.integers(1, 3, n)
    eta = -1.0 + 0.8 * (lead - lead.mean()) + 0.03 * (age - 50) + 0.3 * (sex == 2)
    ckd = (rng.uniform(size=n) < 1.0 / (1.0 + np.exp(-eta))).astype(float)
    return pd.DataFrame({
        "ckd": ckd,
        "lead": lead,
        "cadmium": cadmium,
        "age": age,
        "sex": sex,
        "stratum": stratum,
        "psu": psu,
        "w_blood": rng.uniform(0.5, 3.0, n),
        "w_urine": rng.uniform(1.0, 5.0, n),
    })


def make_forest_frame(n: int = 300, seed: int = 3) -> pd.DataFrame:
    """
    y depends on x1 and group only. `rare` has a single 1, so no node can
    ever put min_leaf_size rows on both sides of it.
    """
    rng = np.random.default_rng(seed)
    x1 = rng.uniform(0, 1, n)
    group = rng.choice(["a", "b", "c"], size=n)
    rare = np.zeros(n, dtype=int)
    rare[0] = 1
    y = 4.0 * x1 + 2.0 * (group == "c") + rng.normal(0, 0.3, n)
    return pd.DataFrame({
        "y": y,
        "x1": x1,
        "x2": rng.uniform(0, 1, n),
        "noise": rng.normal(0, 1, n),
        "group": group,
        "rare": rare,
    })


@pytest.fixture(scope="session")
def survey_frame():
    return make_survey_frame()


@pytest.fixture(scope="session")
def survey_dataset(survey_frame):
    return Dataset.from_frame(survey_frame, SURVEY_SCHEMA)


@pytest.fixture(scope="session")
def forest_dataset():
    return Dataset.from_frame(make_forest_frame(), FOREST_SCHEMA)


@pytest.fixture(scope="session")
def forest(forest_dataset):
    return train_forest(forest_dataset, "y", FOREST_FEATURES, n_trees=40,
                        max_features=2, min_leaf_size=10, seed=11, n_jobs=1)
