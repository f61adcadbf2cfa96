"""
Interaction Strength Module

Friedman & Popescu's H-statistic for feature pairs of a trained Forest:

    H^2 = sum [PD_AB(a, b) - PD_A(a) - PD_B(b)]^2 / sum PD_AB(a, b)^2

with every partial dependence function centred to mean zero over the grid.
H near 0 means the pair acts additively; H near 1 means the joint effect is
mostly interaction.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from kidney_exposure.config import cfg, resolve
from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import ExposureModelError
from kidney_exposure.forest import Forest
from kidney_exposure.partial_dependence import clamped_average, feature_grid, sample_rows

logger = logging.getLogger(__name__)


# ===================================================================
# 1. H-STATISTIC
# ===================================================================

def h_statistic(pd_ab: np.ndarray, pd_a: np.ndarray, pd_b: np.ndarray) -> float:
    """
    H from a two-way surface and the matching one-way curves.

    Args:
        pd_ab: (len(a), len(b)) two-way partial dependence.
        pd_a: (len(a),) one-way partial dependence of A on the same grid.
        pd_b: (len(b),) one-way partial dependence of B on the same grid.

    Returns:
        H in [0, 1]; 0 when the joint surface is flat.
    """
    ab = pd_ab - pd_ab.mean()
    a = pd_a - pd_a.mean()
    b = pd_b - pd_b.mean()
    denom = float(np.sum(ab ** 2))
    if denom <= 0.0:
        return 0.0
    h2 = float(np.sum((ab - a[:, None] - b[None, :]) ** 2)) / denom
    return float(np.sqrt(min(max(h2, 0.0), 1.0)))


@dataclass(frozen=True, eq=False)
class _FeatureGrid:
    name: str
    index: int
    grid: np.ndarray
    pd: np.ndarray


def _prepare(forest: Forest, X_all: np.ndarray, X_rows: np.ndarray,
             feature: str, grid_size: int) -> _FeatureGrid:
    j = forest.feature_index(feature)
    grid = feature_grid(X_all[:, j], grid_size, forest.features[j].is_categorical)
    pd_values, _ = clamped_average(forest, X_rows, [j], grid[:, None])
    return _FeatureGrid(name=feature, index=j, grid=grid, pd=pd_values)


def _pair_h(forest: Forest, X_rows: np.ndarray, fa: _FeatureGrid, fb: _FeatureGrid) -> tuple[str, str, float]:
    try:
        a, b = np.meshgrid(fa.grid, fb.grid, indexing="ij")
        surface, _ = clamped_average(forest, X_rows, [fa.index, fb.index],
                                     np.column_stack([a.ravel(), b.ravel()]))
        h = h_statistic(surface.reshape(len(fa.grid), len(fb.grid)), fa.pd, fb.pd)
    except ExposureModelError as exc:
        raise exc.with_context(pair=(fa.name, fb.name)) from exc
    return fa.name, fb.name, h


def _rows(forest: Forest, dataset: Dataset, n_samples: int | None, seed: int | None):
    n_samples = n_samples if n_samples is not None else cfg["interpretability"]["n_samples"]
    seed = forest.seed if seed is None else seed
    X_all = forest.encode(dataset)
    return X_all, sample_rows(X_all, n_samples, seed)


def pairwise_interaction(
    forest: Forest,
    dataset: Dataset,
    feature_a: str,
    feature_b: str,
    grid_size: int | None = None,
    n_samples: int | None = None,
    seed: int | None = None,
) -> float:
    """
    H-statistic of one feature pair.

    Args:
        forest: Trained forest.
        dataset: Rows the partial dependence averages over.
        feature_a, feature_b: Distinct forest features.
        grid_size: Quantile grid size per feature (before deduplication).
        n_samples: Optional row subsample size.
        seed: Subsample seed (defaults to the forest seed).

    Returns:
        H in [0, 1].
    """
    if feature_a == feature_b:
        raise ValueError(f"Two distinct features are required, got '{feature_a}' twice")
    grid_size = resolve(grid_size, "interpretability", "interaction_grid_size")
    X_all, X_rows = _rows(forest, dataset, n_samples, seed)
    fa = _prepare(forest, X_all, X_rows, feature_a, grid_size)
    fb = _prepare(forest, X_all, X_rows, feature_b, grid_size)
    return _pair_h(forest, X_rows, fa, fb)[2]


# ===================================================================
# 2. ALL PAIRS
# ===================================================================

def iter_pairwise_interactions(
    forest: Forest,
    dataset: Dataset,
    features: Iterable[str] | None = None,
    grid_size: int | None = None,
    n_samples: int | None = None,
    seed: int | None = None,
    n_jobs: int | None = None,
) -> Iterator[tuple[str, str, float]]:
    """
    Yield (feature_a, feature_b, H) for every unordered pair, pair by pair.

    Pairs come out in canonical order (the order of `features`, a before b)
    as soon as each one finishes, so partial results of a long run can be
    inspected. One-way curves are computed once per feature and shared.
    """
    features = list(forest.feature_names if features is None else features)
    if len(features) < 2:
        raise ValueError("At least two features are required for interactions")
    if len(set(features)) != len(features):
        raise ValueError(f"Duplicate features in {features}")
    grid_size = resolve(grid_size, "interpretability", "interaction_grid_size")
    n_jobs = resolve(n_jobs, "forest", "n_jobs")

    X_all, X_rows = _rows(forest, dataset, n_samples, seed)
    grids = {name: _prepare(forest, X_all, X_rows, name, grid_size) for name in features}
    pairs = list(itertools.combinations(features, 2))
    logger.info("Computing H-statistics for %d pairs of %d features (grid=%d, rows=%d)",
                len(pairs), len(features), grid_size, X_rows.shape[0])

    results = Parallel(n_jobs=n_jobs, return_as="generator")(
        delayed(_pair_h)(forest, X_rows, grids[a], grids[b]) for a, b in pairs
    )
    for done, (a, b, h) in enumerate(results, start=1):
        logger.info("H(%s, %s) = %.4f  [%d/%d]", a, b, h, done, len(pairs))
        yield a, b, h


@dataclass(frozen=True, eq=False)
class InteractionMatrix:
    """Symmetric H-statistics over unordered feature pairs; NaN on the diagonal."""
    features: tuple
    values: np.ndarray

    @classmethod
    def from_pairs(cls, features: Iterable[str], pairs: Iterable[tuple[str, str, float]]) -> "InteractionMatrix":
        features = tuple(features)
        index = {name: i for i, name in enumerate(features)}
        values = np.full((len(features), len(features)), np.nan)
        for a, b, h in pairs:
            values[index[a], index[b]] = h
            values[index[b], index[a]] = h
        return cls(features=features, values=values)

    def get(self, feature_a: str, feature_b: str) -> float:
        """H of a pair, independent of argument order."""
        i = self.features.index(feature_a)
        j = self.features.index(feature_b)
        return float(self.values[i, j])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.features), columns=list(self.features))

    def pairs_frame(self) -> pd.DataFrame:
        """Long table of pairs sorted by H, strongest first."""
        rows = [
            {"feature_a": a, "feature_b": b, "h_statistic": self.get(a, b)}
            for a, b in itertools.combinations(self.features, 2)
        ]
        df = pd.DataFrame(rows).sort_values("h_statistic", ascending=False, kind="mergesort")
        df["rank"] = range(1, len(df) + 1)
        return df.reset_index(drop=True)


def interaction_matrix(
    forest: Forest,
    dataset: Dataset,
    features: Iterable[str] | None = None,
    grid_size: int | None = None,
    n_samples: int | None = None,
    seed: int | None = None,
    n_jobs: int | None = None,
    callback: Callable[[str, str, float], None] | None = None,
) -> InteractionMatrix:
    """
    H-statistic for all unordered pairs of `features`.

    `callback(feature_a, feature_b, h)` is called as each pair completes.
    """
    features = list(forest.feature_names if features is None else features)
    collected = []
    for a, b, h in iter_pairwise_interactions(forest, dataset, features, grid_size,
                                              n_samples, seed, n_jobs):
        collected.append((a, b, h))
        if callback is not None:
            callback(a, b, h)
    return InteractionMatrix.from_pairs(features, collected)
