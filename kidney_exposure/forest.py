"""
Random Forest Ensemble Module

Bagged regression trees with out-of-bag bookkeeping, prediction, OOB error
and permutation variable importance. Each tree draws its bootstrap sample and
its per-node feature subsets from a generator derived from (seed, tree index),
so the ensemble is bit-reproducible for any number of workers.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.metrics import mean_squared_error, r2_score

from kidney_exposure.config import ENGINE, cfg, resolve, tree_rng
from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import DataError, EmptyDatasetError
from kidney_exposure.tree import RegressionTree, build_tree

logger = logging.getLogger(__name__)

# default for arguments whose None has its own meaning
_FROM_CONFIG = object()


# ===================================================================
# 1. FOREST
# ===================================================================

@dataclass(frozen=True, eq=False)
class Forest:
    """
    Trained ensemble. Read-only once returned by `train_forest`.

    Attributes:
        trees: fitted RegressionTrees, in tree-index order.
        bootstrap_indices: in-bag row indices per tree (as drawn).
        oob_indices: sorted out-of-bag row indices per tree.
        seed: root seed the per-tree generators were derived from.
        features: ColumnSpecs of the predictor columns, in matrix order.
        outcome: outcome column name.
        X, y: read-only training matrix and outcome.
    """
    trees: tuple
    bootstrap_indices: tuple
    oob_indices: tuple
    seed: int
    features: tuple
    outcome: str
    X: np.ndarray
    y: np.ndarray
    max_features: int
    min_leaf_size: int
    max_depth: int | None

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    @property
    def feature_names(self) -> list[str]:
        return [spec.name for spec in self.features]

    def feature_index(self, name: str) -> int:
        try:
            return self.feature_names.index(name)
        except ValueError:
            raise DataError("Feature was not used to train the forest", column=name) from None

    # --- encoding ------------------------------------------------------

    def encode(self, data) -> np.ndarray:
        """
        Feature matrix in training layout from a Dataset, DataFrame,
        single-observation mapping, or an already-encoded array.
        """
        if isinstance(data, Dataset):
            data = data.frame
        if isinstance(data, Mapping):
            data = pd.DataFrame([dict(data)])
        if isinstance(data, pd.DataFrame):
            missing = [name for name in self.feature_names if name not in data.columns]
            if missing:
                raise DataError(f"Columns missing for prediction: {missing}")
            return np.column_stack([spec.encode(data[spec.name].to_numpy()) for spec in self.features])

        X = np.asarray(data, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.ndim != 2 or X.shape[1] != len(self.features):
            raise DataError(f"Expected {len(self.features)} feature columns, got shape {X.shape}")
        return X

    # --- prediction ----------------------------------------------------

    def predict_matrix(self, X: np.ndarray, n_trees: int | None = None) -> np.ndarray:
        """Mean leaf output over the first `n_trees` trees (all by default)."""
        trees = self.trees if n_trees is None else self.trees[:n_trees]
        total = np.zeros(X.shape[0])
        for tree in trees:
            total += tree.predict(X)
        return total / len(trees)

    def predict(self, data) -> np.ndarray:
        return self.predict_matrix(self.encode(data))

    def predict_one(self, observation: Mapping) -> float:
        """Forest prediction for one observation given as {feature: value}."""
        return float(self.predict(observation)[0])

    # --- out-of-bag ------------------------------------------------------

    def oob_predictions(self, n_trees: int | None = None) -> np.ndarray:
        """
        Per-row mean prediction over the trees for which the row was OOB.
        NaN for rows that were in-bag for every tree considered.
        """
        n_trees = self.n_trees if n_trees is None else n_trees
        total = np.zeros(len(self.y))
        count = np.zeros(len(self.y))
        for tree, oob in zip(self.trees[:n_trees], self.oob_indices[:n_trees]):
            if oob.size == 0:
                continue
            total[oob] += tree.predict(self.X[oob])
            count[oob] += 1
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(count > 0, total / count, np.nan)

    def oob_error(self, n_trees: int | None = None) -> float:
        """OOB mean squared error over rows with at least one OOB tree."""
        pred = self.oob_predictions(n_trees)
        covered = ~np.isnan(pred)
        if not covered.any():
            return np.nan
        return float(mean_squared_error(self.y[covered], pred[covered]))

    def oob_r2(self, n_trees: int | None = None) -> float:
        """OOB share of outcome variance explained."""
        pred = self.oob_predictions(n_trees)
        covered = ~np.isnan(pred)
        if covered.sum() < 2:
            return np.nan
        return float(r2_score(self.y[covered], pred[covered]))


def _resolve_max_features(max_features, n_features: int) -> int:
    """Number of features drawn per node."""
    if max_features is None:
        return n_features
    if isinstance(max_features, str):
        if max_features == "sqrt":
            return max(1, int(np.sqrt(n_features)))
        if max_features == "all":
            return n_features
        if max_features == "third":
            return max(1, n_features // 3)
        raise ValueError(f"Invalid max_features: {max_features}")
    if isinstance(max_features, (bool, np.bool_)):
        raise ValueError(f"Invalid max_features: {max_features}")
    if isinstance(max_features, (int, np.integer)):
        if max_features < 1:
            raise ValueError(f"max_features must be >= 1, got {max_features}")
        if max_features > n_features:
            logger.warning("max_features=%d exceeds %d features; using %d",
                           max_features, n_features, n_features)
            return n_features
        return int(max_features)
    if isinstance(max_features, float):
        if not 0.0 < max_features <= 1.0:
            raise ValueError(f"Fractional max_features must be in (0, 1], got {max_features}")
        return max(1, int(max_features * n_features))
    raise ValueError(f"Invalid max_features: {max_features}")


def _grow_one(X: np.ndarray, y: np.ndarray, seed: int, tree_index: int,
              max_features: int, min_leaf_size: int, max_depth: int | None):
    rng = tree_rng(seed, tree_index, ENGINE.STREAM_BUILD)
    n = len(y)
    sample = rng.integers(0, n, size=n)
    tree = build_tree(X[sample], y[sample], max_features, min_leaf_size, rng, max_depth)
    in_bag = np.zeros(n, dtype=bool)
    in_bag[sample] = True
    return tree, sample, np.flatnonzero(~in_bag)


def train_forest(
    dataset: Dataset,
    outcome: str,
    features: Iterable[str],
    n_trees: int | None = None,
    max_features=None,
    min_leaf_size: int | None = None,
    seed: int | None = None,
    max_depth=_FROM_CONFIG,
    n_jobs: int | None = None,
) -> Forest:
    """
    Train a bagged regression forest.

    Args:
        dataset: Validated dataset.
        outcome: Continuous outcome column (e.g. eGFR).
        features: Predictor columns.
        n_trees: Number of trees.
        max_features: Features per split: int, fraction, "sqrt", "third" or
            "all". Defaults to the config value.
        min_leaf_size: Minimum rows per leaf.
        seed: Root seed; tree t uses a generator derived from (seed, t).
        max_depth: Depth cap. Omitted: the config value. None: unlimited.
        n_jobs: joblib workers for tree construction.

    Returns:
        Forest.

    Raises:
        EmptyDatasetError: fewer than 2 * min_leaf_size rows.
    """
    n_trees = resolve(n_trees, "forest", "n_trees")
    if max_features is None:
        max_features = cfg["forest"]["max_features"]
    min_leaf_size = resolve(min_leaf_size, "forest", "min_leaf_size")
    seed = resolve(seed, "modeling", "random_seed")
    if max_depth is _FROM_CONFIG:
        max_depth = cfg["forest"]["max_depth"]
    n_jobs = resolve(n_jobs, "forest", "n_jobs")
    if n_trees < 1:
        raise ValueError(f"n_trees must be >= 1, got {n_trees}")
    if min_leaf_size < 1:
        raise ValueError(f"min_leaf_size must be >= 1, got {min_leaf_size}")

    features = list(features)
    if outcome in features:
        raise DataError("Outcome is also listed as a feature", column=outcome)
    specs = tuple(dataset.spec(name) for name in features)
    X = dataset.feature_matrix(features)
    y = dataset.outcome(outcome)

    n = len(y)
    if n < 2 * min_leaf_size:
        raise EmptyDatasetError(
            f"{n} rows cannot support min_leaf_size={min_leaf_size} (need >= {2 * min_leaf_size})",
            n_rows=n,
        )
    m = _resolve_max_features(max_features, X.shape[1])

    results = Parallel(n_jobs=n_jobs)(
        delayed(_grow_one)(X, y, seed, t, m, min_leaf_size, max_depth)
        for t in range(n_trees)
    )
    trees, samples, oobs = zip(*results)

    X.setflags(write=False)
    y.setflags(write=False)
    forest = Forest(
        trees=tuple(trees),
        bootstrap_indices=tuple(samples),
        oob_indices=tuple(oobs),
        seed=int(seed),
        features=specs,
        outcome=outcome,
        X=X,
        y=y,
        max_features=m,
        min_leaf_size=int(min_leaf_size),
        max_depth=max_depth,
    )
    logger.info("Trained forest: %d trees on %d rows x %d features (mtry=%d, min_leaf=%d)",
                n_trees, n, X.shape[1], m, min_leaf_size)
    return forest


# ===================================================================
# 2. VARIABLE IMPORTANCE
# ===================================================================

def _tree_permutation_increase(tree: RegressionTree, X: np.ndarray, y: np.ndarray,
                               oob: np.ndarray, seed: int, tree_index: int) -> np.ndarray:
    """OOB MSE increase per feature for one tree; NaN row if the tree has no OOB rows."""
    n_features = X.shape[1]
    if oob.size == 0:
        return np.full(n_features, np.nan)
    rng = tree_rng(seed, tree_index, ENGINE.STREAM_IMPORTANCE)
    X_oob = X[oob]
    y_oob = y[oob]
    base = mean_squared_error(y_oob, tree.predict(X_oob))

    used = set(tree.split_features().tolist())
    increase = np.zeros(n_features)
    for j in range(n_features):
        if j not in used:
            # permuting an unused feature cannot change the tree's output
            continue
        X_perm = X_oob.copy()
        X_perm[:, j] = rng.permutation(X_perm[:, j])
        increase[j] = mean_squared_error(y_oob, tree.predict(X_perm)) - base
    return increase


def variable_importance(forest: Forest, seed: int | None = None,
                        n_jobs: int | None = None) -> pd.DataFrame:
    """
    OOB permutation importance.

    For every tree, the increase in OOB MSE after permuting one feature
    across that tree's OOB rows; averaged over trees and scaled by the
    across-tree standard deviation.

    Returns:
        DataFrame: feature, importance_mean, importance_std, importance
        (mean / std), n_trees_used, rank; sorted by importance.
    """
    seed = forest.seed if seed is None else seed
    n_jobs = resolve(n_jobs, "forest", "n_jobs")

    per_tree = Parallel(n_jobs=n_jobs)(
        delayed(_tree_permutation_increase)(tree, forest.X, forest.y, oob, seed, t)
        for t, (tree, oob) in enumerate(zip(forest.trees, forest.oob_indices))
    )
    increases = np.vstack(per_tree)
    valid = ~np.isnan(increases[:, 0])
    increases = increases[valid]
    n_used = int(valid.sum())

    if n_used == 0:
        mean = np.full(len(forest.features), np.nan)
        std = np.full(len(forest.features), np.nan)
    else:
        mean = increases.mean(axis=0)
        std = increases.std(axis=0, ddof=1) if n_used > 1 else np.zeros(len(mean))

    with np.errstate(divide="ignore", invalid="ignore"):
        scaled = np.where(std > 0, mean / std, mean)

    df = pd.DataFrame({
        "feature": forest.feature_names,
        "importance_mean": mean,
        "importance_std": std,
        "importance": scaled,
        "n_trees_used": n_used,
    }).sort_values("importance", ascending=False, kind="mergesort")
    df["rank"] = range(1, len(df) + 1)
    return df.reset_index(drop=True)


def impurity_importance(forest: Forest) -> pd.DataFrame:
    """Mean SSE decrease per feature across trees, with its share of the total."""
    gains = np.vstack([tree.feature_gain() for tree in forest.trees]).mean(axis=0)
    total = gains.sum()
    df = pd.DataFrame({
        "feature": forest.feature_names,
        "sse_decrease": gains,
        "share": gains / total if total > 0 else np.zeros_like(gains),
    }).sort_values("sse_decrease", ascending=False, kind="mergesort")
    df["rank"] = range(1, len(df) + 1)
    return df.reset_index(drop=True)
