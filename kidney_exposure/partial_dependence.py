"""
Partial Dependence Module

Marginal effect of one (or two) features on a trained Forest: clamp the
feature(s) to each grid value across a copy of every row, predict, and
average over rows. The average runs over the empirical joint distribution
of the remaining predictors.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.spatial import Delaunay, QhullError

from kidney_exposure.config import ENGINE, cfg, resolve, tree_rng
from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import DataError
from kidney_exposure.forest import Forest

logger = logging.getLogger(__name__)


# === 1. RESULT TYPES ===

@dataclass(frozen=True, eq=False)
class PDPCurve:
    """Ordered (grid value, averaged prediction) pairs for one feature."""
    feature: str
    grid: np.ndarray
    values: np.ndarray
    n_rows: np.ndarray
    levels: tuple | None = None

    def __len__(self) -> int:
        return len(self.grid)

    def __iter__(self):
        return iter(zip(self.grid.tolist(), self.values.tolist()))

    @property
    def amplitude(self) -> float:
        """max - min of the curve; 0 for a flat curve."""
        return float(self.values.max() - self.values.min()) if len(self.values) else 0.0

    def centered(self) -> np.ndarray:
        return self.values - self.values.mean()

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame({
            "feature": self.feature,
            "grid_value": self.grid,
            "prediction": self.values,
            "n_rows": self.n_rows,
        })
        if self.levels is not None:
            df["level"] = [self.levels[int(code)] for code in self.grid]
        return df


@dataclass(frozen=True, eq=False)
class PDPSurface:
    """Two-way partial dependence on the cross product of two grids."""
    feature_a: str
    feature_b: str
    grid_a: np.ndarray
    grid_b: np.ndarray
    values: np.ndarray  # shape (len(grid_a), len(grid_b))

    def to_frame(self) -> pd.DataFrame:
        a, b = np.meshgrid(self.grid_a, self.grid_b, indexing="ij")
        return pd.DataFrame({
            self.feature_a: a.ravel(),
            self.feature_b: b.ravel(),
            "prediction": self.values.ravel(),
        })


# === 2. GRIDS AND ROW SAMPLES ===

def feature_grid(values: np.ndarray, grid_size: int, categorical: bool = False) -> np.ndarray:
    """
    Representative values of a feature.

    Continuous: deduplicated empirical quantiles at linspace(0, 1, grid_size),
    so the grid can be shorter than grid_size for features with few distinct
    values. Categorical: every observed level code.
    """
    if grid_size < 2:
        raise ValueError(f"grid_size must be >= 2, got {grid_size}")
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        raise DataError("Cannot build a grid from an empty column")
    if categorical:
        return np.unique(values)
    return np.unique(np.quantile(values, np.linspace(0.0, 1.0, grid_size)))


def sample_rows(X: np.ndarray, n_samples: int | None, seed: int) -> np.ndarray:
    """Seeded row subsample without replacement (all rows when n_samples is None)."""
    if n_samples is None or n_samples >= X.shape[0]:
        return X
    if n_samples < 1:
        raise ValueError(f"n_samples must be >= 1, got {n_samples}")
    rng = tree_rng(seed, 0, ENGINE.STREAM_SUBSAMPLE)
    idx = np.sort(rng.choice(X.shape[0], size=n_samples, replace=False))
    return X[idx]


class _Envelope:
    """Membership test for the convex hull of the training rows over some columns."""

    def __init__(self, X_train: np.ndarray, columns: list[int]):
        self.columns = columns
        points = X_train[:, columns]
        if len(columns) == 1:
            self.low, self.high = points.min(), points.max()
            self.hull = None
            return
        try:
            self.hull = Delaunay(points)
        except QhullError as exc:
            raise DataError(f"Training envelope is degenerate over {len(columns)} columns: {exc}") from exc

    def contains(self, X: np.ndarray) -> np.ndarray:
        points = X[:, self.columns]
        if self.hull is None:
            return (points[:, 0] >= self.low) & (points[:, 0] <= self.high)
        return self.hull.find_simplex(points) >= 0


def clamped_average(
    forest: Forest,
    X_rows: np.ndarray,
    columns: list[int],
    grid_points: np.ndarray,
    envelope: _Envelope | None = None,
    batch_rows: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Average forest prediction with `columns` clamped to each grid point.

    Args:
        forest: Trained forest.
        X_rows: (n, p) rows to average over.
        columns: feature indices being clamped.
        grid_points: (G, len(columns)) clamp values.
        envelope: optional hull; clamped rows outside it are excluded.
        batch_rows: cap on rows sent to the forest at once.

    Returns:
        means (G,) and the number of rows averaged at each point (G,).
        Means are NaN where every row was excluded.
    """
    batch_rows = resolve(batch_rows, "interpretability", "predict_batch_rows")
    grid_points = np.asarray(grid_points, dtype=float).reshape(-1, len(columns))
    n = X_rows.shape[0]
    n_points = grid_points.shape[0]
    points_per_batch = max(1, batch_rows // max(n, 1))

    means = np.full(n_points, np.nan)
    counts = np.zeros(n_points, dtype=int)
    for start in range(0, n_points, points_per_batch):
        pts = grid_points[start:start + points_per_batch]
        block = np.tile(X_rows, (len(pts), 1))
        for c, col in enumerate(columns):
            block[:, col] = np.repeat(pts[:, c], n)
        pred = forest.predict_matrix(block).reshape(len(pts), n)

        if envelope is None:
            means[start:start + len(pts)] = pred.mean(axis=1)
            counts[start:start + len(pts)] = n
            continue
        inside = envelope.contains(block).reshape(len(pts), n)
        kept = inside.sum(axis=1)
        sums = np.where(inside, pred, 0.0).sum(axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            means[start:start + len(pts)] = np.where(kept > 0, sums / kept, np.nan)
        counts[start:start + len(pts)] = kept
    return means, counts


# === 3. ONE-WAY PARTIAL DEPENDENCE ===

def compute_pdp(
    forest: Forest,
    dataset: Dataset,
    feature: str,
    grid_size: int | None = None,
    n_samples: int | None = None,
    seed: int | None = None,
    envelope: bool = False,
    envelope_features: list[str] | None = None,
) -> PDPCurve:
    """
    Partial dependence curve of `feature`.

    Args:
        forest: Trained forest.
        dataset: Rows whose empirical distribution the other predictors are
            averaged over (usually the training data).
        feature: Feature to vary.
        grid_size: Number of quantile grid points before deduplication.
        n_samples: Optional row subsample size.
        seed: Subsample seed (defaults to the forest seed).
        envelope: Exclude clamped rows outside the training convex hull.
        envelope_features: Hull columns (default: every continuous forest
            feature). Hull cost grows quickly with the number of columns.

    Returns:
        PDPCurve; grid values whose rows were all excluded are dropped.
    """
    grid_size = resolve(grid_size, "interpretability", "grid_size")
    n_samples = n_samples if n_samples is not None else cfg["interpretability"]["n_samples"]
    seed = forest.seed if seed is None else seed

    j = forest.feature_index(feature)
    spec = forest.features[j]
    X_all = forest.encode(dataset)
    grid = feature_grid(X_all[:, j], grid_size, categorical=spec.is_categorical)
    X_rows = sample_rows(X_all, n_samples, seed)

    hull = None
    if envelope:
        if envelope_features is None:
            envelope_features = [s.name for s in forest.features if not s.is_categorical]
        if feature not in envelope_features:
            envelope_features = [feature] + list(envelope_features)
        hull = _Envelope(forest.X, [forest.feature_index(name) for name in envelope_features])

    means, counts = clamped_average(forest, X_rows, [j], grid[:, None], envelope=hull)
    keep = counts > 0
    if not keep.all():
        logger.warning("PDP '%s': %d of %d grid values fall outside the training envelope and were dropped",
                       feature, int((~keep).sum()), len(grid))

    return PDPCurve(
        feature=feature,
        grid=grid[keep],
        values=means[keep],
        n_rows=counts[keep],
        levels=spec.levels if spec.is_categorical else None,
    )


# === 4. TWO-WAY PARTIAL DEPENDENCE ===

def compute_pdp_2d(
    forest: Forest,
    dataset: Dataset,
    feature_a: str,
    feature_b: str,
    grid_size: int | None = None,
    n_samples: int | None = None,
    seed: int | None = None,
) -> PDPSurface:
    """Partial dependence surface of two features over their grid cross product."""
    grid_size = resolve(grid_size, "interpretability", "interaction_grid_size")
    n_samples = n_samples if n_samples is not None else cfg["interpretability"]["n_samples"]
    seed = forest.seed if seed is None else seed
    if feature_a == feature_b:
        raise ValueError(f"Two distinct features are required, got '{feature_a}' twice")

    ja, jb = forest.feature_index(feature_a), forest.feature_index(feature_b)
    X_all = forest.encode(dataset)
    grid_a = feature_grid(X_all[:, ja], grid_size, forest.features[ja].is_categorical)
    grid_b = feature_grid(X_all[:, jb], grid_size, forest.features[jb].is_categorical)
    X_rows = sample_rows(X_all, n_samples, seed)

    a, b = np.meshgrid(grid_a, grid_b, indexing="ij")
    means, _ = clamped_average(forest, X_rows, [ja, jb], np.column_stack([a.ravel(), b.ravel()]))
    return PDPSurface(
        feature_a=feature_a,
        feature_b=feature_b,
        grid_a=grid_a,
        grid_b=grid_b,
        values=means.reshape(len(grid_a), len(grid_b)),
    )
