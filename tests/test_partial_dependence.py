import numpy as np
import pandas as pd
import pytest

from kidney_exposure.dataset import Dataset
from kidney_exposure.errors import DataError
from kidney_exposure.forest import train_forest
from kidney_exposure.partial_dependence import (
    clamped_average,
    compute_pdp,
    compute_pdp_2d,
    feature_grid,
    sample_rows,
)


def test_feature_grid_deduplicates_quantiles():
    values = np.array([1.0] * 50 + [2.0] * 30 + [3.0] * 20)
    grid = feature_grid(values, 20)
    np.testing.assert_array_equal(grid, [1.0, 2.0, 3.0])


def test_feature_grid_spans_the_data():
    values = np.random.default_rng(0).normal(size=500)
    grid = feature_grid(values, 11)
    assert len(grid) == 11
    assert grid[0] == values.min()
    assert grid[-1] == values.max()
    assert np.all(np.diff(grid) > 0)


def test_feature_grid_categorical_uses_all_levels():
    np.testing.assert_array_equal(feature_grid(np.array([2.0, 0.0, 2.0, 1.0]), 2, categorical=True),
                                  [0.0, 1.0, 2.0])


def test_feature_grid_size_checked():
    with pytest.raises(ValueError):
        feature_grid(np.arange(5.0), 1)


def test_sample_rows_is_seeded():
    X = np.arange(200.0).reshape(100, 2)
    a = sample_rows(X, 10, seed=3)
    assert a.shape == (10, 2)
    np.testing.assert_array_equal(a, sample_rows(X, 10, seed=3))
    assert sample_rows(X, None, seed=3) is X
    assert sample_rows(X, 500, seed=3) is X


def test_pdp_of_unused_feature_is_flat(forest, forest_dataset):
    curve = compute_pdp(forest, forest_dataset, "rare")
    assert len(curve) == 2
    assert curve.amplitude == 0.0
    assert list(curve.to_frame()["level"]) == [0, 1]


def test_pdp_follows_the_signal(forest, forest_dataset):
    curve = compute_pdp(forest, forest_dataset, "x1", grid_size=10)
    assert len(curve) == 10
    assert curve.values[-1] - curve.values[0] > 2.0
    assert (curve.n_rows == len(forest_dataset)).all()
    assert list(curve)[0] == (curve.grid[0], curve.values[0])


def test_categorical_pdp_reports_levels(forest, forest_dataset):
    frame = compute_pdp(forest, forest_dataset, "group").to_frame()
    assert list(frame["level"]) == ["a", "b", "c"]
    pred = frame.set_index("level")["prediction"]
    assert pred["c"] > pred["a"] + 1.0


def test_pdp_average_matches_manual_clamping(forest, forest_dataset):
    curve = compute_pdp(forest, forest_dataset, "x2", grid_size=5)
    X = forest.encode(forest_dataset)
    j = forest.feature_index("x2")
    for value, mean in curve:
        clamped = X.copy()
        clamped[:, j] = value
        assert mean == pytest.approx(forest.predict_matrix(clamped).mean())


def test_batching_does_not_change_values(forest, forest_dataset):
    X = forest.encode(forest_dataset)
    grid = np.linspace(0, 1, 7)[:, None]
    whole, _ = clamped_average(forest, X, [0], grid)
    batched, _ = clamped_average(forest, X, [0], grid, batch_rows=1)
    np.testing.assert_allclose(whole, batched)


def test_subsampled_pdp_is_reproducible(forest, forest_dataset):
    a = compute_pdp(forest, forest_dataset, "x1", n_samples=50, seed=9)
    b = compute_pdp(forest, forest_dataset, "x1", n_samples=50, seed=9)
    np.testing.assert_array_equal(a.values, b.values)
    assert (a.n_rows == 50).all()


def test_unknown_feature_raises(forest, forest_dataset):
    with pytest.raises(DataError):
        compute_pdp(forest, forest_dataset, "bmi")


def test_envelope_excludes_off_support_rows():
    rng = np.random.default_rng(1)
    n = 200
    x1 = rng.uniform(0, 1, n)
    frame = pd.DataFrame({"x1": x1, "x2": x1 + rng.normal(0, 0.05, n)})
    frame["y"] = frame["x1"] + frame["x2"] + rng.normal(0, 0.1, n)
    ds = Dataset.from_frame(frame, {"y": "continuous", "x1": "continuous", "x2": "continuous"})
    forest = train_forest(ds, "y", ["x1", "x2"], n_trees=10, max_features=2,
                          min_leaf_size=5, seed=2, n_jobs=1)

    free = compute_pdp(forest, ds, "x1", grid_size=8)
    guarded = compute_pdp(forest, ds, "x1", grid_size=8, envelope=True)
    assert (free.n_rows == n).all()
    assert len(guarded) >= 1
    assert (guarded.n_rows <= n).all()
    assert guarded.n_rows.min() < n


def test_pdp_2d_surface(forest, forest_dataset):
    surface = compute_pdp_2d(forest, forest_dataset, "x1", "group", grid_size=4)
    assert surface.values.shape == (len(surface.grid_a), 3)
    assert len(surface.to_frame()) == surface.values.size
    with pytest.raises(ValueError):
        compute_pdp_2d(forest, forest_dataset, "x1", "x1")
