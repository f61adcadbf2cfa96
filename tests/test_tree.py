import numpy as np
import pytest

from kidney_exposure.errors import EmptyDatasetError
from kidney_exposure.tree import LEAF, build_tree


def _data(n=200, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(0, 1, size=(n, 3))
    y = 3.0 * X[:, 0] + np.where(X[:, 1] > 0.5, 1.0, 0.0) + rng.normal(0, 0.1, n)
    return X, y


def test_constant_outcome_is_a_single_leaf():
    X, _ = _data()
    tree = build_tree(X, np.full(len(X), 2.5), 3, 1, np.random.default_rng(0))
    assert tree.n_nodes == 1
    assert tree.is_leaf(0)
    np.testing.assert_array_equal(tree.predict(X), 2.5)


def test_min_leaf_size_respected():
    X, y = _data()
    tree = build_tree(X, y, 2, 7, np.random.default_rng(1))
    leaves = tree.feature == LEAF
    assert tree.n_nodes > 1
    assert tree.n_samples[leaves].min() >= 7
    internal = np.flatnonzero(~leaves)
    np.testing.assert_array_equal(
        tree.n_samples[tree.left[internal]] + tree.n_samples[tree.right[internal]],
        tree.n_samples[internal],
    )


def test_same_generator_seed_gives_identical_tree():
    X, y = _data()
    a = build_tree(X, y, 2, 3, np.random.default_rng(42))
    b = build_tree(X, y, 2, 3, np.random.default_rng(42))
    for attr in ("feature", "threshold", "left", "right", "value"):
        np.testing.assert_array_equal(getattr(a, attr), getattr(b, attr))


def test_step_function_is_split_at_the_midpoint():
    X = np.arange(10, dtype=float).reshape(-1, 1)
    y = (X[:, 0] >= 5).astype(float)
    tree = build_tree(X, y, 1, 1, np.random.default_rng(0))
    assert tree.n_nodes == 3
    assert tree.feature[0] == 0
    assert tree.threshold[0] == 4.5
    np.testing.assert_array_equal(tree.predict(X), y)


def test_ties_go_to_the_lower_feature_index():
    x = np.arange(20, dtype=float)
    X = np.column_stack([x, x])
    y = (x >= 10).astype(float)
    tree = build_tree(X, y, 2, 1, np.random.default_rng(0))
    assert tree.feature[0] == 0


def test_max_depth():
    X, y = _data()
    stump = build_tree(X, y, 3, 1, np.random.default_rng(0), max_depth=0)
    assert stump.n_nodes == 1
    shallow = build_tree(X, y, 3, 1, np.random.default_rng(0), max_depth=2)
    assert shallow.max_depth_reached <= 2


def test_feature_gain_accounts_for_total_decrease():
    X, y = _data()
    tree = build_tree(X, y, 3, 5, np.random.default_rng(0))
    leaves = tree.feature == LEAF
    total = tree.impurity[0] - tree.impurity[leaves].sum()
    assert tree.feature_gain().sum() == pytest.approx(total)
    # the pure-noise column carries little of the decrease
    assert tree.feature_gain()[0] > tree.feature_gain()[2]


def test_zero_rows_raise():
    with pytest.raises(EmptyDatasetError):
        build_tree(np.empty((0, 2)), np.empty(0), 1, 1, np.random.default_rng(0))


def test_invalid_parameters():
    X, y = _data(20)
    with pytest.raises(ValueError):
        build_tree(X, y, 4, 1, np.random.default_rng(0))
    with pytest.raises(ValueError):
        build_tree(X, y, 1, 0, np.random.default_rng(0))


def test_apply_checks_width():
    X, y = _data(50)
    tree = build_tree(X, y, 3, 5, np.random.default_rng(0))
    with pytest.raises(ValueError):
        tree.apply(X[:, :2])
