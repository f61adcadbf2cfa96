"""
Regression Tree Builder

Greedy binary regression tree grown on one bootstrap sample. The tree is
stored as an index-addressed node arena (parallel numpy arrays, root at
index 0) so that trees are plain data: cheap to pickle between workers and
to traverse vectorised at prediction time.
"""

import logging
from dataclasses import dataclass

import numpy as np

from kidney_exposure.config import ENGINE
from kidney_exposure.errors import EmptyDatasetError

logger = logging.getLogger(__name__)

LEAF = -1


@dataclass(frozen=True, eq=False)
class RegressionTree:
    """
    Node arena of a fitted regression tree.

    Attributes:
        feature: split feature per node, LEAF (-1) for leaves.
        threshold: split threshold; rows with x <= threshold go left.
        left, right: child node indices (LEAF for leaves).
        value: mean outcome of the training rows routed to the node.
        n_samples: training rows at the node.
        impurity: sum of squared deviations from the node mean.
        depth: depth of the node (root = 0).
        n_features: width of the feature matrix the tree was grown on.
    """
    feature: np.ndarray
    threshold: np.ndarray
    left: np.ndarray
    right: np.ndarray
    value: np.ndarray
    n_samples: np.ndarray
    impurity: np.ndarray
    depth: np.ndarray
    n_features: int

    @property
    def n_nodes(self) -> int:
        return len(self.feature)

    @property
    def n_leaves(self) -> int:
        return int(np.sum(self.feature == LEAF))

    @property
    def max_depth_reached(self) -> int:
        return int(self.depth.max())

    def is_leaf(self, node: int) -> bool:
        return bool(self.feature[node] == LEAF)

    def apply(self, X: np.ndarray) -> np.ndarray:
        """Index of the leaf each row of X lands in."""
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_features:
            raise ValueError(f"Expected a 2-D matrix with {self.n_features} columns, got shape {X.shape}")
        node = np.zeros(X.shape[0], dtype=np.intp)
        while True:
            split_feature = self.feature[node]
            active = np.flatnonzero(split_feature != LEAF)
            if active.size == 0:
                return node
            at = node[active]
            go_left = X[active, split_feature[active]] <= self.threshold[at]
            node[active] = np.where(go_left, self.left[at], self.right[at])

    def predict(self, X: np.ndarray) -> np.ndarray:
        return self.value[self.apply(X)]

    def split_features(self) -> np.ndarray:
        """Sorted indices of the features used by at least one split."""
        return np.unique(self.feature[self.feature != LEAF])

    def feature_gain(self) -> np.ndarray:
        """Total impurity (SSE) decrease attributed to each feature."""
        gain = np.zeros(self.n_features)
        internal = np.flatnonzero(self.feature != LEAF)
        decrease = (self.impurity[internal]
                    - self.impurity[self.left[internal]]
                    - self.impurity[self.right[internal]])
        np.add.at(gain, self.feature[internal], decrease)
        return gain

    def __str__(self) -> str:
        return (f"RegressionTree(nodes={self.n_nodes}, leaves={self.n_leaves}, "
                f"depth={self.max_depth_reached})")

    def __repr__(self) -> str:
        return self.__str__()


class TreeBuilder:
    """
    Grows one RegressionTree.

    Attributes:
        max_features: features drawn (without replacement) at each node.
        min_leaf_size: minimum rows in each child of a split.
        max_depth: depth at which nodes become leaves (None = unlimited).
        rng: tree-local generator; the only source of randomness.
    """

    def __init__(self, max_features: int, min_leaf_size: int,
                 rng: np.random.Generator, max_depth: int | None = None):
        if min_leaf_size < 1:
            raise ValueError(f"min_leaf_size must be >= 1, got {min_leaf_size}")
        if max_features < 1:
            raise ValueError(f"max_features must be >= 1, got {max_features}")
        if max_depth is not None and max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        self.max_features = int(max_features)
        self.min_leaf_size = int(min_leaf_size)
        self.max_depth = max_depth
        self.rng = rng

    def build(self, X: np.ndarray, y: np.ndarray) -> RegressionTree:
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if X.ndim != 2 or y.ndim != 1 or X.shape[0] != y.shape[0]:
            raise ValueError(f"X {X.shape} and y {y.shape} are not aligned")
        if len(y) == 0:
            raise EmptyDatasetError("Cannot grow a tree on zero rows")
        n_features = X.shape[1]
        if self.max_features > n_features:
            raise ValueError(f"max_features={self.max_features} exceeds {n_features} features")

        nodes = {key: [] for key in ("feature", "threshold", "left", "right",
                                     "value", "n_samples", "impurity", "depth")}

        def new_node(depth: int) -> int:
            for key in ("feature", "left", "right"):
                nodes[key].append(LEAF)
            for key in ("threshold", "value", "impurity"):
                nodes[key].append(0.0)
            nodes["n_samples"].append(0)
            nodes["depth"].append(depth)
            return len(nodes["depth"]) - 1

        stack = [(new_node(0), np.arange(len(y)))]
        while stack:
            idx, rows = stack.pop()
            ys = y[rows]
            mean = ys.mean()
            sse = float(np.sum((ys - mean) ** 2))
            nodes["value"][idx] = mean
            nodes["n_samples"][idx] = len(rows)
            nodes["impurity"][idx] = sse

            if self._should_stop(ys, nodes["depth"][idx]):
                continue
            split = self._search_best_split(X[rows], ys - mean, sse)
            if split is None:
                continue

            feature_idx, threshold = split
            mask = X[rows, feature_idx] <= threshold
            left_idx = new_node(nodes["depth"][idx] + 1)
            right_idx = new_node(nodes["depth"][idx] + 1)
            nodes["feature"][idx] = feature_idx
            nodes["threshold"][idx] = threshold
            nodes["left"][idx] = left_idx
            nodes["right"][idx] = right_idx
            # left child popped first: depth-first, left-to-right numbering of work
            stack.append((right_idx, rows[~mask]))
            stack.append((left_idx, rows[mask]))

        return RegressionTree(
            feature=np.asarray(nodes["feature"], dtype=np.intp),
            threshold=np.asarray(nodes["threshold"], dtype=float),
            left=np.asarray(nodes["left"], dtype=np.intp),
            right=np.asarray(nodes["right"], dtype=np.intp),
            value=np.asarray(nodes["value"], dtype=float),
            n_samples=np.asarray(nodes["n_samples"], dtype=np.intp),
            impurity=np.asarray(nodes["impurity"], dtype=float),
            depth=np.asarray(nodes["depth"], dtype=np.intp),
            n_features=n_features,
        )

    def _should_stop(self, ys: np.ndarray, depth: int) -> bool:
        if len(ys) < 2 * self.min_leaf_size:
            return True
        if self.max_depth is not None and depth >= self.max_depth:
            return True
        # pure node
        return bool(ys.max() == ys.min())

    def _search_best_split(self, X_node: np.ndarray, y_centered: np.ndarray,
                           parent_sse: float) -> tuple[int, float] | None:
        """
        Best (feature, threshold) over a random feature subset.

        Candidates are visited in ascending feature index and ascending
        threshold; only a strictly smaller SSE replaces the incumbent.
        """
        n_features = X_node.shape[1]
        candidates = np.sort(self.rng.choice(n_features, size=self.max_features, replace=False))

        best = None
        best_sse = np.inf
        for feature_idx in candidates:
            found = self._scan_feature(X_node[:, feature_idx], y_centered)
            if found is None:
                continue
            threshold, sse = found
            if sse < best_sse:
                best, best_sse = (int(feature_idx), threshold), sse

        if best is None:
            return None
        if parent_sse - best_sse <= ENGINE.SPLIT_GAIN_RTOL * parent_sse:
            return None
        return best

    def _scan_feature(self, x: np.ndarray, y_centered: np.ndarray) -> tuple[float, float] | None:
        """Lowest child SSE over midpoints of one feature, via cumulative sums."""
        n = len(x)
        k = self.min_leaf_size
        order = np.argsort(x, kind="mergesort")
        xs = x[order]
        if xs[0] == xs[-1]:
            return None
        ys = y_centered[order]
        csum = np.cumsum(ys)
        csq = np.cumsum(ys * ys)

        n_left = np.arange(k, n - k + 1)
        n_left = n_left[xs[n_left - 1] < xs[n_left]]
        if n_left.size == 0:
            return None

        left_sum = csum[n_left - 1]
        left_sq = csq[n_left - 1]
        right_sum = csum[-1] - left_sum
        right_sq = csq[-1] - left_sq
        sse = (left_sq - left_sum ** 2 / n_left) + (right_sq - right_sum ** 2 / (n - n_left))

        best = int(np.argmin(sse))
        lo, hi = xs[n_left[best] - 1], xs[n_left[best]]
        threshold = lo + (hi - lo) / 2.0
        if threshold >= hi:
            # adjacent floats: keep the split between lo and hi
            threshold = lo
        return float(threshold), float(sse[best])


def build_tree(
    X: np.ndarray,
    y: np.ndarray,
    max_features: int,
    min_leaf_size: int,
    rng: np.random.Generator,
    max_depth: int | None = None,
) -> RegressionTree:
    """
    Grow one greedy regression tree.

    Args:
        X: (n, p) float feature matrix (categoricals as level codes).
        y: (n,) outcome.
        max_features: size of the random feature subset at each node.
        min_leaf_size: minimum rows per child.
        rng: deterministic generator supplied by the caller.
        max_depth: optional depth cap.

    Returns:
        RegressionTree with root at index 0.
    """
    builder = TreeBuilder(max_features=max_features, min_leaf_size=min_leaf_size,
                          rng=rng, max_depth=max_depth)
    tree = builder.build(X, y)
    logger.debug("Grew %s on %d rows", tree, len(y))
    return tree
