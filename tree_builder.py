from __future__ import annotations

from dataclasses import dataclass
import logging

import numpy as np

from errors import InvalidInputError, check_positive_int
from impurity import CRITERIA_BY_TASK, TargetStatsProvider
from split_search import ExactSplitSearch, SplitCandidate

logger = logging.getLogger(__name__)


@dataclass
class TreeNode:
    """One node of a grown tree.

    `TreeBuilder` fills nodes in place while growing; once `build_tree`
    returns, nothing writes to them again.
    """

    depth: int
    n_samples: int
    value: float | np.ndarray = 0.0
    is_leaf: bool = True
    split: SplitCandidate | None = None
    impurity_decrease: float = 0.0
    left: TreeNode | None = None
    right: TreeNode | None = None


@dataclass
class TreeBuildMetrics:
    nodes_visited: int = 0
    nodes_split: int = 0
    leaves: int = 0
    max_depth_reached: int = 0
    candidates_evaluated: int = 0
    split_search_time_sec: float = 0.0


@dataclass
class TreeBuilderParams:
    mtry: int = 1
    max_depth: int | None = None
    min_node_size: int = 1
    criterion: str = "variance"
    random_state: int = 0

    def __post_init__(self) -> None:
        check_positive_int("mtry", self.mtry)
        check_positive_int("max_depth", self.max_depth, allow_none=True)
        check_positive_int("min_node_size", self.min_node_size)
        known = {c for criteria in CRITERIA_BY_TASK.values() for c in criteria}
        if self.criterion not in known:
            raise InvalidInputError("criterion", self.criterion, f"must be one of: {', '.join(sorted(known))}")


class DecisionTree:
    """A grown tree; read-only, used for prediction and importance only."""

    def __init__(self, root: TreeNode, n_features: int, task: str, n_classes: int = 0) -> None:
        self.root = root
        self.n_features = n_features
        self.task = task
        self.n_classes = n_classes

    def _leaf_for_row(self, row: np.ndarray) -> TreeNode:
        node = self.root
        while not node.is_leaf:
            assert node.split is not None
            go_left = bool(node.split.goes_left(row[node.split.feature]))
            node = node.left if go_left else node.right
            assert node is not None
        return node

    def predict_row(self, row: np.ndarray) -> float | np.ndarray:
        return self._leaf_for_row(np.asarray(row, dtype=np.float64)).value

    def predict_batch(self, X: np.ndarray) -> np.ndarray:
        """Leaf means (regression) or leaf class distributions, one row per input row."""
        X = np.asarray(X, dtype=np.float64)
        if self.task == "regression":
            preds = np.zeros(X.shape[0], dtype=np.float64)
        else:
            preds = np.zeros((X.shape[0], self.n_classes), dtype=np.float64)
        for i in range(X.shape[0]):
            preds[i] = self._leaf_for_row(X[i]).value
        return preds

    def vote_batch(self, X: np.ndarray) -> np.ndarray:
        """Class index this tree votes for, lowest index on ties."""
        return np.argmax(self.predict_batch(X), axis=1)

    def feature_importance(self) -> np.ndarray:
        importance = np.zeros(self.n_features, dtype=np.float64)
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                continue
            assert node.split is not None
            importance[node.split.feature] += node.impurity_decrease
            stack.append(node.left)
            stack.append(node.right)
        return importance

    def n_leaves(self) -> int:
        count = 0
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                count += 1
            else:
                stack.extend([node.left, node.right])
        return count


class TreeBuilder:
    def __init__(
        self,
        X: np.ndarray,
        categorical: np.ndarray | None,
        target_stats: TargetStatsProvider,
        params: TreeBuilderParams,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.X = np.ascontiguousarray(np.asarray(X, dtype=np.float64))
        if self.X.ndim != 2:
            raise InvalidInputError("X", self.X.shape, "must be a 2D array")
        self.n_samples, self.n_features = self.X.shape
        if categorical is None:
            categorical = np.zeros(self.n_features, dtype=bool)
        self.categorical = np.asarray(categorical, dtype=bool)
        if self.categorical.shape != (self.n_features,):
            raise InvalidInputError("categorical", self.categorical.shape, "must have one flag per feature")
        if params.mtry > self.n_features:
            raise InvalidInputError("mtry", params.mtry, f"exceeds the {self.n_features} available features")
        if params.criterion != target_stats.criterion:
            raise InvalidInputError(
                "criterion", params.criterion, f"target statistics were built for {target_stats.criterion}"
            )

        self.target_stats = target_stats
        self.params = params
        self.rng = rng if rng is not None else np.random.default_rng(params.random_state)
        self.metrics = TreeBuildMetrics()

    def _candidate_features(self) -> np.ndarray:
        if self.params.mtry >= self.n_features:
            return np.arange(self.n_features, dtype=np.int64)
        chosen = self.rng.choice(self.n_features, size=self.params.mtry, replace=False)
        return np.sort(chosen).astype(np.int64)

    def _is_splittable(self, rows: np.ndarray, depth: int) -> bool:
        if rows.size <= self.params.min_node_size:
            return False
        if self.params.max_depth is not None and depth >= self.params.max_depth:
            return False
        if self.target_stats.is_pure(rows):
            return False
        return True

    def build_tree(self, rows: np.ndarray | None = None) -> DecisionTree:
        """Grow one tree over `rows` (repeats allowed, as in a bootstrap sample)."""
        if rows is None:
            rows = np.arange(self.n_samples, dtype=np.int64)
        else:
            rows = np.asarray(rows, dtype=np.int64)
        if rows.size == 0:
            raise InvalidInputError("rows", 0, "cannot grow a tree from zero rows")

        root = TreeNode(depth=0, n_samples=int(rows.size))
        stack: list[tuple[TreeNode, np.ndarray]] = [(root, rows)]

        while stack:
            node, node_rows = stack.pop()
            self.metrics.nodes_visited += 1
            self.metrics.max_depth_reached = max(self.metrics.max_depth_reached, node.depth)
            node.value = self.target_stats.leaf_value(node_rows)

            if not self._is_splittable(node_rows, node.depth):
                self.metrics.leaves += 1
                continue

            search = ExactSplitSearch(
                node_rows=node_rows,
                candidate_features=self._candidate_features(),
                X=self.X,
                categorical=self.categorical,
                target_stats=self.target_stats,
            )
            result = search.search()
            self.metrics.candidates_evaluated += result.metrics.candidates_evaluated
            self.metrics.split_search_time_sec += result.metrics.time_spent_sec

            # No impurity reduction available: leaf regardless of size or depth.
            if result.candidate is None:
                self.metrics.leaves += 1
                continue

            left_mask = result.candidate.goes_left(self.X[node_rows, result.candidate.feature])
            left_rows = node_rows[left_mask]
            right_rows = node_rows[~left_mask]

            node.is_leaf = False
            node.split = result.candidate
            node.impurity_decrease = result.decrease
            node.left = TreeNode(depth=node.depth + 1, n_samples=int(left_rows.size))
            node.right = TreeNode(depth=node.depth + 1, n_samples=int(right_rows.size))
            self.metrics.nodes_split += 1

            stack.append((node.right, right_rows))
            stack.append((node.left, left_rows))

        logger.debug(
            "grew tree: %d nodes, %d leaves, depth %d",
            self.metrics.nodes_visited,
            self.metrics.leaves,
            self.metrics.max_depth_reached,
        )
        return DecisionTree(
            root=root,
            n_features=self.n_features,
            task=self.target_stats.task,
            n_classes=self.target_stats.n_classes,
        )
