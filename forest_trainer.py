from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import Sequence

from joblib import Parallel, delayed
import numpy as np
import pandas as pd

from bootstrap import draw_bootstrap
from dataset import Dataset
from errors import InvalidInputError, TrainingFailureError, check_positive_int
from impurity import TargetStatsProvider, resolve_criterion
from scoring import error_for_task, pseudo_r_squared
from tree_builder import DecisionTree, TreeBuilder, TreeBuilderParams, TreeBuildMetrics

logger = logging.getLogger(__name__)


@dataclass
class ForestParams:
    n_trees: int = 500
    mtry: int | None = None
    max_depth: int | None = None
    min_node_size: int | None = None
    criterion: str | None = None  # variance for regression; gini or entropy for classification
    compute_oob: bool = True
    n_jobs: int = 1
    random_state: int = 0

    def __post_init__(self) -> None:
        check_positive_int("n_trees", self.n_trees)
        check_positive_int("mtry", self.mtry, allow_none=True)
        check_positive_int("max_depth", self.max_depth, allow_none=True)
        check_positive_int("min_node_size", self.min_node_size, allow_none=True)
        if isinstance(self.n_jobs, bool) or not isinstance(self.n_jobs, int) or self.n_jobs == 0:
            raise InvalidInputError("n_jobs", self.n_jobs, "must be a non-zero integer")


def default_mtry(n_features: int, task: str) -> int:
    if task == "classification":
        return max(1, int(math.floor(math.sqrt(n_features))))
    return max(1, n_features // 3)


def _grow_one_tree(
    X: np.ndarray,
    categorical: np.ndarray,
    target_stats: TargetStatsProvider,
    tree_params: TreeBuilderParams,
) -> tuple[DecisionTree, np.ndarray, TreeBuildMetrics]:
    rng = np.random.default_rng(tree_params.random_state)
    sample = draw_bootstrap(X.shape[0], rng)
    builder = TreeBuilder(
        X=X,
        categorical=categorical,
        target_stats=target_stats,
        params=tree_params,
        rng=rng,
    )
    tree = builder.build_tree(sample.in_bag)
    return tree, sample.out_of_bag, builder.metrics


class RandomForestTrainer:
    """Bagged random-split trees with out-of-bag error and impurity importance."""

    def __init__(self, params: ForestParams | None = None) -> None:
        self.params = params or ForestParams()

        self.trees: list[DecisionTree] = []
        self.oob_indices_: list[np.ndarray] = []
        self.task: str | None = None
        self.n_features_: int | None = None
        self.feature_names_: tuple[str, ...] = ()
        self.class_labels_: tuple = ()
        self.tree_params_: TreeBuilderParams | None = None
        self.oob_error_: float = float("nan")
        self.oob_r_squared_: float = float("nan")
        self.oob_prediction_: np.ndarray | None = None
        self.oob_error_curve_: np.ndarray | None = None
        self.metrics: dict = {}

    def resolve_tree_params(self, n_features: int, task: str) -> TreeBuilderParams:
        """Fill task defaults and check data-dependent ranges before any fitting."""
        criterion = resolve_criterion(task, self.params.criterion)
        mtry = self.params.mtry if self.params.mtry is not None else default_mtry(n_features, task)
        if mtry > n_features:
            raise InvalidInputError("mtry", mtry, f"exceeds the {n_features} available features")
        min_node_size = self.params.min_node_size
        if min_node_size is None:
            min_node_size = 1 if task == "classification" else 5
        return TreeBuilderParams(
            mtry=mtry,
            max_depth=self.params.max_depth,
            min_node_size=min_node_size,
            criterion=criterion,
            random_state=self.params.random_state,
        )

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        task: str = "regression",
        categorical: np.ndarray | None = None,
        feature_names: Sequence[str] | None = None,
        class_labels: Sequence | None = None,
    ) -> "RandomForestTrainer":
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if X.ndim != 2:
            raise InvalidInputError("X", X.shape, "must be a 2D array")
        if y.ndim != 1 or y.shape[0] != X.shape[0]:
            raise InvalidInputError("y", y.shape, "must be a 1D array with the same number of rows as X")
        if X.shape[0] == 0:
            raise InvalidInputError("X", X.shape, "dataset is empty")
        if X.shape[1] == 0:
            raise InvalidInputError("X", X.shape, "no feature columns")

        n_samples, n_features = X.shape
        if categorical is None:
            categorical = np.zeros(n_features, dtype=bool)
        categorical = np.asarray(categorical, dtype=bool)
        if categorical.shape != (n_features,):
            raise InvalidInputError("categorical", categorical.shape, f"expected {n_features} flags")
        if feature_names is None:
            feature_names = [f"x{i}" for i in range(n_features)]
        if len(feature_names) != n_features:
            raise InvalidInputError("feature_names", len(feature_names), f"expected {n_features} names")

        base_params = self.resolve_tree_params(n_features, task)
        n_classes = len(class_labels) if class_labels is not None else None
        target_stats = TargetStatsProvider(y, task=task, criterion=base_params.criterion, n_classes=n_classes)
        if task == "classification" and np.unique(y).size < 2:
            raise InvalidInputError("y", f"{np.unique(y).size} class(es)", "classification needs at least two classes")

        constant = np.all(X == X[0], axis=0)
        if np.all(constant):
            raise TrainingFailureError(
                [("fit", f"all {n_features} features are constant over {n_samples} rows; no split is possible")]
            )
        for idx in np.flatnonzero(constant):
            logger.warning("Feature %r is constant over the training rows", feature_names[idx])

        self.task = task
        self.n_features_ = n_features
        self.feature_names_ = tuple(str(name) for name in feature_names)
        if task == "classification":
            self.class_labels_ = tuple(class_labels) if class_labels is not None else tuple(
                range(target_stats.n_classes)
            )
        else:
            self.class_labels_ = ()
        self.tree_params_ = base_params

        # One seed per tree, drawn up front: results do not depend on n_jobs.
        rng = np.random.default_rng(self.params.random_state)
        seeds = rng.integers(1, 2**31 - 1, size=self.params.n_trees)
        jobs = (
            delayed(_grow_one_tree)(
                X,
                categorical,
                target_stats,
                replace(base_params, random_state=int(seed)),
            )
            for seed in seeds
        )
        results = Parallel(n_jobs=self.params.n_jobs)(jobs)

        self.trees = [tree for tree, _, _ in results]
        self.oob_indices_ = [oob for _, oob, _ in results]
        tree_metrics = [metrics for _, _, metrics in results]

        self.metrics = {
            "n_trees": len(self.trees),
            "mtry": base_params.mtry,
            "min_node_size": base_params.min_node_size,
            "max_depth": base_params.max_depth,
            "criterion": base_params.criterion,
            "nodes_visited": sum(m.nodes_visited for m in tree_metrics),
            "nodes_split": sum(m.nodes_split for m in tree_metrics),
            "leaves": sum(m.leaves for m in tree_metrics),
            "mean_depth": float(np.mean([m.max_depth_reached for m in tree_metrics])),
            "split_search_time_sec": sum(m.split_search_time_sec for m in tree_metrics),
            "tree_metrics": [
                {
                    "tree_idx": idx,
                    "nodes_visited": m.nodes_visited,
                    "nodes_split": m.nodes_split,
                    "leaves": m.leaves,
                    "max_depth_reached": m.max_depth_reached,
                }
                for idx, m in enumerate(tree_metrics)
            ],
        }

        if self.params.compute_oob:
            self._compute_oob(X, y)

        logger.info(
            "Fitted %d %s trees (mtry=%d, min_node_size=%d): OOB error=%.6g",
            len(self.trees),
            task,
            base_params.mtry,
            base_params.min_node_size,
            self.oob_error_,
        )
        return self

    def fit_dataset(self, dataset: Dataset) -> "RandomForestTrainer":
        return self.fit(
            dataset.X,
            dataset.y,
            task=dataset.task,
            categorical=dataset.categorical,
            feature_names=dataset.feature_names,
            class_labels=dataset.class_labels or None,
        )

    def _compute_oob(self, X: np.ndarray, y: np.ndarray) -> None:
        n_samples = X.shape[0]
        counts = np.zeros(n_samples, dtype=np.float64)
        sums = np.zeros(n_samples, dtype=np.float64)
        votes = np.zeros((n_samples, len(self.class_labels_)), dtype=np.float64)

        def aggregate(covered: np.ndarray) -> np.ndarray:
            if self.task == "regression":
                return sums[covered] / counts[covered]
            return np.argmax(votes[covered], axis=1)

        curve = np.full(len(self.trees), np.nan, dtype=np.float64)
        for t, (tree, oob) in enumerate(zip(self.trees, self.oob_indices_)):
            if oob.size:
                counts[oob] += 1.0
                if self.task == "regression":
                    sums[oob] += tree.predict_batch(X[oob])
                else:
                    votes[oob, tree.vote_batch(X[oob])] += 1.0

            covered = counts > 0
            if np.any(covered):
                curve[t] = error_for_task(self.task, y[covered], aggregate(covered))

        covered = counts > 0
        if self.task == "regression":
            prediction = np.full(n_samples, np.nan, dtype=np.float64)
        else:
            prediction = np.full(n_samples, -1, dtype=np.int64)
        if np.any(covered):
            prediction[covered] = aggregate(covered)

        self.oob_prediction_ = prediction
        self.oob_error_curve_ = curve
        self.metrics["oob_rows_without_prediction"] = int(n_samples - np.count_nonzero(covered))
        if np.any(covered):
            self.oob_error_ = error_for_task(self.task, y[covered], prediction[covered])
            if self.task == "regression":
                self.oob_r_squared_ = pseudo_r_squared(self.oob_error_, y[covered])
        else:
            self.oob_error_ = float("nan")
            logger.warning("No row was out-of-bag for any tree; OOB error is undefined")

    def _check_fitted(self) -> None:
        if not self.trees:
            raise RuntimeError("Model must be fitted before prediction")

    def _check_columns(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.ndim != 2 or X.shape[1] != self.n_features_:
            raise InvalidInputError("X", X.shape, f"expected {self.n_features_} feature columns")
        return X

    def _class_votes(self, X: np.ndarray) -> np.ndarray:
        votes = np.zeros((X.shape[0], len(self.class_labels_)), dtype=np.float64)
        rows = np.arange(X.shape[0])
        for tree in self.trees:
            votes[rows, tree.vote_batch(X)] += 1.0
        return votes

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Mean of tree predictions, or the majority-vote class label."""
        self._check_fitted()
        X = self._check_columns(X)
        if self.task == "regression":
            pred = np.zeros(X.shape[0], dtype=np.float64)
            for tree in self.trees:
                pred += tree.predict_batch(X)
            return pred / len(self.trees)

        codes = np.argmax(self._class_votes(X), axis=1)
        return np.asarray(self.class_labels_)[codes]

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        self._check_fitted()
        if self.task != "classification":
            raise RuntimeError("predict_proba is only available for classification forests")
        X = self._check_columns(X)
        return self._class_votes(X) / len(self.trees)

    def variable_importance(self) -> np.ndarray:
        """Total impurity decrease per feature, summed over all trees."""
        self._check_fitted()
        importance = np.zeros(self.n_features_, dtype=np.float64)
        for tree in self.trees:
            importance += tree.feature_importance()
        return importance

    def variable_importance_table(self) -> pd.DataFrame:
        importance = self.variable_importance()
        top = float(np.max(importance)) if importance.size else 0.0
        relative = importance / top * 100.0 if top > 0 else np.zeros_like(importance)
        table = pd.DataFrame(
            {
                "feature": list(self.feature_names_),
                "importance": importance,
                "relative_importance": relative,
            }
        )
        return table.sort_values("importance", ascending=False, kind="stable").reset_index(drop=True)
