from __future__ import annotations

from dataclasses import dataclass
import time

import numpy as np

from impurity import TargetStatsProvider


@dataclass(frozen=True)
class SplitCandidate:
    feature: int
    threshold: float | None = None
    category: int | None = None

    @property
    def is_categorical(self) -> bool:
        return self.category is not None

    def goes_left(self, values: np.ndarray) -> np.ndarray:
        if self.category is not None:
            return values == self.category
        return values <= self.threshold


@dataclass
class SplitSearchMetrics:
    features_evaluated: int = 0
    constant_features: int = 0
    candidates_evaluated: int = 0
    time_spent_sec: float = 0.0


@dataclass
class SplitSearchResult:
    candidate: SplitCandidate | None
    decrease: float
    node_impurity: float
    metrics: SplitSearchMetrics


class ExactSplitSearch:
    """Exhaustive split search for one node over a set of candidate features.

    Numeric features are scored at every midpoint between consecutive
    distinct values; categorical features at every category-vs-rest
    partition. Scores are child-size weighted impurities computed from
    prefix sums of the per-row target statistics.
    """

    def __init__(
        self,
        node_rows: np.ndarray,
        candidate_features: np.ndarray,
        X: np.ndarray,
        categorical: np.ndarray,
        target_stats: TargetStatsProvider,
        tolerance: float = 1e-12,
    ) -> None:
        self.node_rows = np.asarray(node_rows, dtype=np.int64)
        self.candidate_features = np.sort(np.asarray(candidate_features, dtype=np.int64))
        self.X = X
        self.categorical = categorical
        self.target_stats = target_stats
        self.tolerance = tolerance

        self.n_node = int(self.node_rows.size)
        self.node_stats = target_stats.stats[self.node_rows]
        self.node_totals = self.node_stats.sum(axis=0)

    def _numeric_scores(self, feature: int) -> tuple[list[SplitCandidate], np.ndarray]:
        column = self.X[self.node_rows, feature]
        order = np.argsort(column, kind="stable")
        values = column[order]

        boundaries = np.nonzero(values[:-1] < values[1:])[0]
        if boundaries.size == 0:
            return [], np.empty(0, dtype=np.float64)

        prefix = np.cumsum(self.node_stats[order], axis=0)
        left_totals = prefix[boundaries]
        left_counts = (boundaries + 1).astype(np.float64)
        right_totals = self.node_totals - left_totals
        right_counts = float(self.n_node) - left_counts

        scores = self.target_stats.weighted_impurity(
            left_totals, left_counts
        ) + self.target_stats.weighted_impurity(right_totals, right_counts)

        lower = values[boundaries]
        upper = values[boundaries + 1]
        mids = (lower + upper) * 0.5
        # Adjacent floats can round the midpoint onto the upper value.
        mids = np.where(mids < upper, mids, lower)

        candidates = [SplitCandidate(feature=int(feature), threshold=float(t)) for t in mids]
        return candidates, scores

    def _categorical_scores(self, feature: int) -> tuple[list[SplitCandidate], np.ndarray]:
        codes = self.X[self.node_rows, feature].astype(np.int64)
        levels, inverse = np.unique(codes, return_inverse=True)
        if levels.size <= 1:
            return [], np.empty(0, dtype=np.float64)

        left_totals = np.zeros((levels.size, self.node_stats.shape[1]), dtype=np.float64)
        np.add.at(left_totals, inverse, self.node_stats)
        left_counts = np.bincount(inverse, minlength=levels.size).astype(np.float64)
        right_totals = self.node_totals - left_totals
        right_counts = float(self.n_node) - left_counts

        scores = self.target_stats.weighted_impurity(
            left_totals, left_counts
        ) + self.target_stats.weighted_impurity(right_totals, right_counts)

        candidates = [SplitCandidate(feature=int(feature), category=int(level)) for level in levels]
        return candidates, scores

    def search(self) -> SplitSearchResult:
        t0 = time.perf_counter()
        metrics = SplitSearchMetrics()
        parent = float(
            self.target_stats.weighted_impurity(self.node_totals, np.float64(self.n_node))
        )

        all_candidates: list[SplitCandidate] = []
        all_scores: list[np.ndarray] = []
        for feature in self.candidate_features:
            metrics.features_evaluated += 1
            if self.categorical[feature]:
                candidates, scores = self._categorical_scores(int(feature))
            else:
                candidates, scores = self._numeric_scores(int(feature))

            if not candidates:
                metrics.constant_features += 1
                continue
            all_candidates.extend(candidates)
            all_scores.append(scores)

        metrics.candidates_evaluated = len(all_candidates)
        best: SplitCandidate | None = None
        decrease = 0.0

        if all_candidates:
            scores = np.concatenate(all_scores)
            tol = self.tolerance * max(1.0, parent)
            best_score = float(np.min(scores))
            # First candidate in enumeration order that ties the minimum.
            idx = int(np.argmax(scores <= best_score + tol))
            decrease = parent - float(scores[idx])
            if decrease > tol:
                best = all_candidates[idx]
            else:
                decrease = 0.0

        metrics.time_spent_sec = time.perf_counter() - t0
        return SplitSearchResult(
            candidate=best,
            decrease=decrease,
            node_impurity=parent,
            metrics=metrics,
        )
