from __future__ import annotations

import numpy as np

from errors import InvalidInputError

TASKS = ("regression", "classification")
CRITERIA_BY_TASK = {
    "regression": ("variance",),
    "classification": ("gini", "entropy"),
}
DEFAULT_CRITERION = {"regression": "variance", "classification": "gini"}


def variance_impurity(totals: np.ndarray, counts: np.ndarray) -> np.ndarray:
    """Within-group sum of squares (n * variance) from [sum, sum_sq] totals."""
    totals = np.asarray(totals, dtype=np.float64)
    counts = np.asarray(counts, dtype=np.float64)
    sq_mean = np.divide(
        totals[..., 0] ** 2,
        counts,
        out=np.zeros_like(counts),
        where=counts > 0,
    )
    return np.maximum(totals[..., 1] - sq_mean, 0.0)


def gini_impurity(totals: np.ndarray, counts: np.ndarray) -> np.ndarray:
    """n * Gini index from per-class counts."""
    totals = np.asarray(totals, dtype=np.float64)
    counts = np.asarray(counts, dtype=np.float64)
    sq_sum = np.sum(totals * totals, axis=-1)
    scaled = np.divide(sq_sum, counts, out=np.zeros_like(counts), where=counts > 0)
    return np.maximum(counts - scaled, 0.0)


def entropy_impurity(totals: np.ndarray, counts: np.ndarray) -> np.ndarray:
    """n * Shannon entropy (bits) from per-class counts."""
    totals = np.asarray(totals, dtype=np.float64)
    counts = np.asarray(counts, dtype=np.float64)
    denom = np.broadcast_to(counts[..., None], totals.shape)
    ratio = np.divide(totals, denom, out=np.zeros_like(totals), where=denom > 0)
    logs = np.log2(ratio, out=np.zeros_like(ratio), where=ratio > 0)
    return np.maximum(-np.sum(totals * logs, axis=-1), 0.0)


_IMPURITY_FUNCS = {
    "variance": variance_impurity,
    "gini": gini_impurity,
    "entropy": entropy_impurity,
}


def resolve_criterion(task: str, criterion: str | None) -> str:
    if task not in TASKS:
        raise InvalidInputError("task", task, f"must be one of: {', '.join(TASKS)}")
    if criterion is None:
        return DEFAULT_CRITERION[task]
    if criterion not in CRITERIA_BY_TASK[task]:
        raise InvalidInputError(
            "criterion",
            criterion,
            f"{task} supports: {', '.join(CRITERIA_BY_TASK[task])}",
        )
    return criterion


class TargetStatsProvider:
    """Per-row outcome statistics shared by split search and leaf construction.

    Regression rows carry [y, y**2]; classification rows carry a one-hot
    class indicator. Sums of these over any row set are sufficient to
    score a split and to fill a leaf.
    """

    def __init__(
        self,
        y: np.ndarray,
        task: str,
        criterion: str | None = None,
        n_classes: int | None = None,
    ) -> None:
        self.criterion = resolve_criterion(task, criterion)
        self.task = task
        self.y = np.asarray(y, dtype=np.float64)
        if self.y.ndim != 1:
            raise InvalidInputError("y", self.y.shape, "must be one-dimensional")

        if task == "regression":
            self.n_classes = 0
            self.stats = np.column_stack([self.y, self.y * self.y])
        else:
            codes = self.y.astype(np.int64)
            if self.y.size and (np.any(codes != self.y) or codes.min() < 0):
                raise InvalidInputError("y", "non-integer codes", "classification outcomes must be class indices")
            inferred = int(codes.max()) + 1 if codes.size else 0
            self.n_classes = int(n_classes) if n_classes is not None else inferred
            if self.n_classes < inferred:
                raise InvalidInputError("n_classes", n_classes, f"outcomes use {inferred} classes")
            self.stats = np.zeros((codes.size, self.n_classes), dtype=np.float64)
            self.stats[np.arange(codes.size), codes] = 1.0

        self._impurity = _IMPURITY_FUNCS[self.criterion]

    def totals(self, rows: np.ndarray) -> np.ndarray:
        return self.stats[rows].sum(axis=0)

    def weighted_impurity(self, totals: np.ndarray, counts: np.ndarray) -> np.ndarray:
        return self._impurity(totals, counts)

    def is_pure(self, rows: np.ndarray) -> bool:
        if rows.size <= 1:
            return True
        values = self.y[rows]
        return bool(np.all(values == values[0]))

    def leaf_value(self, rows: np.ndarray) -> float | np.ndarray:
        """Mean outcome for regression, class frequencies for classification."""
        if self.task == "regression":
            return float(np.mean(self.y[rows]))
        totals = self.totals(rows)
        return totals / max(float(rows.size), 1.0)
