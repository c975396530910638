"""
K-fold cross-validation for random-forest hyperparameters.

Rows are dealt into k near-equal folds from a seeded permutation. Every
(candidate, fold) pair trains a forest on the other k-1 folds and scores
it on the held-out fold; per-candidate errors are averaged over folds.
The best candidate is the one with the lowest mean error, ties going to
the first candidate in ascending grid order (the simplest model).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import itertools
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from joblib import Parallel, delayed
import numpy as np
import pandas as pd

from dataset import Dataset
from errors import InvalidInputError, TrainingFailureError, check_positive_int
from forest_trainer import ForestParams, RandomForestTrainer
from scoring import error_for_task

logger = logging.getLogger(__name__)

TUNABLE_PARAMS = ("mtry", "n_trees", "max_depth", "min_node_size")


@dataclass(frozen=True)
class FoldAssignment:
    fold_ids: np.ndarray
    n_folds: int

    def __post_init__(self) -> None:
        fold_ids = np.asarray(self.fold_ids)
        if fold_ids.ndim != 1 or not np.issubdtype(fold_ids.dtype, np.integer):
            raise InvalidInputError("fold_ids", fold_ids.dtype, "must be a 1D integer array")
        check_positive_int("n_folds", self.n_folds)
        if self.n_folds < 2:
            raise InvalidInputError("n_folds", self.n_folds, "must be >= 2")
        if fold_ids.size and (fold_ids.min() < 1 or fold_ids.max() > self.n_folds):
            raise InvalidInputError("fold_ids", (int(fold_ids.min()), int(fold_ids.max())), f"must lie in 1..{self.n_folds}")
        sizes = np.bincount(fold_ids, minlength=self.n_folds + 1)[1:]
        if sizes.min() == 0 or sizes.max() - sizes.min() > 1:
            raise InvalidInputError("fold_ids", sizes.tolist(), "every fold needs rows and sizes may differ by at most one")
        object.__setattr__(self, "fold_ids", fold_ids)

    def _check_fold(self, fold: int) -> None:
        if not 1 <= fold <= self.n_folds:
            raise InvalidInputError("fold", fold, f"must be in 1..{self.n_folds}")

    def indices(self, fold: int) -> np.ndarray:
        self._check_fold(fold)
        return np.flatnonzero(self.fold_ids == fold)

    def train_test_indices(self, fold: int) -> tuple[np.ndarray, np.ndarray]:
        self._check_fold(fold)
        mask = self.fold_ids == fold
        return np.flatnonzero(~mask), np.flatnonzero(mask)

    def sizes(self) -> np.ndarray:
        return np.bincount(self.fold_ids, minlength=self.n_folds + 1)[1:]


def assign_folds(n: int, k: int, random_state: int | None = 0) -> FoldAssignment:
    """Give each of n rows a fold id in 1..k; fold sizes differ by at most one."""
    check_positive_int("n", n)
    check_positive_int("n_folds", k)
    if k < 2:
        raise InvalidInputError("n_folds", k, "must be >= 2")
    if k > n:
        raise InvalidInputError("n_folds", k, f"exceeds the number of rows ({n})")

    rng = np.random.default_rng(random_state)
    permutation = rng.permutation(n)
    fold_ids = np.empty(n, dtype=np.int64)
    fold_ids[permutation] = np.arange(n) % k + 1
    return FoldAssignment(fold_ids=fold_ids, n_folds=int(k))


def _sort_key(value: Any) -> tuple[bool, Any]:
    # None (no limit) sorts after every finite value.
    return (value is None, value)


@dataclass(frozen=True)
class HyperparameterGrid:
    axes: tuple[tuple[str, tuple], ...]

    def __init__(self, values: Mapping[str, Sequence[Any]]) -> None:
        if not values:
            raise InvalidInputError("grid", values, "declares no parameters")
        axes = []
        for name, candidates in values.items():
            if name not in TUNABLE_PARAMS:
                raise InvalidInputError("grid", name, f"tunable parameters are: {', '.join(TUNABLE_PARAMS)}")
            candidates = list(candidates)
            if not candidates:
                raise InvalidInputError(name, candidates, "needs at least one candidate value")
            if len(set(candidates)) != len(candidates):
                raise InvalidInputError(name, candidates, "contains duplicate values")
            for value in candidates:
                check_positive_int(name, value, allow_none=(name == "max_depth"))
            axes.append((name, tuple(sorted(candidates, key=_sort_key))))
        object.__setattr__(self, "axes", tuple(axes))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.axes)

    def candidates(self) -> list[dict[str, Any]]:
        """Cartesian product in ascending lexicographic order."""
        names = self.names
        return [dict(zip(names, combo)) for combo in itertools.product(*(vals for _, vals in self.axes))]

    def __len__(self) -> int:
        size = 1
        for _, vals in self.axes:
            size *= len(vals)
        return size


@dataclass
class CVConfig:
    n_folds: int = 5
    random_state: int = 0
    n_jobs: int = 1

    def __post_init__(self) -> None:
        check_positive_int("n_folds", self.n_folds)
        if self.n_folds < 2:
            raise InvalidInputError("n_folds", self.n_folds, "must be >= 2")
        if isinstance(self.n_jobs, bool) or not isinstance(self.n_jobs, int) or self.n_jobs == 0:
            raise InvalidInputError("n_jobs", self.n_jobs, "must be a non-zero integer")


@dataclass
class FoldScore:
    candidate: int
    params: dict[str, Any]
    fold: int
    error: float
    n_train: int
    n_test: int


@dataclass
class CrossValidationResult:
    fold_errors: pd.DataFrame
    summary: pd.DataFrame
    param_names: tuple[str, ...]
    task: str
    candidate_params: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_scores(
        cls,
        scores: Sequence[FoldScore],
        param_names: Sequence[str],
        task: str,
        outcome_variance: float | None = None,
    ) -> "CrossValidationResult":
        param_names = tuple(param_names)
        fold_errors = pd.DataFrame(
            [
                {
                    "candidate": s.candidate,
                    **{name: s.params[name] for name in param_names},
                    "fold": s.fold,
                    "error": s.error,
                    "n_train": s.n_train,
                    "n_test": s.n_test,
                }
                for s in scores
            ]
        )
        # Fixed fold order makes the averages independent of completion order.
        fold_errors = fold_errors.sort_values(["candidate", "fold"], kind="stable").reset_index(drop=True)

        rows = []
        for candidate, group in fold_errors.groupby("candidate", sort=True):
            errors = group["error"].to_numpy(dtype=np.float64)
            row = {"candidate": int(candidate)}
            row.update({name: group[name].iloc[0] for name in param_names})
            row["mean_error"] = float(np.mean(errors))
            row["std_error"] = float(np.std(errors, ddof=1)) if errors.size > 1 else float("nan")
            row["n_folds"] = int(errors.size)
            if task == "regression":
                if outcome_variance is not None and outcome_variance > 0:
                    row["r_squared"] = 1.0 - row["mean_error"] / outcome_variance
                else:
                    row["r_squared"] = float("nan")
            else:
                row["accuracy"] = 1.0 - row["mean_error"]
            rows.append(row)

        summary = pd.DataFrame(rows)
        by_candidate = {s.candidate: dict(s.params) for s in scores}
        return cls(
            fold_errors=fold_errors,
            summary=summary,
            param_names=param_names,
            task=task,
            candidate_params=tuple(by_candidate[c] for c in sorted(by_candidate)),
        )

    @property
    def best_index(self) -> int:
        errors = self.summary["mean_error"].to_numpy(dtype=np.float64)
        lowest = float(np.min(errors))
        tol = 1e-12 * max(1.0, abs(lowest))
        return int(np.argmax(errors <= lowest + tol))

    @property
    def best_params(self) -> dict[str, Any]:
        # Read from the candidate dicts; pandas turns a None max_depth into NaN.
        return dict(self.candidate_params[self.best_index])

    @property
    def best_error(self) -> float:
        return float(self.summary["mean_error"].iloc[self.best_index])

    def to_csv(self, path: str | Path) -> Path:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        self.summary.to_csv(out_path, index=False)
        return out_path


def _score_work_item(
    X: np.ndarray,
    y: np.ndarray,
    task: str,
    categorical: np.ndarray | None,
    n_classes: int,
    forest_params: ForestParams,
    train: np.ndarray,
    test: np.ndarray,
) -> tuple[bool, float | str]:
    try:
        trainer = RandomForestTrainer(forest_params)
        trainer.fit(
            X[train],
            y[train],
            task=task,
            categorical=categorical,
            class_labels=tuple(range(n_classes)) if n_classes else None,
        )
        pred = trainer.predict(X[test])
    except (ValueError, RuntimeError) as exc:
        return False, f"{type(exc).__name__}: {exc}"
    return True, error_for_task(task, y[test], pred)


class CrossValidationTuner:
    """Grid search over forest hyperparameters scored by k-fold error."""

    def __init__(self, config: CVConfig | None = None, base_params: ForestParams | None = None) -> None:
        self.config = config or CVConfig()
        self.base_params = base_params or ForestParams()

    def tune(
        self,
        X: np.ndarray,
        y: np.ndarray,
        grid: HyperparameterGrid,
        task: str = "regression",
        categorical: np.ndarray | None = None,
        class_labels: Sequence | None = None,
        folds: FoldAssignment | None = None,
    ) -> CrossValidationResult:
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if X.ndim != 2 or X.shape[0] == 0:
            raise InvalidInputError("X", X.shape, "must be a non-empty 2D array")
        if y.ndim != 1 or y.shape[0] != X.shape[0]:
            raise InvalidInputError("y", y.shape, "must be a 1D array with the same number of rows as X")
        n_samples, n_features = X.shape

        if folds is None:
            folds = assign_folds(n_samples, self.config.n_folds, self.config.random_state)
        elif folds.fold_ids.shape != (n_samples,):
            raise InvalidInputError("folds", folds.fold_ids.shape, f"expected one fold id per row ({n_samples})")

        # Validate every candidate before any training starts.
        candidates = grid.candidates()
        candidate_params = []
        for candidate in candidates:
            params = replace(self.base_params, **candidate, compute_oob=False, n_jobs=1)
            RandomForestTrainer(params).resolve_tree_params(n_features, task)
            candidate_params.append(params)

        empty = []
        for fold in range(1, folds.n_folds + 1):
            train, test = folds.train_test_indices(fold)
            if train.size == 0 or test.size == 0:
                empty.append((f"fold {fold}", f"empty partition (train={train.size}, test={test.size})"))
        if empty:
            raise TrainingFailureError(empty)

        # Outcomes stay integer codes throughout; class_labels only sizes the class set.
        n_classes = 0
        if task == "classification":
            n_classes = int(np.max(y)) + 1
            if class_labels is not None:
                if len(class_labels) < n_classes:
                    raise InvalidInputError(
                        "class_labels", len(class_labels), f"outcome codes reach {n_classes - 1}"
                    )
                n_classes = len(class_labels)

        # Shared per-fold seeds: candidates are compared on the same random streams.
        rng = np.random.default_rng(self.config.random_state)
        fold_seeds = rng.integers(1, 2**31 - 1, size=folds.n_folds)

        work = [
            (ci, fold) for ci in range(len(candidates)) for fold in range(1, folds.n_folds + 1)
        ]
        logger.info(
            "Cross-validating %d candidate(s) x %d folds (%d fits)",
            len(candidates),
            folds.n_folds,
            len(work),
        )
        split = {fold: folds.train_test_indices(fold) for fold in range(1, folds.n_folds + 1)}
        outcomes = Parallel(n_jobs=self.config.n_jobs)(
            delayed(_score_work_item)(
                X,
                y,
                task,
                categorical,
                n_classes,
                replace(candidate_params[ci], random_state=int(fold_seeds[fold - 1])),
                split[fold][0],
                split[fold][1],
            )
            for ci, fold in work
        )

        scores: list[FoldScore] = []
        failures: list[tuple[str, str]] = []
        for (ci, fold), (ok, value) in zip(work, outcomes):
            if not ok:
                failures.append((f"{candidates[ci]} fold {fold}", str(value)))
                continue
            train, test = split[fold]
            scores.append(
                FoldScore(
                    candidate=ci,
                    params=candidates[ci],
                    fold=fold,
                    error=float(value),
                    n_train=int(train.size),
                    n_test=int(test.size),
                )
            )
            logger.debug("candidate %s fold %d: error=%.6g", candidates[ci], fold, value)

        if failures:
            raise TrainingFailureError(failures)

        variance = float(np.var(y)) if task == "regression" else None
        result = CrossValidationResult.from_scores(scores, grid.names, task, outcome_variance=variance)
        logger.info("Best %s with mean CV error %.6g", result.best_params, result.best_error)
        return result

    def tune_dataset(self, dataset: Dataset, grid: HyperparameterGrid) -> CrossValidationResult:
        return self.tune(
            dataset.X,
            dataset.y,
            grid,
            task=dataset.task,
            categorical=dataset.categorical,
            class_labels=dataset.class_labels or None,
        )
