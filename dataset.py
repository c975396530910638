from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from errors import InvalidInputError
from impurity import TASKS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Dataset:
    X: np.ndarray
    y: np.ndarray
    feature_names: tuple[str, ...]
    categorical: np.ndarray
    category_levels: tuple[tuple, ...]
    task: str
    outcome_name: str
    class_labels: tuple = ()

    @property
    def n_rows(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.X.shape[1])

    def subset(self, rows: np.ndarray) -> Dataset:
        rows = np.asarray(rows, dtype=np.int64)
        return Dataset(
            X=self.X[rows],
            y=self.y[rows],
            feature_names=self.feature_names,
            categorical=self.categorical,
            category_levels=self.category_levels,
            task=self.task,
            outcome_name=self.outcome_name,
            class_labels=self.class_labels,
        )


def _encode_feature_column(series: pd.Series) -> tuple[np.ndarray, bool, tuple]:
    if pd.api.types.is_bool_dtype(series):
        return series.astype(np.int8).to_numpy(dtype=np.float64), False, ()
    if pd.api.types.is_numeric_dtype(series):
        return series.to_numpy(dtype=np.float64), False, ()

    # Non-numeric columns become categorical codes over sorted levels.
    codes, uniques = pd.factorize(series, sort=True)
    return codes.astype(np.float64), True, tuple(uniques.tolist())


def _infer_task(y_series: pd.Series) -> str:
    if pd.api.types.is_bool_dtype(y_series):
        return "classification"
    if pd.api.types.is_numeric_dtype(y_series):
        return "regression"
    return "classification"


def dataset_from_frame(
    frame: pd.DataFrame,
    outcome: str,
    exclude: Sequence[str] = (),
    task: str | None = None,
) -> Dataset:
    """Validate, clean and encode a frame into a `Dataset`.

    Excluded columns are dropped first; any row with a missing value in a
    remaining column is then dropped.
    """
    if frame.shape[0] == 0:
        raise InvalidInputError("dataset", "empty", "contains no rows")
    if outcome not in frame.columns:
        raise InvalidInputError(
            "outcome",
            outcome,
            f"not found in dataset. Available columns include: {list(frame.columns[:10])}",
        )

    exclude = list(exclude)
    missing = [col for col in exclude if col not in frame.columns]
    if missing:
        raise InvalidInputError("exclude", missing, "columns not present in dataset")
    if outcome in exclude:
        raise InvalidInputError("exclude", outcome, "the outcome column cannot be excluded")
    if task is not None and task not in TASKS:
        raise InvalidInputError("task", task, f"must be one of: {', '.join(TASKS)}")

    df = frame.drop(columns=exclude)
    if df.shape[1] < 2:
        raise InvalidInputError("dataset", list(df.columns), "no feature columns remain after exclusions")

    n_before = len(df)
    df = df.dropna(axis=0, how="any").reset_index(drop=True)
    dropped = n_before - len(df)
    if dropped:
        logger.info("Dropped %d of %d rows with missing values", dropped, n_before)
    if len(df) == 0:
        raise InvalidInputError("dataset", "empty", "no rows remain after dropping missing values")

    y_series = df[outcome]
    X_df = df.drop(columns=[outcome])
    task = task or _infer_task(y_series)

    class_labels: tuple = ()
    if task == "classification":
        codes, uniques = pd.factorize(y_series, sort=True)
        y = codes.astype(np.float64)
        class_labels = tuple(uniques.tolist())
        if len(class_labels) < 2:
            raise InvalidInputError("outcome", outcome, "classification needs at least two classes")
    else:
        if not pd.api.types.is_numeric_dtype(y_series):
            raise InvalidInputError("outcome", outcome, "regression needs a numeric outcome")
        y = y_series.to_numpy(dtype=np.float64)

    columns = [_encode_feature_column(X_df[col]) for col in X_df.columns]
    X = np.column_stack([values for values, _, _ in columns]).astype(np.float64, copy=False)
    categorical = np.array([is_cat for _, is_cat, _ in columns], dtype=bool)
    levels = tuple(lv for _, _, lv in columns)

    logger.info(
        "Dataset ready: %d rows, %d features (%d categorical), task=%s, excluded=%s",
        X.shape[0],
        X.shape[1],
        int(categorical.sum()),
        task,
        exclude,
    )
    return Dataset(
        X=X,
        y=y,
        feature_names=tuple(str(c) for c in X_df.columns),
        categorical=categorical,
        category_levels=levels,
        task=task,
        outcome_name=outcome,
        class_labels=class_labels,
    )


def load_delimited_dataset(
    path: str | Path,
    outcome: str,
    exclude: Sequence[str] = (),
    task: str | None = None,
    sep: str = ",",
    na_values: Sequence[str] = ("?",),
) -> Dataset:
    dataset_path = Path(path)
    if not dataset_path.exists():
        raise FileNotFoundError(f"Dataset not found: {dataset_path}")

    frame = pd.read_csv(dataset_path, sep=sep, na_values=list(na_values), low_memory=False)
    logger.info("Loaded %s: %d rows x %d columns", dataset_path, frame.shape[0], frame.shape[1])
    return dataset_from_frame(frame, outcome=outcome, exclude=exclude, task=task)
