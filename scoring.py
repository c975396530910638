import numpy as np


def mean_squared_error(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    y_true = np.asarray(y_true, dtype=np.float64)
    y_pred = np.asarray(y_pred, dtype=np.float64)
    if y_true.size == 0:
        return float("nan")
    return float(np.mean((y_true - y_pred) ** 2))


def misclassification_rate(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)
    if y_true.size == 0:
        return float("nan")
    return float(np.mean(y_true != y_pred))


def error_for_task(task: str, y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """MSE for regression, misclassification rate for classification."""
    if task == "regression":
        return mean_squared_error(y_true, y_pred)
    return misclassification_rate(y_true, y_pred)


def pseudo_r_squared(error: float, y: np.ndarray) -> float:
    """1 - error / var(y), the "% variance explained" reported for forests."""
    variance = float(np.var(np.asarray(y, dtype=np.float64)))
    if variance <= 0.0:
        return float("nan")
    return 1.0 - error / variance
