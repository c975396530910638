import argparse
import csv
from dataclasses import dataclass
import logging
import sys
import time
from pathlib import Path

import numpy as np

# Allow running as: python experiments/oob_vs_cv_benchmark.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cross_validation import CVConfig, CrossValidationTuner, HyperparameterGrid
from forest_trainer import ForestParams, RandomForestTrainer
from scoring import error_for_task


@dataclass
class DatasetSpec:
    name: str
    task: str
    n_samples: int
    n_features: int


def make_synthetic_dataset(spec: DatasetSpec, seed: int) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(spec.n_samples, spec.n_features))
    n_informative = max(1, spec.n_features // 3)
    w = rng.normal(size=n_informative)
    signal = X[:, :n_informative] @ w

    if spec.task == "regression":
        y = signal + rng.normal(scale=1.0, size=spec.n_samples)
        return X, y.astype(np.float64)

    logits = signal + 0.5 * rng.normal(size=spec.n_samples)
    y = (logits > 0).astype(np.float64)
    return X, y


def mean_std(values: list[float]) -> tuple[float, float]:
    arr = np.asarray(values, dtype=np.float64)
    return float(np.mean(arr)), float(np.std(arr, ddof=0))


def run_one(spec: DatasetSpec, seed: int, args) -> dict[str, float]:
    X, y = make_synthetic_dataset(spec, seed)
    n_test = max(1, int(round(spec.n_samples * 0.2)))
    X_train, X_test = X[n_test:], X[:n_test]
    y_train, y_test = y[n_test:], y[:n_test]

    params = ForestParams(
        n_trees=args.n_trees,
        mtry=args.mtry,
        min_node_size=args.min_node_size,
        n_jobs=args.n_jobs,
        random_state=seed,
    )
    t0 = time.perf_counter()
    forest = RandomForestTrainer(params).fit(X_train, y_train, task=spec.task)
    fit_time = time.perf_counter() - t0
    holdout_error = error_for_task(spec.task, y_test, forest.predict(X_test))

    tuner = CrossValidationTuner(
        config=CVConfig(n_folds=args.folds, random_state=seed, n_jobs=args.n_jobs),
        base_params=ForestParams(
            n_trees=args.n_trees,
            min_node_size=args.min_node_size,
            random_state=seed,
        ),
    )
    mtry = forest.metrics["mtry"]
    t0 = time.perf_counter()
    cv = tuner.tune(X_train, y_train, HyperparameterGrid({"mtry": [mtry]}), task=spec.task)
    cv_time = time.perf_counter() - t0

    return {
        "oob_error": forest.oob_error_,
        "cv_error": cv.best_error,
        "holdout_error": holdout_error,
        "fit_time": fit_time,
        "cv_time": cv_time,
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Compare out-of-bag error with k-fold and holdout error on synthetic data"
    )
    parser.add_argument("--output", type=str, default="result_oob_vs_cv.csv")
    parser.add_argument("--n-runs", type=int, default=3)
    parser.add_argument("--seed-start", type=int, default=0)
    parser.add_argument("--n-trees", type=int, default=100)
    parser.add_argument("--mtry", type=int, default=None)
    parser.add_argument("--min-node-size", type=int, default=None)
    parser.add_argument("--folds", type=int, default=5)
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument(
        "--dataset-specs",
        type=str,
        default="reg400:regression:400:9,clf400:classification:400:9",
        help="Comma-separated dataset specs: name:task:n_samples:n_features",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    dataset_specs: list[DatasetSpec] = []
    for raw_spec in args.dataset_specs.split(","):
        part = raw_spec.strip()
        if not part:
            continue
        chunks = part.split(":")
        if len(chunks) != 4:
            raise ValueError(f"Invalid dataset spec '{part}'. Expected name:task:n_samples:n_features")
        name, task, n_samples, n_features = chunks
        if task not in {"regression", "classification"}:
            raise ValueError(f"Invalid task '{task}' in spec '{part}'. Must be regression or classification")
        dataset_specs.append(DatasetSpec(name=name, task=task, n_samples=int(n_samples), n_features=int(n_features)))

    if not dataset_specs:
        raise ValueError("No dataset specs provided")

    rows_out = []
    for spec in dataset_specs:
        runs = [run_one(spec, args.seed_start + i, args) for i in range(args.n_runs)]
        row = {"dataset": spec.name, "task": spec.task, "n_samples": spec.n_samples, "n_features": spec.n_features}
        for key in ("oob_error", "cv_error", "holdout_error", "fit_time", "cv_time"):
            mean, std = mean_std([r[key] for r in runs])
            row[f"{key}_mean"] = mean
            row[f"{key}_std"] = std
        rows_out.append(row)
        print(
            f"{spec.name}"
            f" oob={row['oob_error_mean']:.4f}"
            f" cv={row['cv_error_mean']:.4f}"
            f" holdout={row['holdout_error_mean']:.4f}"
            f" fit_time={row['fit_time_mean']:.2f}s"
        )

    out_path = Path(args.output)
    if not out_path.is_absolute():
        out_path = ROOT / out_path
    out_path.parent.mkdir(parents=True, exist_ok=True)

    with out_path.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows_out[0].keys()))
        writer.writeheader()
        for row in rows_out:
            writer.writerow(row)

    print(f"Wrote benchmark results to: {out_path}")


if __name__ == "__main__":
    main()
