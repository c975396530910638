import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd

# Allow running as: python experiments/crime_rf_tuning.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cross_validation import CVConfig, CrossValidationTuner, HyperparameterGrid
from dataset import dataset_from_frame, load_delimited_dataset
from forest_trainer import ForestParams, RandomForestTrainer


def synthetic_frame(n_samples, n_noise, random_state):
    """Crime-rate stand-in: one informative driver, a categorical region, noise columns."""
    rng = np.random.default_rng(random_state)
    poverty = rng.uniform(0.0, 1.0, size=n_samples)
    region = rng.choice(["north", "south", "east", "west"], size=n_samples)
    region_shift = pd.Series(region).map({"north": 0.0, "south": 0.3, "east": -0.2, "west": 0.1})
    frame = pd.DataFrame(
        {
            "communityname": [f"town{i}" for i in range(n_samples)],
            "state": rng.integers(1, 50, size=n_samples),
            "pctPoverty": poverty,
            "region": region,
        }
    )
    for j in range(n_noise):
        frame[f"noise{j}"] = rng.normal(size=n_samples)
    frame["ViolentCrimesPerPop"] = (
        2.0 * poverty + region_shift.to_numpy() + rng.normal(scale=0.3, size=n_samples)
    )
    return frame


def _parse_int_list(text):
    return [int(v.strip()) for v in text.split(",") if v.strip()]


def main():
    parser = argparse.ArgumentParser(description="Fit and tune a random forest on a tabular crime-rate dataset")
    parser.add_argument("--data", type=str, default=None, help="Delimited file; omit to use a synthetic dataset")
    parser.add_argument("--sep", type=str, default=",")
    parser.add_argument("--outcome", type=str, default="ViolentCrimesPerPop")
    parser.add_argument(
        "--exclude",
        type=str,
        default="communityname,state",
        help="Comma-separated identifier or leakage-prone columns to drop",
    )
    parser.add_argument("--task", type=str, default=None, choices=["regression", "classification"])
    parser.add_argument("--n-trees", type=int, default=200)
    parser.add_argument("--mtry", type=int, default=None)
    parser.add_argument("--min-node-size", type=int, default=None)
    parser.add_argument("--max-depth", type=int, default=None)
    parser.add_argument("--mtry-grid", type=str, default="1,2,3", help="Comma-separated mtry values to cross-validate")
    parser.add_argument("--folds", type=int, default=5)
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument("--top-k", type=int, default=10)
    parser.add_argument("--synthetic-rows", type=int, default=400)
    parser.add_argument("--synthetic-noise", type=int, default=3)
    parser.add_argument("--random-state", type=int, default=42)
    parser.add_argument("--output", type=str, default="cv_mtry_summary.csv")
    parser.add_argument("--verbose", action="store_true")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    exclude = [c.strip() for c in args.exclude.split(",") if c.strip()]
    if args.data:
        dataset = load_delimited_dataset(
            args.data,
            outcome=args.outcome,
            exclude=exclude,
            task=args.task,
            sep=args.sep,
        )
    else:
        frame = synthetic_frame(args.synthetic_rows, args.synthetic_noise, args.random_state)
        dataset = dataset_from_frame(frame, outcome=args.outcome, exclude=exclude, task=args.task)

    print(
        f"Dataset outcome={dataset.outcome_name} task={dataset.task}"
        f" n={dataset.n_rows} p={dataset.n_features}"
    )

    params = ForestParams(
        n_trees=args.n_trees,
        mtry=args.mtry,
        max_depth=args.max_depth,
        min_node_size=args.min_node_size,
        n_jobs=args.n_jobs,
        random_state=args.random_state,
    )
    forest = RandomForestTrainer(params).fit_dataset(dataset)
    if dataset.task == "regression":
        print(f"OOB MSE={forest.oob_error_:.5f} pseudo-R2={forest.oob_r_squared_:.4f}")
    else:
        print(f"OOB misclassification rate={forest.oob_error_:.4f}")
    print(
        f"  diagnostics mtry={forest.metrics['mtry']}"
        f" min_node_size={forest.metrics['min_node_size']}"
        f" mean_depth={forest.metrics['mean_depth']:.1f}"
        f" leaves={forest.metrics['leaves']}"
        f" rows_never_oob={forest.metrics['oob_rows_without_prediction']}"
    )

    print("\nVariable importance (total impurity decrease):")
    print(forest.variable_importance_table().head(args.top_k).to_string(index=False))

    mtry_values = [m for m in _parse_int_list(args.mtry_grid) if m <= dataset.n_features]
    if not mtry_values:
        raise ValueError(f"No mtry value in {args.mtry_grid!r} fits {dataset.n_features} features")

    tuner = CrossValidationTuner(
        config=CVConfig(n_folds=args.folds, random_state=args.random_state, n_jobs=args.n_jobs),
        base_params=ForestParams(
            n_trees=args.n_trees,
            max_depth=args.max_depth,
            min_node_size=args.min_node_size,
            random_state=args.random_state,
        ),
    )
    result = tuner.tune_dataset(dataset, HyperparameterGrid({"mtry": mtry_values}))

    print(f"\n{args.folds}-fold cross-validation over mtry:")
    print(result.summary.to_string(index=False))
    print(f"Best {result.best_params} mean error={result.best_error:.5f}")

    out_path = result.to_csv(args.output)
    print(f"Wrote cross-validation summary to: {out_path}")


if __name__ == "__main__":
    main()
