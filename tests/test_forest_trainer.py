import numpy as np
import pytest

from errors import InvalidInputError, TrainingFailureError
from forest_trainer import ForestParams, RandomForestTrainer, default_mtry
from scoring import mean_squared_error


def _signal_and_noise(n=100, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(0.0, 10.0, size=n)
    z = rng.normal(size=n)
    y = 2.0 * x + rng.normal(scale=1.0, size=n)
    return np.column_stack([x, z]), y


def test_informative_feature_dominates_importance_and_oob_beats_mean():
    X, y = _signal_and_noise()

    forest = RandomForestTrainer(ForestParams(n_trees=50, mtry=1, random_state=1)).fit(
        X, y, feature_names=["x", "z"]
    )
    importance = forest.variable_importance()

    assert importance[0] >= 5.0 * importance[1]
    baseline = mean_squared_error(y, np.full_like(y, np.mean(y)))
    assert forest.oob_error_ < baseline
    assert 0.0 < forest.oob_r_squared_ <= 1.0

    table = forest.variable_importance_table()
    assert list(table["feature"]) == ["x", "z"]
    assert table["relative_importance"].iloc[0] == pytest.approx(100.0)


def test_importance_is_non_negative_and_zero_for_unused_feature():
    rng = np.random.default_rng(4)
    X = np.column_stack([rng.normal(size=80), np.full(80, 3.0), rng.normal(size=80)])
    y = X[:, 0] + 0.2 * rng.normal(size=80)

    forest = RandomForestTrainer(ForestParams(n_trees=20, mtry=2, random_state=0)).fit(X, y)
    importance = forest.variable_importance()

    assert np.all(importance >= 0.0)
    assert importance[1] == 0.0


def test_oob_bookkeeping_matches_bootstrap_samples():
    X, y = _signal_and_noise(n=60, seed=2)

    forest = RandomForestTrainer(ForestParams(n_trees=30, random_state=5)).fit(X, y)

    assert len(forest.trees) == 30
    assert len(forest.oob_indices_) == 30
    assert forest.oob_error_curve_.shape == (30,)
    assert forest.oob_error_curve_[-1] == pytest.approx(forest.oob_error_)
    covered = ~np.isnan(forest.oob_prediction_)
    assert forest.metrics["oob_rows_without_prediction"] == int(np.count_nonzero(~covered))
    assert forest.oob_error_ == pytest.approx(mean_squared_error(y[covered], forest.oob_prediction_[covered]))


def test_predict_averages_tree_predictions():
    X, y = _signal_and_noise(n=50, seed=3)
    forest = RandomForestTrainer(ForestParams(n_trees=7, mtry=2, random_state=0)).fit(X, y)

    expected = np.mean([tree.predict_batch(X[:5]) for tree in forest.trees], axis=0)

    np.testing.assert_allclose(forest.predict(X[:5]), expected)
    assert forest.predict(X[0]).shape == (1,)


def test_classification_forest_votes_and_reports_labels():
    rng = np.random.default_rng(8)
    X = np.vstack([rng.normal(loc=-2.0, size=(40, 2)), rng.normal(loc=2.0, size=(40, 2))])
    y = np.repeat([0.0, 1.0], 40)

    forest = RandomForestTrainer(ForestParams(n_trees=25, random_state=3)).fit(
        X, y, task="classification", class_labels=["low", "high"]
    )

    assert forest.metrics["mtry"] == default_mtry(2, "classification") == 1
    assert forest.metrics["criterion"] == "gini"
    pred = forest.predict(np.array([[-2.0, -2.0], [2.0, 2.0]]))
    assert list(pred) == ["low", "high"]
    proba = forest.predict_proba(X)
    np.testing.assert_allclose(proba.sum(axis=1), 1.0)
    assert forest.oob_error_ < 0.1


def test_parallel_fit_matches_sequential_fit():
    X, y = _signal_and_noise(n=40, seed=6)

    sequential = RandomForestTrainer(ForestParams(n_trees=6, mtry=1, n_jobs=1, random_state=9)).fit(X, y)
    parallel = RandomForestTrainer(ForestParams(n_trees=6, mtry=1, n_jobs=2, random_state=9)).fit(X, y)

    np.testing.assert_allclose(sequential.predict(X), parallel.predict(X))
    np.testing.assert_allclose(sequential.variable_importance(), parallel.variable_importance())
    assert sequential.oob_error_ == pytest.approx(parallel.oob_error_)


def test_invalid_inputs_are_rejected_before_training():
    X, y = _signal_and_noise(n=20)

    with pytest.raises(InvalidInputError) as excinfo:
        RandomForestTrainer(ForestParams(n_trees=5, mtry=3)).fit(X, y)
    assert excinfo.value.parameter == "mtry"
    assert excinfo.value.value == 3

    with pytest.raises(InvalidInputError):
        ForestParams(n_trees=0)
    with pytest.raises(InvalidInputError):
        RandomForestTrainer(ForestParams(n_trees=5)).fit(X, y[:-1])
    with pytest.raises(InvalidInputError):
        RandomForestTrainer(ForestParams(n_trees=5, criterion="gini")).fit(X, y)
    with pytest.raises(InvalidInputError):
        RandomForestTrainer(ForestParams(n_trees=5)).fit(np.empty((0, 2)), np.empty(0))


def test_constant_features_surface_training_failure():
    X = np.ones((15, 2))
    y = np.arange(15, dtype=np.float64)

    with pytest.raises(TrainingFailureError) as excinfo:
        RandomForestTrainer(ForestParams(n_trees=3)).fit(X, y)
    assert excinfo.value.failures[0][0] == "fit"


def test_predict_requires_fit_and_matching_columns():
    trainer = RandomForestTrainer(ForestParams(n_trees=3))
    with pytest.raises(RuntimeError):
        trainer.predict(np.zeros((1, 2)))

    X, y = _signal_and_noise(n=20)
    trainer.fit(X, y)
    with pytest.raises(InvalidInputError):
        trainer.predict(np.zeros((1, 3)))
    with pytest.raises(RuntimeError):
        trainer.predict_proba(X)


def test_single_class_classification_is_rejected():
    X, _ = _signal_and_noise(n=30)

    with pytest.raises(InvalidInputError) as excinfo:
        RandomForestTrainer(ForestParams(n_trees=3)).fit(X, np.zeros(30), task="classification")
    assert excinfo.value.parameter == "y"

    with pytest.raises(InvalidInputError):
        RandomForestTrainer(ForestParams(n_trees=3)).fit(
            X, np.ones(30), task="classification", class_labels=["no", "yes"]
        )
