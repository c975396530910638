import numpy as np
import pytest

from errors import InvalidInputError
from impurity import TargetStatsProvider
from tree_builder import TreeBuilder, TreeBuilderParams


def _collect_tree_signature(node):
    if node.is_leaf:
        return [("L", node.depth, node.n_samples)]

    signature = [
        (
            "S",
            node.depth,
            int(node.split.feature),
            node.split.threshold,
            node.split.category,
        )
    ]
    signature.extend(_collect_tree_signature(node.left))
    signature.extend(_collect_tree_signature(node.right))
    return signature


def _regression_builder(X, y, **params):
    defaults = dict(mtry=X.shape[1], max_depth=None, min_node_size=1, criterion="variance", random_state=0)
    defaults.update(params)
    return TreeBuilder(
        X=X,
        categorical=None,
        target_stats=TargetStatsProvider(y, task="regression"),
        params=TreeBuilderParams(**defaults),
        rng=np.random.default_rng(defaults["random_state"]),
    )


def test_fully_grown_tree_reproduces_training_outcomes():
    rng = np.random.default_rng(7)
    X = rng.normal(size=(60, 3))
    y = 1.5 * X[:, 0] - X[:, 2] + rng.normal(scale=0.5, size=60)

    tree = _regression_builder(X, y).build_tree()

    np.testing.assert_allclose(tree.predict_batch(X), y, atol=1e-12)


def test_max_depth_and_min_node_size_stop_growth():
    rng = np.random.default_rng(3)
    X = rng.normal(size=(50, 2))
    y = X[:, 0] + 0.1 * rng.normal(size=50)

    stump = _regression_builder(X, y, max_depth=1).build_tree()
    assert not stump.root.is_leaf
    assert stump.root.left.is_leaf
    assert stump.root.right.is_leaf
    assert stump.n_leaves() == 2

    leaf = _regression_builder(X, y, min_node_size=50).build_tree()
    assert leaf.root.is_leaf
    assert leaf.root.value == pytest.approx(float(np.mean(y)))


def test_no_impurity_reduction_emits_leaf():
    X = np.ones((12, 2))
    y = np.arange(12, dtype=np.float64)

    builder = _regression_builder(X, y)
    tree = builder.build_tree()

    assert tree.root.is_leaf
    assert tree.root.split is None
    assert builder.metrics.leaves == 1


def test_numeric_threshold_is_midpoint_between_distinct_values():
    X = np.array([[1.0], [2.0], [4.0], [8.0]])
    y = np.array([0.0, 0.0, 10.0, 10.0])

    tree = _regression_builder(X, y).build_tree()

    assert tree.root.split.feature == 0
    assert tree.root.split.threshold == pytest.approx(3.0)
    assert tree.root.impurity_decrease == pytest.approx(100.0)


def test_tie_break_prefers_first_feature_in_enumeration_order():
    rng = np.random.default_rng(11)
    x = rng.normal(size=40)
    X = np.column_stack([x, x])
    y = 3.0 * x + 0.1 * rng.normal(size=40)

    tree = _regression_builder(X, y, max_depth=3).build_tree()

    for kind, *rest in _collect_tree_signature(tree.root):
        if kind == "S":
            assert rest[1] == 0


def test_categorical_split_isolates_one_category():
    codes = np.array([0, 1, 2] * 10, dtype=np.float64)
    X = codes.reshape(-1, 1)
    y = np.where(codes == 2, 10.0, 0.0)

    builder = TreeBuilder(
        X=X,
        categorical=np.array([True]),
        target_stats=TargetStatsProvider(y, task="regression"),
        params=TreeBuilderParams(mtry=1, min_node_size=1, criterion="variance"),
    )
    tree = builder.build_tree()

    assert tree.root.split.category == 2
    assert tree.root.split.threshold is None
    np.testing.assert_allclose(tree.predict_batch(X), y)
    assert tree.predict_row(np.array([7.0])) == pytest.approx(0.0)


def test_feature_importance_only_counts_chosen_split_features():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(80, 3))
    y = 4.0 * X[:, 1] + 0.1 * rng.normal(size=80)

    tree = _regression_builder(X, y, max_depth=1).build_tree()
    importance = tree.feature_importance()

    assert tree.root.split.feature == 1
    assert importance[1] == pytest.approx(tree.root.impurity_decrease)
    assert importance[0] == 0.0
    assert importance[2] == 0.0


def test_classification_leaves_hold_class_distributions():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(90, 2))
    y = (X[:, 0] > 0).astype(np.float64) + (X[:, 0] > 1).astype(np.float64)

    builder = TreeBuilder(
        X=X,
        categorical=None,
        target_stats=TargetStatsProvider(y, task="classification", criterion="entropy"),
        params=TreeBuilderParams(mtry=2, max_depth=4, min_node_size=1, criterion="entropy"),
    )
    tree = builder.build_tree()
    dist = tree.predict_batch(X)

    assert dist.shape == (90, 3)
    np.testing.assert_allclose(dist.sum(axis=1), 1.0)
    np.testing.assert_array_equal(tree.vote_batch(X), y.astype(int))


def test_same_seed_grows_same_tree():
    rng = np.random.default_rng(9)
    X = rng.normal(size=(70, 5))
    y = X[:, 0] * X[:, 1] + rng.normal(size=70)
    rows = rng.integers(0, 70, size=70)

    first = _regression_builder(X, y, mtry=2, random_state=4).build_tree(rows)
    second = _regression_builder(X, y, mtry=2, random_state=4).build_tree(rows)

    assert _collect_tree_signature(first.root) == _collect_tree_signature(second.root)


def test_prediction_and_importance_leave_grown_nodes_untouched():
    rng = np.random.default_rng(12)
    X = rng.normal(size=(40, 3))
    y = X[:, 0] - X[:, 2] + 0.1 * rng.normal(size=40)
    tree = _regression_builder(X, y, mtry=3).build_tree()
    before = _collect_tree_signature(tree.root)
    root_value = tree.root.value

    tree.predict_batch(rng.normal(size=(25, 3)))
    tree.feature_importance()

    assert _collect_tree_signature(tree.root) == before
    assert tree.root.value == root_value


def test_invalid_parameters_are_rejected():
    X = np.zeros((5, 2))
    y = np.zeros(5)

    with pytest.raises(InvalidInputError) as excinfo:
        _regression_builder(X, y, mtry=3)
    assert excinfo.value.parameter == "mtry"

    with pytest.raises(InvalidInputError):
        TreeBuilderParams(mtry=1, max_depth=0)
    with pytest.raises(InvalidInputError):
        TreeBuilderParams(mtry=1, criterion="mae")
