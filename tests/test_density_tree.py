import io
import math

import numpy as np
import pytest
from detmks import DensityEstimationTree


def _fit(X, **kwargs):
    return DensityEstimationTree(**kwargs).fit(X)


def _corners():
    return np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])


def test_leaf_counts_sum_to_n():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(200, 3))
    det = _fit(X, max_leaf_size=10, min_leaf_size=3)
    counts = [det.node(nid).n_points for nid in det.leaves()]
    assert sum(counts) == 200
    assert all(c >= 3 for c in counts)


def test_density_integrates_to_one():
    rng = np.random.default_rng(1)
    X = rng.uniform(size=(150, 2))
    det = _fit(X, max_leaf_size=12, min_leaf_size=4)
    total = sum(det.node(nid).density * math.exp(det.node(nid).log_volume)
                for nid in det.leaves())
    assert total == pytest.approx(1.0)


def test_children_partition_parent_box():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(120, 2))
    det = _fit(X, max_leaf_size=10, min_leaf_size=2)
    for nid in det._preorder(det.root_):
        node = det.node(nid)
        if node.is_leaf:
            continue
        left, right = det.node(node.left), det.node(node.right)
        d = node.split_dim
        assert left.n_points + right.n_points == node.n_points
        assert left.max_vals[d] == node.split_value == right.min_vals[d]
        assert left.min_vals[d] == node.min_vals[d]
        assert right.max_vals[d] == node.max_vals[d]
        assert np.all(X[det.node_points(node.left), d] <= node.split_value)
        assert np.all(X[det.node_points(node.right), d] > node.split_value)


def test_corner_split_prefers_first_dimension():
    det = _fit(_corners(), max_leaf_size=2, min_leaf_size=1)
    root = det.node(det.root_)
    assert root.split_dim == 0
    assert root.split_value == pytest.approx(0.5)
    assert det.n_leaves() == 2


def test_density_outside_box_is_zero():
    det = _fit(_corners(), max_leaf_size=2, min_leaf_size=1)
    dens = det.density([[2.0, 2.0], [0.25, 0.5]])
    assert dens[0] == 0.0
    assert dens[1] == pytest.approx(2 / (4 * 0.5))
    assert det.score_samples([[2.0, 2.0]])[0] == -np.inf


def test_identical_points_form_one_leaf():
    X = np.full((8, 2), 3.0)
    det = _fit(X, max_leaf_size=2, min_leaf_size=1)
    assert det.n_leaves() == 1
    assert det.pruning_sequence_ == []
    assert det.density([[3.0, 3.0]])[0] == pytest.approx(1.0)


def test_pruning_sequence_is_monotone():
    rng = np.random.default_rng(3)
    X = rng.normal(size=(150, 2))
    det = _fit(X, max_leaf_size=8, min_leaf_size=2)
    alphas = [step.alpha for step in det.pruning_sequence_]
    assert alphas == sorted(alphas)
    leaves = [step.n_leaves for step in det.pruning_sequence_]
    assert leaves == sorted(leaves, reverse=True)
    assert det.pruning_sequence_[-1].node == det.root_
    assert det.n_leaves(alphas[-1]) == 1


def test_larger_alpha_is_coarser():
    rng = np.random.default_rng(4)
    X = rng.normal(size=(150, 2))
    det = _fit(X, max_leaf_size=8, min_leaf_size=2)
    alphas = det.distinct_alphas()
    for small, big in zip(alphas[:-1], alphas[1:]):
        coarse = set(det.leaves(big))
        for nid in det.leaves(small):
            cur = nid
            while cur not in coarse:
                cur = det.node(cur).parent
                assert cur >= 0


def test_volume_regularisation_changes_alphas():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(100, 2))
    plain = _fit(X, max_leaf_size=8, min_leaf_size=2)
    reg = _fit(X, max_leaf_size=8, min_leaf_size=2, use_volume_reg=True)
    assert plain.n_leaves() == reg.n_leaves()
    a_plain = [s.alpha for s in plain.pruning_sequence_]
    a_reg = [s.alpha for s in reg.pruning_sequence_]
    assert a_reg == sorted(a_reg)
    assert a_plain != a_reg


def test_prune_releases_nodes():
    rng = np.random.default_rng(6)
    X = rng.normal(size=(150, 2))
    det = _fit(X, max_leaf_size=8, min_leaf_size=2)
    alphas = det.distinct_alphas()
    alpha = alphas[len(alphas) // 2]
    expected = det.n_leaves(alpha)
    before = len(det.nodes_)
    capacity = det.nodes_.capacity
    doomed = list(det._preorder(det.root_))
    det.prune(alpha)
    assert det.n_leaves() == expected
    assert len(det.nodes_) < before
    assert det.nodes_.capacity == capacity
    assert all(step.alpha > alpha for step in det.pruning_sequence_)
    alive = set(det._preorder(det.root_))
    released = [nid for nid in doomed if nid not in alive]
    assert released
    with pytest.raises(KeyError):
        det.node(released[0])


def test_leaf_tags_are_left_to_right():
    rng = np.random.default_rng(7)
    X = rng.normal(size=(80, 2))
    det = _fit(X, max_leaf_size=8, min_leaf_size=2)
    tags = [det.node(nid).tag for nid in det.leaves()]
    assert tags == list(range(det.n_leaves()))
    assert set(det.apply(X)) <= set(tags)


def test_variable_importance():
    rng = np.random.default_rng(8)
    X = np.column_stack([rng.normal(size=200), np.zeros(200)])
    det = _fit(X, max_leaf_size=10, min_leaf_size=3)
    imp = det.variable_importance()
    assert imp.shape == (2,)
    assert imp[0] > 0
    assert imp[1] == 0


def test_export_rules_and_print():
    det = _fit(_corners(), max_leaf_size=2, min_leaf_size=1)
    rules = det.export_rules(feature_names=['a', 'b'])
    assert len(rules) == 2
    assert rules[0].startswith("a <= 0.5000")
    buf = io.StringIO()
    det.print_tree(feature_names=['a', 'b'], file=buf)
    text = buf.getvalue()
    assert "if a <= 0.5000:" in text
    assert text.count("leaf") == 2


def test_export_graphviz_source():
    pytest.importorskip("graphviz")
    det = _fit(_corners(), max_leaf_size=2, min_leaf_size=1)
    src = det.export_graphviz()
    assert "digraph" in src


def test_invalid_parameters():
    X = np.zeros((5, 2))
    with pytest.raises(ValueError):
        _fit(X, max_leaf_size=2, min_leaf_size=3)
    with pytest.raises(ValueError):
        _fit(X, min_leaf_size=0)
    with pytest.raises(ValueError):
        _fit(np.empty((0, 2)))
    with pytest.raises(ValueError):
        _fit(np.array([[np.nan, 1.0]]))
    with pytest.raises(ValueError):
        DensityEstimationTree().density([[0.0]])


def test_get_params():
    det = DensityEstimationTree(max_leaf_size=4, min_leaf_size=2, use_volume_reg=True)
    assert det.get_params() == {
        "max_leaf_size": 4, "min_leaf_size": 2, "use_volume_reg": True,
    }
