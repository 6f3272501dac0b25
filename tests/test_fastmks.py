import logging

import joblib
import numpy as np
import pytest
from detmks import FastMKS, run_fastmks

KERNEL_PARAMS = [
    ("linear", {}),
    ("polynomial", {"degree": 2, "offset": 1.0}),
    ("cosine", {}),
    ("gaussian", {"bandwidth": 1.2}),
    ("epanechnikov", {"bandwidth": 3.0}),
    ("hyptan", {"scale": 0.2}),
]


def _data(seed=0, n_ref=70, n_query=15, dim=3):
    rng = np.random.default_rng(seed)
    return rng.normal(size=(n_ref, dim)), rng.normal(size=(n_query, dim))


def _search(R, Q, k, kernel, params, **mode):
    model = FastMKS(kernel, **params, **mode).fit(R)
    return model.search(Q, k=k)


def _assert_same_topk(a, b):
    (ia, ka), (ib, kb) = a, b
    np.testing.assert_allclose(ka, kb, rtol=1e-9, atol=1e-12)
    # Indices may only differ where the values are indistinguishable.
    differ = ia != ib
    assert np.all(np.abs(ka[differ] - kb[differ]) < 1e-9)


def test_naive_scenario():
    R = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    model = FastMKS("linear", naive=True).fit(R)
    indices, kernels = model.search(np.array([[1.0, 1.0]]), k=1)
    assert indices.tolist() == [[2]]
    assert kernels.tolist() == [[2.0]]


def test_ties_go_to_lower_index():
    R = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 0.0], [0.5, 0.5]])
    q = np.array([[1.0, 1.0]])
    for mode in ({"naive": True}, {"single_mode": True}, {}):
        indices, kernels = FastMKS("linear", **mode).fit(R).search(q, k=3)
        assert indices.tolist() == [[0, 1, 2]]
        assert kernels.tolist() == [[1.0, 1.0, 1.0]]


@pytest.mark.parametrize("kernel, params", KERNEL_PARAMS, ids=[k for k, _ in KERNEL_PARAMS])
@pytest.mark.parametrize("k", [1, 4])
def test_modes_agree(kernel, params, k):
    R, Q = _data()
    naive = _search(R, Q, k, kernel, params, naive=True)
    single = _search(R, Q, k, kernel, params, single_mode=True)
    dual = _search(R, Q, k, kernel, params)
    _assert_same_topk(naive, single)
    np.testing.assert_array_equal(single[0], dual[0])
    np.testing.assert_array_equal(single[1], dual[1])
    assert np.all(np.diff(single[1], axis=1) <= 0)


@pytest.mark.parametrize("mode", [{"naive": True}, {"single_mode": True}, {}])
def test_self_search_excludes_self(mode):
    R, _ = _data(seed=1, n_ref=40)
    model = FastMKS("gaussian", bandwidth=1.0, **mode).fit(R)
    indices, kernels = model.search(k=3)
    assert indices.shape == (40, 3)
    assert not np.any(indices == np.arange(40)[:, None])


def test_self_search_modes_agree():
    R, _ = _data(seed=2, n_ref=50)
    single = FastMKS("linear", single_mode=True).fit(R).search(k=5)
    dual = FastMKS("linear").fit(R).search(k=5)
    naive = FastMKS("linear", naive=True).fit(R).search(k=5)
    np.testing.assert_array_equal(single[0], dual[0])
    np.testing.assert_array_equal(single[1], dual[1])
    _assert_same_topk(naive, single)


def test_equal_query_set_is_not_self_search():
    R, _ = _data(seed=3, n_ref=20)
    indices, kernels = FastMKS("gaussian").fit(R).search(R.copy(), k=1)
    np.testing.assert_array_equal(indices[:, 0], np.arange(20))
    np.testing.assert_allclose(kernels[:, 0], 1.0)


def test_k_limits():
    R, Q = _data(seed=4, n_ref=10)
    model = FastMKS("linear").fit(R)
    assert model.search(Q, k=10)[0].shape == (15, 10)
    assert model.search(k=9)[0].shape == (10, 9)
    with pytest.raises(ValueError):
        model.search(Q, k=0)
    with pytest.raises(ValueError):
        model.search(Q, k=11)
    with pytest.raises(ValueError):
        model.search(k=10)


def test_empty_query():
    R, _ = _data(seed=5)
    indices, kernels = FastMKS("linear").fit(R).search(np.empty((0, 3)), k=2)
    assert indices.shape == (0, 2)
    assert kernels.shape == (0, 2)


def test_invalid_inputs():
    R, _ = _data(seed=6)
    with pytest.raises(ValueError):
        FastMKS("laplacian").fit(R)
    with pytest.raises(ValueError):
        FastMKS("linear", base=1.0).fit(R)
    with pytest.raises(ValueError):
        FastMKS("linear").fit(np.empty((0, 3)))
    with pytest.raises(ValueError):
        FastMKS("linear").fit(R).search(np.ones((2, 5)), k=1)
    with pytest.raises(ValueError):
        FastMKS("linear").search(R, k=1)


def test_naive_model_builds_tree_lazily():
    R, Q = _data(seed=7)
    model = FastMKS("cosine", naive=True).fit(R)
    assert model.tree_ is None
    expected = model.search(Q, k=3)
    model.set_params(naive=False, single_mode=True)
    got = model.search(Q, k=3)
    assert model.tree_ is not None
    _assert_same_topk(expected, got)


def test_dual_tree_query_base():
    R, Q = _data(seed=8)
    model = FastMKS("linear").fit(R)
    a = model.search(Q, k=2)
    b = model.search(Q, k=2, base=1.5)
    np.testing.assert_array_equal(a[0], b[0])


def test_non_positive_definite_kernel_warns(caplog):
    R, _ = _data(seed=9)
    with caplog.at_level(logging.WARNING, logger="detmks.fastmks"):
        FastMKS("triangular", bandwidth=2.0).fit(R)
    assert "not positive definite" in caplog.text


def test_save_and_load(tmp_path):
    R, Q = _data(seed=10)
    model = FastMKS("polynomial", degree=2, offset=0.5, single_mode=True).fit(R)
    path = tmp_path / "model.joblib"
    model.save(path)
    loaded = FastMKS.load(path)
    assert loaded.get_params() == model.get_params()
    a = model.search(Q, k=3)
    b = loaded.search(Q, k=3)
    np.testing.assert_array_equal(a[0], b[0])
    np.testing.assert_array_equal(a[1], b[1])


def test_load_rejects_other_objects(tmp_path):
    path = tmp_path / "other.joblib"
    joblib.dump({"not": "a model"}, path)
    with pytest.raises(ValueError):
        FastMKS.load(path)


def test_run_fastmks_requires_one_source():
    R, _ = _data(seed=11)
    with pytest.raises(ValueError):
        run_fastmks()
    with pytest.raises(ValueError):
        run_fastmks(R, input_model=FastMKS().fit(R))


def test_run_fastmks_build_search_save(tmp_path):
    R, Q = _data(seed=12)
    out = tmp_path / "fastmks.joblib"
    model, indices, kernels = run_fastmks(
        R, query=Q, k=2, kernel="gaussian", bandwidth=0.9, output_model=out
    )
    assert indices.shape == (15, 2)
    assert out.exists()

    loaded, indices2, kernels2 = run_fastmks(input_model=out, query=Q, k=2, naive=True)
    assert loaded.naive
    _assert_same_topk((indices, kernels), (indices2, kernels2))


def test_run_fastmks_without_k_skips_search(caplog):
    R, Q = _data(seed=13)
    with caplog.at_level(logging.WARNING, logger="detmks.fastmks"):
        model, indices, kernels = run_fastmks(R, query=Q)
    assert indices is None and kernels is None
    assert model.tree_ is not None
    assert "'query' ignored" in caplog.text


def test_run_fastmks_warns_on_ignored_parameters(caplog):
    R, _ = _data(seed=14)
    fitted = FastMKS("linear").fit(R)
    with caplog.at_level(logging.WARNING, logger="detmks.fastmks"):
        run_fastmks(input_model=fitted, kernel="gaussian", k=1, naive=True, single=True)
    assert "'kernel' ignored" in caplog.text
    assert "'single' ignored" in caplog.text
