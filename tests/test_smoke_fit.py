import numpy as np
from detmks import DensityEstimationTree, FastMKS, PathCacher, train_density_tree


def test_density_tree_smoke():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(60, 2))
    det = DensityEstimationTree(max_leaf_size=10, min_leaf_size=3)
    det.fit(X)
    _ = det.density(X)
    _ = det.export_rules(feature_names=['x', 'y'])


def test_trainer_smoke():
    rng = np.random.default_rng(1)
    X = rng.uniform(size=(40, 3))
    tree = train_density_tree(X, folds=4, max_leaf_size=8, min_leaf_size=2)
    _ = tree.score_samples(X)
    _ = PathCacher.from_tree("lr", tree).path_for(tree.apply(X[:1])[0])


def test_fastmks_smoke():
    rng = np.random.default_rng(2)
    R = rng.normal(size=(30, 4))
    model = FastMKS('gaussian', bandwidth=1.5).fit(R)
    indices, kernels = model.search(R[:5], k=3)
    assert indices.shape == (5, 3)
    assert kernels.shape == (5, 3)
