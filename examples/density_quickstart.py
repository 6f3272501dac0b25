import numpy as np
from time import perf_counter
from detmks import PathCacher, train_density_tree
from detmks.utils import print_variable_importance

rng = np.random.default_rng(42)
X = np.vstack([
    rng.normal(loc=[-2.0, 0.0], scale=0.6, size=(300, 2)),
    rng.normal(loc=[2.0, 1.0], scale=0.4, size=(200, 2)),
])
feats = ["x", "y"]

t0 = perf_counter()
det = train_density_tree(X, folds=10, max_leaf_size=20, min_leaf_size=5,
                         unpruned_tree_output="unpruned_tree.txt")
print(f"train: {perf_counter()-t0:.3f} s, alpha={det.optimal_alpha_:.4g}, leaves={det.n_leaves()}")

try:
    det.export_graphviz("density_tree", feature_names=feats, format="dot")
except RuntimeError as e:
    print(f"Skipping Graphviz export: {e}")
det.print_tree(feature_names=feats)
print_variable_importance(det)

grid = np.array([[-2.0, 0.0], [0.0, 0.5], [2.0, 1.0]])
print("density:", det.density(grid))

cacher = PathCacher.from_tree("lr-id", det)
for tag in det.apply(grid):
    print(tag, cacher.path_for(tag))
