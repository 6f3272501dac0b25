# -*- coding: utf-8 -*-
"""
detmks.trainer
==============

Cross-validated selection of the pruning level of a density estimation tree.

A reference tree is grown on all the data.  Its pruning sequence defines the
candidate states (the unpruned tree, then the tree after each distinct
collapse ``alpha``).  Every fold grows its own tree on the training part and
scores the held-out part at the midpoint between consecutive reference
alphas; the state with the best aggregate score is kept and the reference
tree is pruned to it.
"""

from __future__ import annotations

import math
import sys

import numpy as np
from joblib import Parallel, delayed
from sklearn.model_selection import KFold

from .logging import get_logger
from .tree import DensityEstimationTree

LOGGER = get_logger("trainer")

SCORING = ("loglik", "ise")

_TINY = sys.float_info.min


def _fold_scores(params: dict, X_train: np.ndarray, X_test: np.ndarray,
                 cutoffs: np.ndarray, scoring: str, n_total: int) -> np.ndarray:
    """Score the held-out points of one fold at every cutoff alpha."""
    scores = np.zeros(len(cutoffs), dtype=float)
    if X_test.shape[0] == 0:
        return scores
    fold_tree = DensityEstimationTree(**params).fit(X_train)
    for j, cutoff in enumerate(cutoffs):
        dens = fold_tree.density(X_test, alpha=cutoff)
        if scoring == "loglik":
            scores[j] = float(np.mean(np.log(np.maximum(dens, _TINY))))
        else:
            scores[j] = 2.0 * float(np.sum(dens)) / n_total
    return scores


def train_density_tree(
    X,
    folds: int = 10,
    *,
    use_volume_reg: bool = False,
    max_leaf_size: int = 10,
    min_leaf_size: int = 5,
    unpruned_tree_output=None,
    skip_pruning: bool = False,
    scoring: str = "loglik",
    n_jobs: int | None = None,
) -> DensityEstimationTree:
    """
    Grow a density estimation tree and prune it by k-fold cross-validation.

    Parameters
    ----------
    X : array-like of shape (n_points, n_features)
        Training points.
    folds : int, default=10
        Number of contiguous folds.  ``0`` means leave-one-out; ``1`` skips
        cross-validation.
    use_volume_reg : bool, default=False
        Volume-regularised pruning costs.
    max_leaf_size, min_leaf_size : int
        Leaf size limits passed to :class:`DensityEstimationTree`.
    unpruned_tree_output : str or path-like, optional
        Write the unpruned tree (``print_tree`` text) to this file.
    skip_pruning : bool, default=False
        Return the unpruned tree.
    scoring : {"loglik", "ise"}, default="loglik"
        ``"loglik"`` sums each fold's mean held-out log-density.
        ``"ise"`` estimates the integrated squared error as
        ``-int f^2 + (2 / N) * sum f_fold(x_held_out)``.
    n_jobs : int, optional
        Parallel fold fits through joblib.

    Returns
    -------
    DensityEstimationTree
        The pruned tree, with ``cv_alphas_``, ``cv_scores_`` and
        ``optimal_alpha_`` set.
    """
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError("X must be a 2-D array of shape (n_points, n_features)")
    n = X.shape[0]
    if n == 0:
        raise ValueError("Cannot train a density estimation tree on zero points")
    if min_leaf_size > max_leaf_size:
        raise ValueError(
            f"min_leaf_size ({min_leaf_size}) must not exceed max_leaf_size ({max_leaf_size})"
        )
    folds = int(folds)
    if folds < 0:
        raise ValueError(f"folds must be non-negative; got {folds}")
    if folds > n:
        raise ValueError(f"folds ({folds}) must not exceed the number of points ({n})")
    if scoring not in SCORING:
        raise ValueError(f"Unknown scoring '{scoring}'. Expected one of {SCORING}.")
    if folds == 0:
        folds = n

    params = dict(
        max_leaf_size=max_leaf_size,
        min_leaf_size=min_leaf_size,
        use_volume_reg=use_volume_reg,
    )
    tree = DensityEstimationTree(**params).fit(X)
    if unpruned_tree_output is not None:
        with open(unpruned_tree_output, "w", encoding="utf-8") as fh:
            tree.print_tree(file=fh)
        LOGGER.info("Wrote unpruned tree to %s", unpruned_tree_output)

    if folds == 1 or skip_pruning:
        tree.cv_alphas_ = np.array([-math.inf])
        tree.cv_scores_ = np.array([np.nan])
        tree.optimal_alpha_ = -math.inf
        LOGGER.info("Skipping cross-validation; returning the unpruned tree")
        return tree

    alphas = tree.distinct_alphas()
    # The last state is the single root leaf; it is never a candidate.
    n_states = max(len(alphas), 1)
    state_alphas = np.concatenate(([-math.inf], alphas[: n_states - 1]))
    cutoffs = np.array(
        [-math.inf] + [0.5 * (alphas[j - 1] + alphas[j]) for j in range(1, n_states)]
    )

    splitter = KFold(n_splits=folds, shuffle=False)
    LOGGER.info("Cross-validating %d pruning states over %d folds", n_states, folds)
    per_fold = Parallel(n_jobs=n_jobs)(
        delayed(_fold_scores)(params, X[train], X[test], cutoffs, scoring, n)
        for train, test in splitter.split(X)
    )
    scores = np.zeros(n_states, dtype=float)
    for fold_scores in per_fold:
        scores += fold_scores
    if scoring == "ise":
        scores += np.array([tree.error(a) for a in state_alphas])

    best = 0
    for j in range(1, n_states):
        if scores[j] >= scores[best]:
            best = j
    optimal_alpha = float(state_alphas[best])
    if best > 0:
        tree.prune(optimal_alpha)

    tree.cv_alphas_ = state_alphas
    tree.cv_scores_ = scores
    tree.optimal_alpha_ = optimal_alpha
    LOGGER.info(
        "Selected alpha=%g (state %d of %d): %d leaves",
        optimal_alpha, best, n_states, tree.n_leaves(),
    )
    return tree
