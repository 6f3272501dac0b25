# -*- coding: utf-8 -*-
"""
detmks.fastmks
==============

Fast max-kernel search (FastMKS): for each query ``q`` find the ``k``
reference points ``p`` maximising ``K(q, p)``.

Three search modes are offered:

* naive: every kernel value is computed (vectorised through
  ``sklearn.metrics.pairwise``) and the top ``k`` are selected;
* single-tree: a best-first walk of a cover tree over the reference set,
  discarding nodes whose upper bound
  ``K(q, p) + ||q|| * furthest_descendant_distance`` cannot beat the current
  ``k``-th best value;
* dual-tree: a cover tree is also built over the queries and node pairs are
  discarded with the bound
  ``K(p_q, p_r) + ||p_q|| rho_r + ||p_r|| rho_q + rho_q rho_r``.

Results are ordered by kernel value descending; ties go to the lower
reference index.  All modes return the same top ``k``.
"""

from __future__ import annotations

import heapq
import math
import os
from typing import Any

import joblib
import numpy as np
from sklearn.base import BaseEstimator

from .cover_tree import CoverTree, CoverTreeNode
from .kernels import Kernel
from .logging import get_logger

LOGGER = get_logger("fastmks")

# Relative slack on pruning comparisons so rounding never drops a true result.
_BOUND_SLACK = 1e-9
# Query rows per block in naive mode.
_NAIVE_BLOCK = 1024


def _prunable(bound: float, threshold: float) -> bool:
    return bound < threshold - _BOUND_SLACK * (1.0 + abs(threshold))


def _offer(best: list, k: int, value: float, index: int) -> None:
    # ``best`` is a min-heap of (value, -index): the root is the current worst.
    entry = (value, -index)
    if len(best) < k:
        heapq.heappush(best, entry)
    elif entry > best[0]:
        heapq.heapreplace(best, entry)


def _ordered(best: list) -> tuple[list[int], list[float]]:
    ranked = sorted(best, key=lambda e: (-e[0], -e[1]))
    return [-e[1] for e in ranked], [e[0] for e in ranked]


class FastMKS(BaseEstimator):
    """
    Exact k-max-kernel search over a reference set.

    Parameters
    ----------
    kernel : str, default="linear"
        Kernel name, one of :data:`detmks.kernels.KERNEL_TYPES`.
    degree, offset, bandwidth, scale : float
        Kernel parameters; see :class:`detmks.kernels.Kernel`.
    base : float, default=2.0
        Cover tree base, greater than 1.
    single_mode : bool, default=False
        Use single-tree instead of dual-tree search.
    naive : bool, default=False
        Brute-force search; no tree is built.  Overrides ``single_mode``.

    Attributes
    ----------
    kernel_ : Kernel
        Validated kernel.
    reference_ : ndarray of shape (n_references, n_features)
    tree_ : CoverTree or None
        Reference tree (``None`` until a tree search needs it in naive mode).
    """

    def __init__(
        self,
        kernel: str = "linear",
        *,
        degree: float = 2.0,
        offset: float = 0.0,
        bandwidth: float = 1.0,
        scale: float = 1.0,
        base: float = 2.0,
        single_mode: bool = False,
        naive: bool = False,
    ):
        self.kernel = kernel
        self.degree = float(degree)
        self.offset = float(offset)
        self.bandwidth = float(bandwidth)
        self.scale = float(scale)
        self.base = float(base)
        self.single_mode = bool(single_mode)
        self.naive = bool(naive)

        self.reference_ = None
        self.tree_ = None

    def _make_kernel(self) -> Kernel:
        return Kernel(
            self.kernel,
            degree=self.degree,
            offset=self.offset,
            bandwidth=self.bandwidth,
            scale=self.scale,
        )

    def fit(self, reference, y=None):
        """
        Store the reference set and build its cover tree (unless ``naive``).

        Parameters
        ----------
        reference : array-like of shape (n_references, n_features)
        y : ignored

        Returns
        -------
        self
        """
        kernel = self._make_kernel()
        if not self.base > 1.0:
            raise ValueError(f"Cover tree base must be greater than 1; got {self.base}")
        R = np.asarray(reference, dtype=float)
        if R.ndim != 2:
            raise ValueError("reference must be a 2-D array of shape (n_points, n_features)")
        if R.shape[0] == 0:
            raise ValueError("Cannot build a FastMKS model on zero reference points")

        self.kernel_ = kernel
        self.reference_ = R
        self.tree_ = None
        if not kernel.positive_definite:
            LOGGER.warning(
                "Kernel '%s' is not positive definite; tree search will not prune", kernel.name
            )
        if not self.naive:
            self.tree_ = CoverTree(R, kernel, self.base)
        LOGGER.info(
            "Built FastMKS model on %d references (kernel=%s, naive=%s)",
            R.shape[0], kernel.name, self.naive,
        )
        return self

    def _check_fitted(self) -> None:
        if getattr(self, "reference_", None) is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")

    def _reference_tree(self) -> CoverTree:
        if self.tree_ is None:
            LOGGER.info("Building reference cover tree for tree search")
            self.tree_ = CoverTree(self.reference_, self.kernel_, self.base)
        return self.tree_

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    def search(self, query=None, k: int = 1, base: float | None = None):
        """
        Find the ``k`` references with the largest kernel value per query.

        Parameters
        ----------
        query : array-like of shape (n_queries, n_features), optional
            Query points.  When omitted the reference set is searched against
            itself and each point is excluded from its own results.
        k : int, default=1
            Number of results per query.
        base : float, optional
            Base of the query cover tree in dual-tree mode (defaults to the
            model's ``base``).

        Returns
        -------
        indices : ndarray of shape (n_queries, k)
            Reference row indices, best first.
        kernels : ndarray of shape (n_queries, k)
            Matching kernel values.
        """
        self._check_fitted()
        R = self.reference_
        k = int(k)
        if k < 1:
            raise ValueError(f"k must be at least 1; got {k}")

        monochromatic = query is None
        if monochromatic:
            Q = R
            available = R.shape[0] - 1
        else:
            Q = np.asarray(query, dtype=float)
            if Q.ndim == 1:
                Q = Q.reshape(0, R.shape[1]) if Q.size == 0 else Q[None, :]
            if Q.ndim != 2 or (Q.shape[0] and Q.shape[1] != R.shape[1]):
                raise ValueError(
                    f"query must have shape (n_queries, {R.shape[1]}); got {Q.shape}"
                )
            available = R.shape[0]
        if k > available:
            raise ValueError(
                f"k ({k}) exceeds the number of available reference points ({available})"
            )

        if Q.shape[0] == 0:
            return np.empty((0, k), dtype=np.int64), np.empty((0, k), dtype=float)

        if self.naive:
            indices, kernels = self._naive_search(Q, k, monochromatic)
            mode = "naive"
        elif self.single_mode:
            indices, kernels = self._single_tree_search(Q, k, monochromatic)
            mode = "single-tree"
        else:
            query_base = self.base if base is None else float(base)
            indices, kernels = self._dual_tree_search(Q, k, monochromatic, query_base)
            mode = "dual-tree"
        LOGGER.info("Searched %d queries (k=%d, mode=%s)", Q.shape[0], k, mode)
        return indices, kernels

    def _naive_search(self, Q: np.ndarray, k: int, monochromatic: bool):
        R = self.reference_
        nq = Q.shape[0]
        indices = np.empty((nq, k), dtype=np.int64)
        kernels = np.empty((nq, k), dtype=float)
        for start in range(0, nq, _NAIVE_BLOCK):
            stop = min(start + _NAIVE_BLOCK, nq)
            values = self.kernel_.pairwise(Q[start:stop], R)
            if monochromatic:
                values[np.arange(stop - start), np.arange(start, stop)] = -np.inf
            order = np.argsort(-values, axis=1, kind="stable")[:, :k]
            indices[start:stop] = order
            kernels[start:stop] = np.take_along_axis(values, order, axis=1)
        return indices, kernels

    def _single_tree_search(self, Q: np.ndarray, k: int, monochromatic: bool):
        tree = self._reference_tree()
        nq = Q.shape[0]
        indices = np.empty((nq, k), dtype=np.int64)
        kernels = np.empty((nq, k), dtype=float)
        for qi in range(nq):
            idx, vals = self._single_query(Q[qi], qi if monochromatic else -1, k, tree)
            indices[qi] = idx
            kernels[qi] = vals
        return indices, kernels

    def _single_query(self, query: np.ndarray, self_index: int, k: int, tree: CoverTree):
        kernel = self.kernel_
        R = self.reference_
        prune = kernel.positive_definite
        q_norm = math.sqrt(max(kernel.evaluate(query, query), 0.0))
        cache: dict[int, float] = {}

        def kval(i: int) -> float:
            v = cache.get(i)
            if v is None:
                v = kernel.evaluate(query, R[i])
                cache[i] = v
            return v

        def bound(node: CoverTreeNode) -> float:
            if not prune:
                return math.inf
            return kval(node.point) + q_norm * node.furthest_descendant_distance

        best: list[tuple[float, int]] = []
        offered: set[int] = set()
        frontier = [(-bound(tree.root), 0, tree.root)]
        counter = 1
        while frontier:
            neg_bound, _, node = heapq.heappop(frontier)
            if len(best) == k and _prunable(-neg_bound, best[0][0]):
                break
            if node.point not in offered:
                offered.add(node.point)
                if node.point != self_index:
                    _offer(best, k, kval(node.point), node.point)
            for child in node.children:
                b = bound(child)
                if len(best) == k and _prunable(b, best[0][0]):
                    continue
                heapq.heappush(frontier, (-b, counter, child))
                counter += 1
        return _ordered(best)

    def _dual_tree_search(self, Q: np.ndarray, k: int, monochromatic: bool, base: float):
        kernel = self.kernel_
        R = self.reference_
        ref_tree = self._reference_tree()
        query_tree = ref_tree if monochromatic else CoverTree(Q, kernel, base)
        prune = kernel.positive_definite
        q_norms = query_tree.norms
        r_norms = ref_tree.norms

        nq = Q.shape[0]
        heaps: list[list[tuple[float, int]]] = [[] for _ in range(nq)]
        kth = np.full(nq, -np.inf)
        cache: dict[tuple[int, int], float] = {}

        def kval(qi: int, ri: int) -> float:
            v = cache.get((qi, ri))
            if v is None:
                v = kernel.evaluate(Q[qi], R[ri])
                cache[(qi, ri)] = v
            return v

        def recurse(qn: CoverTreeNode, rn: CoverTreeNode) -> None:
            if prune:
                rho_q = qn.furthest_descendant_distance
                rho_r = rn.furthest_descendant_distance
                b = (kval(qn.point, rn.point) + q_norms[qn.point] * rho_r
                     + r_norms[rn.point] * rho_q + rho_q * rho_r)
                if _prunable(b, float(kth[qn.descendants].min())):
                    return
            if qn.is_leaf and rn.is_leaf:
                qi, ri = qn.point, rn.point
                if monochromatic and qi == ri:
                    return
                heap = heaps[qi]
                _offer(heap, k, kval(qi, ri), ri)
                if len(heap) == k:
                    kth[qi] = heap[0][0]
                return
            if not qn.is_leaf and (rn.is_leaf or qn.level >= rn.level):
                for child in qn.children:
                    recurse(child, rn)
            else:
                # Reference children in decreasing kernel value.
                for child in sorted(rn.children, key=lambda c: -kval(qn.point, c.point)):
                    recurse(qn, child)

        recurse(query_tree.root, ref_tree.root)

        indices = np.empty((nq, k), dtype=np.int64)
        kernels = np.empty((nq, k), dtype=float)
        for qi in range(nq):
            indices[qi], kernels[qi] = _ordered(heaps[qi])
        return indices, kernels

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self, path) -> str:
        """Persist the fitted model (kernel, flags, reference set and tree)."""
        self._check_fitted()
        joblib.dump(self, path)
        LOGGER.info("Saved FastMKS model to %s", path)
        return str(path)

    @classmethod
    def load(cls, path) -> "FastMKS":
        model = joblib.load(path)
        if not isinstance(model, cls):
            raise ValueError(f"{path} does not contain a {cls.__name__} model")
        return model


def run_fastmks(
    reference=None,
    *,
    input_model: Any = None,
    query=None,
    k: int | None = None,
    kernel: str = "linear",
    degree: float = 2.0,
    offset: float = 0.0,
    bandwidth: float = 1.0,
    scale: float = 1.0,
    base: float = 2.0,
    naive: bool = False,
    single: bool = False,
    output_model=None,
):
    """
    Build or load a FastMKS model, optionally search it and save it.

    Exactly one of ``reference`` and ``input_model`` (a model or a path to a
    saved one) must be given.  A search runs only when ``k`` is given; the
    reference set is searched against itself when ``query`` is omitted.

    Returns
    -------
    model : FastMKS
    indices, kernels : ndarray of shape (n_queries, k) or None
    """
    if (reference is None) == (input_model is None):
        raise ValueError("Exactly one of 'reference' or 'input_model' must be given")

    if input_model is not None:
        ignored = (
            ("kernel", kernel, "linear"),
            ("degree", degree, 2.0),
            ("offset", offset, 0.0),
            ("bandwidth", bandwidth, 1.0),
            ("scale", scale, 1.0),
        )
        for name, value, default in ignored:
            if value != default:
                LOGGER.warning("'%s' ignored because an input model was given", name)
    if k is None and query is not None:
        LOGGER.warning("'query' ignored because 'k' was not given")
    if naive and single:
        LOGGER.warning("'single' ignored because naive search was requested")

    if input_model is None:
        model = FastMKS(
            kernel,
            degree=degree,
            offset=offset,
            bandwidth=bandwidth,
            scale=scale,
            base=base,
            single_mode=single,
            naive=naive,
        ).fit(reference)
    else:
        if isinstance(input_model, (str, os.PathLike)):
            model = FastMKS.load(input_model)
        else:
            model = input_model
        model.set_params(naive=naive, single_mode=single)

    indices = kernels = None
    if k is not None:
        indices, kernels = model.search(query, k=k, base=base)
    if output_model is not None:
        model.save(output_model)
    return model, indices, kernels
