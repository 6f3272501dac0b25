# -*- coding: utf-8 -*-
"""
detmks.tree
===========

This module implements a density estimation tree (DET): a binary partition of
feature space into axis-aligned boxes, each leaf estimating the density as
``n_leaf / (N * volume_leaf)``.  Splits are chosen to minimise the
integrated squared error of the piecewise-constant estimate, and the fully
grown tree is equipped with a minimal cost-complexity pruning sequence
(one ``alpha`` per subtree collapse) so that any pruning of the tree can be
queried without copying it.

The estimator follows scikit-learn conventions (``fit``, ``score_samples``,
``score``) and additionally offers rule export, pretty printing and Graphviz
export of the current tree.

Nodes live in an integer-addressed arena (:class:`NodeArena`).  Children are
referenced by id; collapsing a subtree releases the ids of its descendants to
the arena free-list.
"""

# -----------------------------------------------------------------------------

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass

import numpy as np
from sklearn.base import BaseEstimator, DensityMixin

from .logging import get_logger

LOGGER = get_logger("tree")

# Gain ratios this close to 1 count as "no improvement".
_IMPROVEMENT_RTOL = 1e-12


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _log_volume(min_vals: np.ndarray, max_vals: np.ndarray) -> float:
    # Zero-width dimensions do not contribute, so degenerate data keeps a
    # finite volume.
    widths = max_vals - min_vals
    widths = widths[widths > 0]
    if widths.size == 0:
        return 0.0
    return float(np.sum(np.log(widths)))


def _log_neg_error(n: int, n_total: int, log_volume: float) -> float:
    return 2.0 * math.log(n) - 2.0 * math.log(n_total) - log_volume


def _feature_name(fn, dim: int) -> str:
    if fn is not None and 0 <= dim < len(fn):
        return str(fn[dim])
    return f"X[{dim}]"


# -----------------------------------------------------------------------------
# Node storage
# -----------------------------------------------------------------------------
@dataclass
class DTreeNode:
    """A single box of a density estimation tree.

    ``start``/``end`` delimit the node's points inside the owning tree's
    ``order_`` permutation.  ``left``/``right`` are arena ids (``-1`` for a
    leaf).  ``collapse_alpha`` is the pruning parameter at which the subtree
    rooted here becomes a leaf.
    """

    start: int
    end: int
    min_vals: np.ndarray
    max_vals: np.ndarray
    ratio: float
    log_volume: float
    log_neg_error: float
    parent: int = -1
    left: int = -1
    right: int = -1
    split_dim: int | None = None
    split_value: float | None = None
    collapse_alpha: float = math.inf
    tag: int = -1

    @property
    def is_leaf(self) -> bool:
        return self.left < 0

    @property
    def n_points(self) -> int:
        return self.end - self.start

    @property
    def neg_error(self) -> float:
        # -R(t): the node's squared-error contribution as a leaf, negated.
        return float(np.exp(self.log_neg_error))

    @property
    def density(self) -> float:
        return self.ratio * float(np.exp(-self.log_volume))


class NodeArena:
    """Integer-addressed node storage with a free-list of released ids."""

    def __init__(self) -> None:
        self._nodes: list[DTreeNode | None] = []
        self._free: list[int] = []

    def allocate(self, node: DTreeNode) -> int:
        if self._free:
            nid = self._free.pop()
            self._nodes[nid] = node
            return nid
        self._nodes.append(node)
        return len(self._nodes) - 1

    def release(self, nid: int) -> None:
        if self._nodes[nid] is None:
            raise ValueError(f"Node {nid} has already been released")
        self._nodes[nid] = None
        self._free.append(nid)

    def __getitem__(self, nid: int) -> DTreeNode:
        node = self._nodes[nid]
        if node is None:
            raise KeyError(f"Node {nid} has been released")
        return node

    def __len__(self) -> int:
        return len(self._nodes) - len(self._free)

    @property
    def capacity(self) -> int:
        return len(self._nodes)


@dataclass(frozen=True)
class PruningStep:
    """One collapse of the cost-complexity pruning sequence."""

    alpha: float
    node: int
    n_leaves: int
    error: float


# -----------------------------------------------------------------------------
# Estimator
# -----------------------------------------------------------------------------
class DensityEstimationTree(BaseEstimator, DensityMixin):
    """
    Density estimation tree with minimal cost-complexity pruning.

    The tree recursively splits the bounding box of the training data along
    one axis at a time.  For a node holding ``n`` points of a box of width
    ``w`` along dimension ``d``, a split at ``s`` leaving ``n_l`` points on the
    left and ``n_r`` on the right is scored by
    ``n_l**2 / (s - lo) + n_r**2 / (hi - s)``; dividing by ``n**2 / w`` gives a
    gain ratio that is ``>= 1`` and equals ``1`` when the split does not
    reduce the integrated squared error.

    Parameters
    ----------
    max_leaf_size : int, default=10
        Nodes holding more points than this are always split when a valid
        split exists.  Smaller nodes are only split when the split strictly
        improves the error.
    min_leaf_size : int, default=5
        Minimum number of points in each child of a split.
    use_volume_reg : bool, default=False
        Scale each node's cost-complexity ratio by ``1 + V_t / V_root`` so
        that large-volume regions need a larger ``alpha`` to collapse.

    Attributes
    ----------
    nodes_ : NodeArena
        Node storage.
    root_ : int
        Arena id of the root node.
    order_ : ndarray of shape (n_points,)
        Permutation of training row indices; every node covers a contiguous
        slice of it.
    n_train_ : int
        Number of training points.
    pruning_sequence_ : list[PruningStep]
        Collapses of the current tree, ordered by non-decreasing ``alpha``.
    alpha_ : float
        Largest ``alpha`` the tree has been physically pruned to (``-inf``
        when unpruned).

    Notes
    -----
    Queries accept an optional ``alpha``: the tree is then read as if pruned
    at that value, without modifying it.
    """

    def __init__(
        self,
        *,
        max_leaf_size: int = 10,
        min_leaf_size: int = 5,
        use_volume_reg: bool = False,
    ):
        self.max_leaf_size = int(max_leaf_size)
        self.min_leaf_size = int(min_leaf_size)
        self.use_volume_reg = bool(use_volume_reg)

        self.nodes_ = None
        self.root_ = None

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------
    def fit(self, X, y=None):
        """
        Grow the full tree on ``X`` and compute its pruning sequence.

        Parameters
        ----------
        X : array-like of shape (n_points, n_features)
            Training points.
        y : ignored

        Returns
        -------
        self
        """
        if self.min_leaf_size < 1:
            raise ValueError("min_leaf_size must be at least 1")
        if self.min_leaf_size > self.max_leaf_size:
            raise ValueError(
                f"min_leaf_size ({self.min_leaf_size}) must not exceed "
                f"max_leaf_size ({self.max_leaf_size})"
            )
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ValueError("X must be a 2-D array of shape (n_points, n_features)")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit a density estimation tree on zero points")
        if not np.all(np.isfinite(X)):
            raise ValueError("X contains NaN or infinite values")

        n, d = X.shape
        self.n_train_ = n
        self.n_features_ = d
        self.order_ = np.arange(n)
        self.nodes_ = NodeArena()
        self.alpha_ = -math.inf

        min_vals = X.min(axis=0)
        max_vals = X.max(axis=0)
        log_vol = _log_volume(min_vals, max_vals)
        root = DTreeNode(
            start=0,
            end=n,
            min_vals=min_vals,
            max_vals=max_vals,
            ratio=1.0,
            log_volume=log_vol,
            log_neg_error=_log_neg_error(n, n, log_vol),
        )
        self.root_ = self.nodes_.allocate(root)
        self._grow(X, self.root_)
        self._compute_pruning_sequence()
        self.tag_tree()
        LOGGER.info(
            "Grew density tree on %d points x %d dims: %d nodes, %d leaves",
            n, d, len(self.nodes_), self.n_leaves(),
        )
        return self

    def _check_fitted(self) -> None:
        if getattr(self, "root_", None) is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")

    def _validate_queries(self, X) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X[None, :]
        if X.ndim != 2 or X.shape[1] != self.n_features_:
            raise ValueError(
                f"X must have shape (n_points, {self.n_features_}); got {X.shape}"
            )
        return X

    # ------------------------------------------------------------------
    # Tree construction (integrated squared error)
    # ------------------------------------------------------------------
    def _make_child(self, start, end, min_vals, max_vals, parent) -> int:
        n = end - start
        log_vol = _log_volume(min_vals, max_vals)
        child = DTreeNode(
            start=start,
            end=end,
            min_vals=min_vals,
            max_vals=max_vals,
            ratio=n / self.n_train_,
            log_volume=log_vol,
            log_neg_error=_log_neg_error(n, self.n_train_, log_vol),
            parent=parent,
        )
        return self.nodes_.allocate(child)

    def _grow(self, X, nid: int) -> None:
        """
        Recursively split node ``nid`` until the stopping rules hold.

        A node becomes a leaf when it holds fewer than ``2 * min_leaf_size``
        points, when no valid split exists (e.g. every dimension has zero
        width), or when it holds at most ``max_leaf_size`` points and the best
        split does not improve the error.
        """
        node = self.nodes_[nid]
        n = node.n_points
        if n < 2 * self.min_leaf_size:
            return
        split = self._find_split(X, node)
        if split is None:
            return
        dim, value, gain = split
        if n <= self.max_leaf_size and gain <= 1.0 + _IMPROVEMENT_RTOL:
            return

        idx = self.order_[node.start:node.end]
        goes_left = X[idx, dim] <= value
        self.order_[node.start:node.end] = np.concatenate([idx[goes_left], idx[~goes_left]])
        mid = node.start + int(goes_left.sum())

        left_max = node.max_vals.copy()
        left_max[dim] = value
        right_min = node.min_vals.copy()
        right_min[dim] = value

        node.split_dim = dim
        node.split_value = value
        node.left = self._make_child(node.start, mid, node.min_vals, left_max, nid)
        node.right = self._make_child(mid, node.end, right_min, node.max_vals, nid)
        self._grow(X, node.left)
        self._grow(X, node.right)

    def _find_split(self, X, node: DTreeNode):
        """Return ``(dim, value, gain_ratio)`` of the best split, or ``None``.

        Dimensions are scanned in order and candidates in increasing value;
        a later candidate replaces the current best only if strictly better.
        """
        n = node.n_points
        m = self.min_leaf_size
        i = np.arange(m - 1, n - m)
        if i.size == 0:
            return None
        idx = self.order_[node.start:node.end]
        n_left = (i + 1).astype(float)
        n_right = n - n_left

        best = None
        best_gain = -math.inf
        for dim in range(self.n_features_):
            lo = node.min_vals[dim]
            hi = node.max_vals[dim]
            width = hi - lo
            if width <= 0:
                continue
            v = np.sort(X[idx, dim])
            splits = 0.5 * (v[i] + v[i + 1])
            # Equal neighbours (or neighbours one ulp apart) cannot be split.
            valid = (splits > v[i]) & (splits < v[i + 1]) & (splits > lo) & (splits < hi)
            if not valid.any():
                continue
            with np.errstate(divide="ignore", invalid="ignore"):
                scores = n_left ** 2 / (splits - lo) + n_right ** 2 / (hi - splits)
            scores = np.where(valid, scores, -np.inf)
            j = int(np.argmax(scores))
            gain = float(scores[j] * width / (float(n) ** 2))
            if gain > best_gain:
                best_gain = gain
                best = (dim, float(splits[j]), gain)
        return best

    # ------------------------------------------------------------------
    # Pruning
    # ------------------------------------------------------------------
    def _preorder(self, nid: int):
        stack = [nid]
        while stack:
            cur = stack.pop()
            yield cur
            node = self.nodes_[cur]
            if not node.is_leaf:
                stack.append(node.right)
                stack.append(node.left)

    def _compute_pruning_sequence(self) -> None:
        """
        Compute the weakest-link collapse sequence of the full tree.

        For every internal node ``t``, ``g(t) = (R(t) - R(T_t)) / (|T_t| - 1)``
        with ``R`` the (negative) squared-error cost.  The node with the
        smallest ``g`` collapses first, its ancestors' subtree costs are
        updated, and the procedure repeats until only the root remains.
        """
        nodes = self.nodes_
        order = list(self._preorder(self.root_))
        sub_err: dict[int, float] = {}
        sub_leaves: dict[int, int] = {}
        for nid in reversed(order):
            node = nodes[nid]
            if node.is_leaf:
                sub_err[nid] = node.neg_error
                sub_leaves[nid] = 1
            else:
                sub_err[nid] = sub_err[node.left] + sub_err[node.right]
                sub_leaves[nid] = sub_leaves[node.left] + sub_leaves[node.right]

        root_log_volume = nodes[self.root_].log_volume

        def _g(nid: int) -> float:
            node = nodes[nid]
            g = (sub_err[nid] - node.neg_error) / (sub_leaves[nid] - 1)
            if self.use_volume_reg:
                g *= 1.0 + math.exp(node.log_volume - root_log_volume)
            return g

        current: dict[int, float] = {}
        heap: list[tuple[float, int]] = []
        for nid in order:
            if not nodes[nid].is_leaf:
                current[nid] = _g(nid)
                heap.append((current[nid], nid))
        heapq.heapify(heap)

        steps: list[PruningStep] = []
        last_alpha = -math.inf
        while heap:
            g, nid = heapq.heappop(heap)
            if current.get(nid) != g:
                continue
            alpha = max(g, last_alpha)
            last_alpha = alpha

            node = nodes[nid]
            node.collapse_alpha = alpha
            del current[nid]
            for desc in self._preorder(nid):
                current.pop(desc, None)
                if nodes[desc].collapse_alpha > alpha:
                    nodes[desc].collapse_alpha = alpha

            delta_err = sub_err[nid] - node.neg_error
            delta_leaves = sub_leaves[nid] - 1
            sub_err[nid] = node.neg_error
            sub_leaves[nid] = 1
            anc = node.parent
            while anc >= 0:
                sub_err[anc] -= delta_err
                sub_leaves[anc] -= delta_leaves
                current[anc] = _g(anc)
                heapq.heappush(heap, (current[anc], anc))
                anc = nodes[anc].parent

            steps.append(
                PruningStep(
                    alpha=alpha,
                    node=nid,
                    n_leaves=sub_leaves[self.root_],
                    error=-sub_err[self.root_],
                )
            )
        self.pruning_sequence_ = steps
        LOGGER.debug("Pruning sequence has %d collapses", len(steps))

    def distinct_alphas(self) -> np.ndarray:
        """Sorted distinct ``alpha`` values of the current pruning sequence."""
        self._check_fitted()
        return np.unique([step.alpha for step in self.pruning_sequence_])

    def prune(self, alpha: float):
        """
        Physically collapse every subtree whose ``collapse_alpha <= alpha``.

        Released descendants return to the arena free-list, the pruning
        sequence is trimmed to the remaining collapses and leaves are
        retagged.

        Returns
        -------
        self
        """
        self._check_fitted()
        alpha = float(alpha)
        targets = [nid for nid in self._leaf_ids(alpha) if not self.nodes_[nid].is_leaf]
        for nid in targets:
            node = self.nodes_[nid]
            doomed = list(self._preorder(nid))[1:]
            node.left = -1
            node.right = -1
            node.split_dim = None
            node.split_value = None
            for desc in doomed:
                self.nodes_.release(desc)
        self.pruning_sequence_ = [s for s in self.pruning_sequence_ if s.alpha > alpha]
        self.alpha_ = max(self.alpha_, alpha)
        self.tag_tree()
        LOGGER.info("Pruned at alpha=%g: %d leaves remain", alpha, self.n_leaves())
        return self

    # ------------------------------------------------------------------
    # Traversal and tagging
    # ------------------------------------------------------------------
    def _is_leaf_at(self, node: DTreeNode, alpha: float) -> bool:
        return node.is_leaf or node.collapse_alpha <= alpha

    def _leaf_ids(self, alpha: float = -math.inf) -> list[int]:
        out = []
        stack = [self.root_]
        while stack:
            nid = stack.pop()
            node = self.nodes_[nid]
            if self._is_leaf_at(node, alpha):
                out.append(nid)
            else:
                stack.append(node.right)
                stack.append(node.left)
        return out

    def _find_leaf(self, x, alpha: float = -math.inf) -> int:
        nid = self.root_
        node = self.nodes_[nid]
        while not self._is_leaf_at(node, alpha):
            nid = node.left if x[node.split_dim] <= node.split_value else node.right
            node = self.nodes_[nid]
        return nid

    def leaves(self, alpha: float | None = None) -> list[int]:
        """Arena ids of the leaves, left to right, optionally at ``alpha``."""
        self._check_fitted()
        return self._leaf_ids(-math.inf if alpha is None else float(alpha))

    def n_leaves(self, alpha: float | None = None) -> int:
        return len(self.leaves(alpha))

    def node(self, nid: int) -> DTreeNode:
        self._check_fitted()
        return self.nodes_[nid]

    def node_points(self, nid: int) -> np.ndarray:
        """Training row indices covered by node ``nid``."""
        node = self.node(nid)
        return self.order_[node.start:node.end]

    def tag_tree(self, tag: int = 0, every_node: bool = False) -> int:
        """
        Assign integer tags in depth-first order and return the next free tag.

        Only leaves are tagged unless ``every_node`` is set, in which case
        internal nodes are tagged too (pre-order).  Untagged nodes get ``-1``.
        """
        self._check_fitted()
        for nid in self._preorder(self.root_):
            node = self.nodes_[nid]
            if node.is_leaf or every_node:
                node.tag = tag
                tag += 1
            else:
                node.tag = -1
        return tag

    # ------------------------------------------------------------------
    # Density queries
    # ------------------------------------------------------------------
    def density(self, X, alpha: float | None = None) -> np.ndarray:
        """
        Estimated density at each row of ``X``.

        Points outside the bounding box of the training data get density 0.
        With ``alpha`` the tree is read as if pruned at that value.
        """
        self._check_fitted()
        X = self._validate_queries(X)
        a = -math.inf if alpha is None else float(alpha)
        root = self.nodes_[self.root_]
        inside = np.all((X >= root.min_vals) & (X <= root.max_vals), axis=1)
        out = np.zeros(X.shape[0], dtype=float)
        for i in np.nonzero(inside)[0]:
            out[i] = self.nodes_[self._find_leaf(X[i], a)].density
        return out

    def score_samples(self, X, alpha: float | None = None) -> np.ndarray:
        """Natural log of the estimated density (``-inf`` where it is 0)."""
        with np.errstate(divide="ignore"):
            return np.log(self.density(X, alpha))

    def score(self, X, y=None) -> float:
        """Total log-likelihood of ``X`` under the current tree."""
        return float(np.sum(self.score_samples(X)))

    def apply(self, X) -> np.ndarray:
        """Tag of the leaf each row of ``X`` is routed to."""
        self._check_fitted()
        X = self._validate_queries(X)
        return np.array([self.nodes_[self._find_leaf(x)].tag for x in X], dtype=int)

    def error(self, alpha: float | None = None) -> float:
        """Squared-error cost ``R(T) = -sum_leaves n^2 / (N^2 V)``."""
        return -float(sum(self.nodes_[nid].neg_error for nid in self.leaves(alpha)))

    def variable_importance(self) -> np.ndarray:
        """
        Per-dimension error reduction summed over the current splits.

        Returns
        -------
        ndarray of shape (n_features,)
        """
        self._check_fitted()
        importance = np.zeros(self.n_features_, dtype=float)
        for nid in self._preorder(self.root_):
            node = self.nodes_[nid]
            if node.is_leaf:
                continue
            left = self.nodes_[node.left]
            right = self.nodes_[node.right]
            importance[node.split_dim] += left.neg_error + right.neg_error - node.neg_error
        return importance

    # ------------------------------------------------------------------
    # Rule export / Graphviz / printing
    # ------------------------------------------------------------------
    def export_rules(self, *, feature_names=None) -> list[str]:
        """
        Export every leaf as ``<antecedent> => leaf <tag> density=<value>``.

        Parameters
        ----------
        feature_names : list[str], optional
            Names for the input features.  Defaults to ``X[i]``.

        Returns
        -------
        list[str]
        """
        self._check_fitted()
        rules: list[str] = []
        self._collect_rules(self.root_, [], rules, feature_names)
        return rules

    def print_tree(self, feature_names=None, file=None) -> None:
        """Pretty-print the tree to ``file`` (default ``stdout``)."""
        self._check_fitted()
        self._print_node(self.root_, "", feature_names, file)

    def export_graphviz(self, filename: str | None = None, *, feature_names=None,
                        format: str = "png") -> str:
        """
        Export the tree structure in Graphviz format.

        Parameters
        ----------
        filename : str or None, default=None
            Basename of the output file.  If ``None`` the DOT source is
            returned and nothing is written.
        feature_names : list[str], optional
            Custom names for the input features.
        format : str, default="png"
            Output format.  ``'dot'`` writes the DOT source without calling
            the external ``dot`` binary.

        Returns
        -------
        str
            Path to the written file, or the DOT source if ``filename`` is
            ``None``.
        """
        self._check_fitted()
        try:
            import graphviz
        except ImportError:
            raise RuntimeError("Graphviz is required for export_graphviz but not installed.")
        dot = graphviz.Digraph(format=format)
        self._add_graph_nodes(dot, self.root_, "0", feature_names)

        if filename is None:
            return dot.source
        if format.lower() == "dot":
            path = f"{filename}.dot"
            dot.save(path)
            return path
        try:
            dot.render(filename, cleanup=True)
            return f"{filename}.{format}"
        except graphviz.ExecutableNotFound:
            LOGGER.warning("Graphviz 'dot' executable not found; writing DOT source instead")
            fallback_path = f"{filename}.dot"
            dot.save(fallback_path)
            return fallback_path

    def _leaf_label(self, node: DTreeNode) -> str:
        return f"leaf {node.tag} | n={node.n_points} density={node.density:.6g}"

    def _collect_rules(self, nid: int, parts, rules, fn):
        node = self.nodes_[nid]
        if node.is_leaf:
            body = " AND ".join(parts) if parts else "<root>"
            rules.append(f"{body} => leaf {node.tag} density={node.density:.6g}")
            return
        name = _feature_name(fn, node.split_dim)
        left = f"{name} <= {node.split_value:.4f}"
        right = f"{name} > {node.split_value:.4f}"
        self._collect_rules(node.left, parts + [left], rules, fn)
        self._collect_rules(node.right, parts + [right], rules, fn)

    def _add_graph_nodes(self, dot, nid: int, name: str, fn):
        node = self.nodes_[nid]
        if node.is_leaf:
            dot.node(name, self._leaf_label(node).replace(" | ", "\n"),
                     shape="box", style="filled", color="lightgrey")
            return
        label = f"{_feature_name(fn, node.split_dim)} <= {node.split_value:.4f}\nn={node.n_points}"
        dot.node(name, label, shape="ellipse", style="filled", color="lightblue")
        l_id, r_id = name + "L", name + "R"
        self._add_graph_nodes(dot, node.left, l_id, fn)
        self._add_graph_nodes(dot, node.right, r_id, fn)
        dot.edge(name, l_id, label="True")
        dot.edge(name, r_id, label="False")

    def _print_node(self, nid: int, indent="", fn=None, file=None):
        node = self.nodes_[nid]
        if node.is_leaf:
            print(f"{indent}{self._leaf_label(node)}", file=file)
            return
        name = _feature_name(fn, node.split_dim)
        print(f"{indent}if {name} <= {node.split_value:.4f}:", file=file)
        self._print_node(node.left, indent + "  ", fn, file)
        print(f"{indent}else:", file=file)
        self._print_node(node.right, indent + "  ", fn, file)
