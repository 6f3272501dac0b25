"""Cover tree over the metric induced by a kernel.

The kernel-induced distance is ``d(a, b) = sqrt(k(a,a) + k(b,b) - 2 k(a,b))``,
the Euclidean distance between the feature-space images of ``a`` and ``b``.
A node at level ``i`` holds all of its descendants within ``base ** i`` of its
representative point; each point is the leaf of exactly one root-to-leaf path
(a representative descends through its own "self-child").
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterator, List

import numpy as np

from .kernels import Kernel
from .logging import get_logger

LOGGER = get_logger("cover_tree")

# Relative slack when checking the covering invariant in ``validate``.
_COVER_RTOL = 1e-9


@dataclass
class CoverTreeNode:
    point: int
    level: float
    furthest_descendant_distance: float = 0.0
    children: List["CoverTreeNode"] = field(default_factory=list)
    descendants: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))

    @property
    def is_leaf(self) -> bool:
        return not self.children


class CoverTree:
    """
    Cover tree built top-down over a fixed point set.

    Parameters
    ----------
    points : array-like of shape (n_points, n_features)
        Points to index.  Not copied.
    kernel : Kernel
        Kernel whose induced metric organises the tree.
    base : float, default=2.0
        Expansion constant; must be greater than 1.  Smaller bases give
        deeper, narrower trees.
    """

    def __init__(self, points: Any, kernel: Kernel, base: float = 2.0) -> None:
        base = float(base)
        if not base > 1.0:
            raise ValueError(f"Cover tree base must be greater than 1; got {base}")
        points = np.asarray(points, dtype=float)
        if points.ndim != 2:
            raise ValueError("points must be a 2-D array of shape (n_points, n_features)")
        if points.shape[0] == 0:
            raise ValueError("Cannot build a cover tree over zero points")

        self.points = points
        self.kernel = kernel
        self.base = base
        self.norms = np.sqrt(np.maximum(kernel.diagonal(points), 0.0))

        n = points.shape[0]
        self.root = self._build(0, np.arange(1, n, dtype=np.int64))
        LOGGER.debug(
            "Built cover tree over %d points (base=%g): %d nodes, depth %d",
            n, base, self.num_nodes(), self.depth(),
        )

    @property
    def num_points(self) -> int:
        return int(self.points.shape[0])

    def _distances(self, p: int, others: np.ndarray) -> np.ndarray:
        if others.size == 0:
            return np.empty(0, dtype=float)
        return self.kernel.induced_distances(self.points[p], self.points[others])

    def _level_for(self, distance: float) -> int:
        """Smallest integer ``level`` with ``base ** level >= distance``."""
        level = int(math.ceil(math.log(distance) / math.log(self.base)))
        while self.base ** level < distance:
            level += 1
        while self.base ** (level - 1) >= distance:
            level -= 1
        return level

    def _build(self, p: int, subset: np.ndarray) -> CoverTreeNode:
        """
        Build the subtree represented by ``p`` over the points ``subset``.

        The node's level is the smallest one covering ``subset``.  Points
        within ``base ** (level - 1)`` of ``p`` go to ``p``'s self-child; the
        rest are grouped greedily around new centres taken in index order.
        """
        descendants = np.concatenate((np.asarray([p], dtype=np.int64), subset))
        if subset.size == 0:
            return CoverTreeNode(point=p, level=-math.inf, descendants=descendants)

        dists = self._distances(p, subset)
        furthest = float(dists.max())
        if furthest == 0.0:
            # Exact duplicates of ``p`` hang directly below it.
            children = [CoverTreeNode(point=p, level=-math.inf,
                                      descendants=np.asarray([p], dtype=np.int64))]
            children.extend(
                CoverTreeNode(point=int(q), level=-math.inf,
                              descendants=np.asarray([q], dtype=np.int64))
                for q in subset
            )
            return CoverTreeNode(point=p, level=-math.inf, furthest_descendant_distance=0.0,
                                 children=children, descendants=descendants)

        level = self._level_for(furthest)
        radius = self.base ** (level - 1)
        near = dists <= radius
        children = [self._build(p, subset[near])]
        far = subset[~near]
        while far.size:
            q = int(far[0])
            others = far[1:]
            grouped = self._distances(q, others) <= radius
            children.append(self._build(q, others[grouped]))
            far = others[~grouped]
        return CoverTreeNode(point=p, level=level, furthest_descendant_distance=furthest,
                             children=children, descendants=descendants)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def nodes(self) -> Iterator[CoverTreeNode]:
        """Pre-order iteration over every node."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def num_nodes(self) -> int:
        return sum(1 for _ in self.nodes())

    def depth(self) -> int:
        best = 0
        stack = [(self.root, 1)]
        while stack:
            node, d = stack.pop()
            best = max(best, d)
            stack.extend((child, d + 1) for child in node.children)
        return best

    def validate(self) -> None:
        """Check the covering and leaf invariants; raise ``ValueError`` if broken."""
        leaf_points: list[int] = []
        for node in self.nodes():
            if node.is_leaf:
                leaf_points.append(node.point)
                continue
            others = node.descendants[node.descendants != node.point]
            dists = self._distances(node.point, others)
            if dists.size and dists.max() > node.furthest_descendant_distance * (1 + _COVER_RTOL) + 1e-12:
                raise ValueError(f"Node {node.point} under-reports its furthest descendant")
            if math.isfinite(node.level):
                bound = self.base ** node.level
                if node.furthest_descendant_distance > bound * (1 + _COVER_RTOL):
                    raise ValueError(
                        f"Node {node.point} at level {node.level} does not cover its descendants"
                    )
            child_desc = np.concatenate([child.descendants for child in node.children])
            if not np.array_equal(np.sort(child_desc), np.sort(node.descendants)):
                raise ValueError(f"Children of node {node.point} do not partition its descendants")
        if sorted(leaf_points) != list(range(self.num_points)):
            raise ValueError("Every point must appear as exactly one leaf")
