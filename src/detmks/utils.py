# -*- coding: utf-8 -*-
"""
detmks.utils
============

Helpers around a fitted :class:`~detmks.tree.DensityEstimationTree`:

* :func:`enumerate_tree` walks the tree and yields enter/leave events;
* :class:`PathCacher` consumes those events and records, for every leaf, the
  root-to-leaf branch decisions as a formatted string;
* leaf class membership and variable importance reports.
"""

from __future__ import annotations

import contextlib
import re
import sys
from enum import Enum
from typing import Iterator

import numpy as np

from .logging import get_logger
from .tree import DensityEstimationTree

LOGGER = get_logger("utils")


class PathFormat(str, Enum):
    """How a cached root-to-leaf path is rendered.

    ``LR`` gives ``"LRL"``; ``LR_ID`` follows each direction with the tag of
    the node entered (``"L1R4"``); ``ID_LR`` puts the tag first (``"1L4R"``).
    """

    LR = "lr"
    LR_ID = "lr-id"
    ID_LR = "id-lr"


_STEP_PATTERNS = {
    PathFormat.LR_ID: re.compile(r"([LR])(\d+)"),
    PathFormat.ID_LR: re.compile(r"(\d+)([LR])"),
}


def enumerate_tree(tree: DensityEstimationTree) -> Iterator[tuple[int, int, bool]]:
    """
    Walk ``tree`` depth-first, left before right.

    Yields ``(node_id, parent_id, entering)``: ``entering`` is ``True`` when
    the walk reaches the node and ``False`` after its subtree is done.  The
    root's parent is ``-1``.
    """
    tree._check_fitted()
    stack = [(tree.root_, -1, True)]
    while stack:
        nid, parent, entering = stack.pop()
        yield nid, parent, entering
        if not entering:
            continue
        stack.append((nid, parent, False))
        node = tree.node(nid)
        if not node.is_leaf:
            stack.append((node.right, nid, True))
            stack.append((node.left, nid, True))


class PathCacher:
    """
    Record the branch decisions leading to each leaf of a tree.

    Construction tags every node of ``tree`` in pre-order (internal nodes
    included) so paths can carry node tags.  The cacher does not walk the
    tree: feed it the events of :func:`enumerate_tree` through
    :meth:`enter` and :meth:`leave`, or use :meth:`from_tree`.

    Parameters
    ----------
    fmt : PathFormat or str
        Path rendering.
    tree : DensityEstimationTree
        Fitted tree.  Paths become stale if the tree is pruned afterwards.
    """

    def __init__(self, fmt, tree: DensityEstimationTree) -> None:
        self.format = PathFormat(fmt)
        self.tree = tree
        tree.tag_tree(0, every_node=True)
        self._path: list[tuple[bool, int]] = []
        self._cache: dict[int, tuple[int, str]] = {}

    @classmethod
    def from_tree(cls, fmt, tree: DensityEstimationTree) -> "PathCacher":
        cacher = cls(fmt, tree)
        for nid, parent, entering in enumerate_tree(tree):
            if entering:
                cacher.enter(nid, parent)
            else:
                cacher.leave(nid, parent)
        LOGGER.debug("Cached %d leaf paths", cacher.num_nodes())
        return cacher

    def enter(self, nid: int, parent: int) -> None:
        node = self.tree.node(nid)
        parent_tag = -1
        if parent >= 0:
            parent_node = self.tree.node(parent)
            parent_tag = parent_node.tag
            self._path.append((parent_node.left == nid, node.tag))
        if node.is_leaf:
            self._cache[node.tag] = (parent_tag, self._build_string())

    def leave(self, nid: int, parent: int) -> None:
        if parent >= 0:
            self._path.pop()

    def _build_string(self) -> str:
        parts = []
        for is_left, tag in self._path:
            side = "L" if is_left else "R"
            if self.format is PathFormat.LR:
                parts.append(side)
            elif self.format is PathFormat.LR_ID:
                parts.append(f"{side}{tag}")
            else:
                parts.append(f"{tag}{side}")
        return "".join(parts)

    def path_for(self, tag: int) -> str:
        if tag not in self._cache:
            raise KeyError(f"No cached path for tag {tag}")
        return self._cache[tag][1]

    def parent_of(self, tag: int) -> int:
        if tag not in self._cache:
            raise KeyError(f"No cached path for tag {tag}")
        return self._cache[tag][0]

    def num_nodes(self) -> int:
        return len(self._cache)

    def tags(self) -> list[int]:
        return sorted(self._cache)


def decode_path(path: str, fmt) -> list[bool]:
    """Branch decisions (``True`` for left) encoded in a cached path string."""
    fmt = PathFormat(fmt)
    if fmt is PathFormat.LR:
        if set(path) - {"L", "R"}:
            raise ValueError(f"Malformed path '{path}' for format {fmt.value}")
        return [c == "L" for c in path]
    pattern = _STEP_PATTERNS[fmt]
    steps = pattern.findall(path)
    if "".join("".join(s) for s in steps) != path:
        raise ValueError(f"Malformed path '{path}' for format {fmt.value}")
    side = 0 if fmt is PathFormat.LR_ID else 1
    return [s[side] == "L" for s in steps]


def leaf_paths(tree: DensityEstimationTree, cacher: PathCacher, X) -> list[str]:
    """Cached path of the leaf each row of ``X`` falls in."""
    return [cacher.path_for(int(tag)) for tag in tree.apply(X)]


@contextlib.contextmanager
def _output(file):
    if file is None:
        yield sys.stdout
    elif hasattr(file, "write"):
        yield file
    else:
        with open(file, "w", encoding="utf-8") as fh:
            yield fh


def leaf_class_membership(tree: DensityEstimationTree, X, labels, n_classes: int | None = None):
    """
    Count the labels of ``X`` per leaf.

    Returns
    -------
    tags : ndarray of shape (n_leaves,)
        Leaf tags, left to right.
    table : ndarray of shape (n_leaves, n_classes)
        ``table[i, c]`` counts the points of class ``c`` in leaf ``tags[i]``.
    """
    labels = np.asarray(labels, dtype=int).ravel()
    point_tags = tree.apply(X)
    if labels.shape[0] != point_tags.shape[0]:
        raise ValueError("labels must have one entry per row of X")
    if labels.size and labels.min() < 0:
        raise ValueError("labels must be non-negative")
    if n_classes is None:
        n_classes = int(labels.max()) + 1 if labels.size else 0
    elif labels.size and labels.max() >= n_classes:
        raise ValueError(f"labels must be smaller than n_classes ({n_classes})")

    tags = np.array([tree.node(nid).tag for nid in tree.leaves()], dtype=int)
    row = {int(t): i for i, t in enumerate(tags)}
    table = np.zeros((len(tags), n_classes), dtype=int)
    for tag, label in zip(point_tags, labels):
        table[row[int(tag)], label] += 1
    return tags, table


def print_leaf_membership(tree: DensityEstimationTree, X, labels, n_classes: int | None = None,
                          file=None) -> None:
    """Write one line per leaf: its tag followed by the per-class counts."""
    tags, table = leaf_class_membership(tree, X, labels, n_classes)
    with _output(file) as out:
        for tag, counts in zip(tags, table):
            print(tag, *counts.tolist(), file=out)


def print_variable_importance(tree: DensityEstimationTree, file=None) -> None:
    """Write one ``<dimension> <importance>`` line per feature."""
    importance = tree.variable_importance()
    if importance.size:
        LOGGER.info("Maximum variable importance: %g", float(importance.max()))
    with _output(file) as out:
        for dim, value in enumerate(importance):
            print(dim, f"{value:.6g}", file=out)
