"""Kernel functions for max-kernel search.

A :class:`Kernel` is a closed tagged variant: ``name`` selects one of
:data:`KERNEL_TYPES` and the remaining fields carry that kernel's parameters
(unused parameters are ignored).  Vectorised evaluation goes through
``sklearn.metrics.pairwise``; the scalar path used inside tree traversals is
plain numpy.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Tuple

import numpy as np
from sklearn.metrics.pairwise import (
    cosine_similarity,
    euclidean_distances,
    linear_kernel,
    polynomial_kernel,
    rbf_kernel,
    sigmoid_kernel,
)

ArrayLike = Any

KERNEL_TYPES: Tuple[str, ...] = (
    "linear",
    "polynomial",
    "cosine",
    "gaussian",
    "epanechnikov",
    "triangular",
    "hyptan",
)


@dataclass(frozen=True)
class _KernelImpl:
    pairwise: Callable[["Kernel", np.ndarray, np.ndarray], np.ndarray]
    scalar: Callable[["Kernel", np.ndarray, np.ndarray], float]
    diagonal: Callable[["Kernel", np.ndarray], np.ndarray]


def _sq_dist(a: np.ndarray, b: np.ndarray) -> float:
    diff = a - b
    return float(np.dot(diff, diff))


def _row_sq_norms(A: np.ndarray) -> np.ndarray:
    return np.einsum("ij,ij->i", A, A)


def _cosine_scalar(kernel: "Kernel", a: np.ndarray, b: np.ndarray) -> float:
    denom = math.sqrt(float(np.dot(a, a))) * math.sqrt(float(np.dot(b, b)))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b)) / denom


_REGISTRY: Dict[str, _KernelImpl] = {
    "linear": _KernelImpl(
        pairwise=lambda k, A, B: linear_kernel(A, B),
        scalar=lambda k, a, b: float(np.dot(a, b)),
        diagonal=lambda k, A: _row_sq_norms(A),
    ),
    "polynomial": _KernelImpl(
        pairwise=lambda k, A, B: polynomial_kernel(
            A, B, degree=k.degree, gamma=1.0, coef0=k.offset
        ),
        scalar=lambda k, a, b: float((np.dot(a, b) + k.offset) ** k.degree),
        diagonal=lambda k, A: (_row_sq_norms(A) + k.offset) ** k.degree,
    ),
    "cosine": _KernelImpl(
        pairwise=lambda k, A, B: cosine_similarity(A, B),
        scalar=_cosine_scalar,
        diagonal=lambda k, A: (_row_sq_norms(A) > 0).astype(float),
    ),
    "gaussian": _KernelImpl(
        pairwise=lambda k, A, B: rbf_kernel(A, B, gamma=0.5 / k.bandwidth ** 2),
        scalar=lambda k, a, b: math.exp(-_sq_dist(a, b) / (2.0 * k.bandwidth ** 2)),
        diagonal=lambda k, A: np.ones(A.shape[0]),
    ),
    "epanechnikov": _KernelImpl(
        pairwise=lambda k, A, B: np.maximum(
            0.0, 1.0 - euclidean_distances(A, B, squared=True) / k.bandwidth ** 2
        ),
        scalar=lambda k, a, b: max(0.0, 1.0 - _sq_dist(a, b) / k.bandwidth ** 2),
        diagonal=lambda k, A: np.ones(A.shape[0]),
    ),
    "triangular": _KernelImpl(
        pairwise=lambda k, A, B: np.maximum(
            0.0, 1.0 - euclidean_distances(A, B) / k.bandwidth
        ),
        scalar=lambda k, a, b: max(0.0, 1.0 - math.sqrt(_sq_dist(a, b)) / k.bandwidth),
        diagonal=lambda k, A: np.ones(A.shape[0]),
    ),
    "hyptan": _KernelImpl(
        pairwise=lambda k, A, B: sigmoid_kernel(A, B, gamma=k.scale, coef0=k.offset),
        scalar=lambda k, a, b: math.tanh(k.scale * float(np.dot(a, b)) + k.offset),
        diagonal=lambda k, A: np.tanh(k.scale * _row_sq_norms(A) + k.offset),
    ),
}


@dataclass(frozen=True)
class Kernel:
    """
    Kernel selected by name, carrying its numeric parameters.

    Parameters
    ----------
    name : str
        One of :data:`KERNEL_TYPES`.
    degree : float, default=2.0
        Polynomial degree (``polynomial``), at least 1.
    offset : float, default=0.0
        Additive offset (``polynomial`` and ``hyptan``).
    bandwidth : float, default=1.0
        Bandwidth (``gaussian``, ``epanechnikov``, ``triangular``), positive.
    scale : float, default=1.0
        Scale of the inner product (``hyptan``), non-negative.
    """

    name: str = "linear"
    degree: float = 2.0
    offset: float = 0.0
    bandwidth: float = 1.0
    scale: float = 1.0

    def __post_init__(self) -> None:
        name = str(self.name).strip().lower()
        if name not in _REGISTRY:
            raise ValueError(
                f"Unknown kernel type '{self.name}'. Expected one of {KERNEL_TYPES}."
            )
        object.__setattr__(self, "name", name)
        if not self.bandwidth > 0:
            raise ValueError("bandwidth must be positive")
        if not self.degree >= 1:
            raise ValueError("degree must be at least 1")
        if not self.scale >= 0:
            raise ValueError("scale must be non-negative")

    @property
    def _impl(self) -> _KernelImpl:
        return _REGISTRY[self.name]

    @property
    def positive_definite(self) -> bool:
        """Whether the kernel is an inner product in some feature space.

        Only then does the Cauchy-Schwarz bound used for tree pruning hold.
        """
        if self.name in ("linear", "cosine", "gaussian"):
            return True
        if self.name == "polynomial":
            return self.offset >= 0 and float(self.degree).is_integer()
        return False

    def evaluate(self, a: ArrayLike, b: ArrayLike) -> float:
        return self._impl.scalar(self, np.asarray(a, dtype=float), np.asarray(b, dtype=float))

    def pairwise(self, A: ArrayLike, B: ArrayLike) -> np.ndarray:
        A = np.atleast_2d(np.asarray(A, dtype=float))
        B = np.atleast_2d(np.asarray(B, dtype=float))
        if A.shape[0] == 0 or B.shape[0] == 0:
            return np.zeros((A.shape[0], B.shape[0]), dtype=float)
        return np.asarray(self._impl.pairwise(self, A, B), dtype=float)

    def diagonal(self, A: ArrayLike) -> np.ndarray:
        """Self-evaluations ``k(a, a)`` for every row of ``A``."""
        A = np.atleast_2d(np.asarray(A, dtype=float))
        return np.asarray(self._impl.diagonal(self, A), dtype=float)

    def induced_distances(self, a: ArrayLike, B: ArrayLike) -> np.ndarray:
        """Distances ``sqrt(k(a,a) + k(b,b) - 2 k(a,b))`` from ``a`` to rows of ``B``."""
        a = np.asarray(a, dtype=float)[None, :]
        B = np.atleast_2d(np.asarray(B, dtype=float))
        sq = self.diagonal(a)[0] + self.diagonal(B) - 2.0 * self.pairwise(a, B)[0]
        return np.sqrt(np.maximum(sq, 0.0))


def available_kernels() -> Tuple[str, ...]:
    return KERNEL_TYPES
