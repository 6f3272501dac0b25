# detmks/__init__.py
"""
detmks: density estimation trees and fast max-kernel search (scikit-learn style).

Exports:
    - DensityEstimationTree, train_density_tree
    - PathCacher, PathFormat, enumerate_tree
    - Kernel, CoverTree, FastMKS, run_fastmks
"""
from .tree import DensityEstimationTree
from .trainer import train_density_tree
from .utils import PathCacher, PathFormat, enumerate_tree
from .kernels import Kernel
from .cover_tree import CoverTree
from .fastmks import FastMKS, run_fastmks

__all__ = [
    "DensityEstimationTree",
    "train_density_tree",
    "PathCacher",
    "PathFormat",
    "enumerate_tree",
    "Kernel",
    "CoverTree",
    "FastMKS",
    "run_fastmks",
]
__version__ = "0.1.0"
