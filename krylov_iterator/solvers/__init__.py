"""
Iterative solver implementations.
"""

from .base import IterativeSolver, SolverRegistry
from .bicgstab import BiCGStab
from .minres import MinRes

SolverRegistry.register(BiCGStab.name, BiCGStab)
SolverRegistry.register(MinRes.name, MinRes)

__all__ = ["IterativeSolver", "SolverRegistry", "BiCGStab", "MinRes"]
