"""
Base interface for iterative solver implementations.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import numpy as np

from ..convergence import ConvergenceInfo, IterationStatus
from ..iterator import Iterator
from ..operators import LinearOperator, aslinearoperator
from ..preconditioners import Preconditioner

logger = logging.getLogger(__name__)


def working_dtype(A: LinearOperator, *vectors: np.ndarray) -> np.dtype:
    """complex128 if the operator or any of the vectors is complex, else float64."""
    dtypes = [A.dtype] + [np.asarray(v).dtype for v in vectors]
    if any(np.issubdtype(dtype, np.complexfloating) for dtype in dtypes):
        return np.dtype(np.complex128)
    return np.dtype(np.float64)


class IterativeSolver(ABC):
    """
    Abstract base class for iterative solvers of A x = b.

    A solver keeps no state between calls apart from the diagnostics of the
    last solve (``info``). The outcome of a solve is reported through the
    iterator status, never by raising.
    """

    name: str = ""
    supports_complex: bool = False

    def __init__(self):
        self.info: Optional[ConvergenceInfo] = None

    @abstractmethod
    def solve(self,
              A: Any,
              b: np.ndarray,
              x: np.ndarray,
              iterator: Iterator,
              preconditioner: Optional[Preconditioner] = None) -> None:
        """
        Solve A x = b.

        Parameters
        ----------
        A : LinearOperator or matrix
            The coefficient operator
        b : numpy.ndarray
            Right-hand side vector
        x : numpy.ndarray
            Initial guess on entry, final iterate on exit (updated in place).
            Must be a writable, contiguous float64 vector, or complex128
            when A or b is complex.
        iterator : Iterator
            Controls when to stop; its status holds the outcome
        preconditioner : Preconditioner, optional
            Approximation M of A
        """
        pass

    def _prepare(self, A: Any, b: np.ndarray, x: np.ndarray) -> Tuple[LinearOperator, np.ndarray]:
        """
        Validate the call arguments.

        Returns the operator and ``b`` converted to the working type, which
        is complex128 when A or b is complex and float64 otherwise.
        """
        A = aslinearoperator(A)
        if not A.is_square:
            raise ValueError(f"Operator must be square, got shape {A.shape}")

        n = A.row_count
        b = np.asarray(b)
        dtype = working_dtype(A, b)
        if dtype == np.complex128 and not self.supports_complex:
            raise ValueError(f"{self.name or type(self).__name__} does not support complex systems")

        b = np.ascontiguousarray(b, dtype=dtype)
        if b.ndim != 1 or b.shape[0] != n:
            raise ValueError(f"b must be a vector of length {n}, got shape {b.shape}")

        if not isinstance(x, np.ndarray):
            raise ValueError("x must be a numpy.ndarray (it is updated in place)")
        if x.ndim != 1 or x.shape[0] != n:
            raise ValueError(f"x must be a vector of length {n}, got shape {x.shape}")
        if x.dtype != dtype or not x.flags.c_contiguous or not x.flags.writeable:
            raise ValueError(f"x must be a writable, contiguous {dtype} vector")

        return A, b

    def _record(self,
                iterator: Iterator,
                iterations: int,
                residual_norm: float,
                b_norm: float,
                solve_time: float,
                raw_info: int = 0,
                reason: str = "") -> ConvergenceInfo:
        status = iterator.status
        self.info = ConvergenceInfo(
            status=status,
            iterations=iterations,
            residual_norm=float(residual_norm),
            relative_residual=float(residual_norm / b_norm if b_norm > 0 else residual_norm),
            solve_time=solve_time,
            reason=reason or status.value,
            raw_info=raw_info,
        )
        log = logger.warning if status in (IterationStatus.FAILURE, IterationStatus.DIVERGED) else logger.info
        log("%s finished: %s after %d iterations, residual %.3e",
            self.name or type(self).__name__, status.value, iterations, residual_norm)
        return self.info


class SolverRegistry:
    """Registry of available solver methods."""

    _solvers: Dict[str, type] = {}

    @classmethod
    def register(cls, name: str, solver_class: type):
        """Register a solver class under a method name."""
        cls._solvers[name.lower()] = solver_class

    @classmethod
    def get_solver(cls, name: str, **kwargs) -> IterativeSolver:
        """Get an instance of a solver."""
        key = name.lower()
        if key not in cls._solvers:
            raise ValueError(f"Unknown method: {name}. Available: {list(cls._solvers.keys())}")
        return cls._solvers[key](**kwargs)

    @classmethod
    def list_solvers(cls) -> list:
        """List all registered methods."""
        return list(cls._solvers.keys())
