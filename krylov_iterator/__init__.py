"""
Iterative Krylov Solvers with Pluggable Stop Criteria

This package provides iterative Krylov methods (BiCGStab, MINRES) for
square linear systems, driven by an Iterator that combines stop criteria
(iteration count, residual, divergence, failure, cancellation, user
function), with diagonal and ILU(0)/MILU(0) preconditioning.

Features:
- Stop criteria composed in registration order
- Cooperative cancellation from another thread
- Preconditioner caching and reuse
- Callback support for monitoring
- Async solving
"""

from .convergence import ConvergenceInfo, IterationStatus
from .iterator import DEFAULT_TOLERANCE, Iterator, create_default_iterator
from .operators import LinearOperator, MatrixOperator, aslinearoperator
from .preconditioners import (
    DiagonalPreconditioner,
    ILU0Preconditioner,
    OperatorPreconditioner,
    Preconditioner,
    SciPyILUPreconditioner,
    UnitPreconditioner,
    ZeroPivotError,
    create_preconditioner,
)
from .solver import AsyncSolveHandle, LinearSolver, solve
from .solvers import BiCGStab, IterativeSolver, MinRes, SolverRegistry
from .stop_criteria import (
    CancellationSource,
    CancellationStopCriterion,
    CriterionKind,
    DelegateStopCriterion,
    DivergenceStopCriterion,
    FailureStopCriterion,
    IterationCountStopCriterion,
    ResidualStopCriterion,
    StopCriterion,
)

__version__ = "0.1.0"
__all__ = [
    # High level API
    "solve",
    "LinearSolver",
    "AsyncSolveHandle",
    "ConvergenceInfo",
    "IterationStatus",
    # Iterator and stop criteria
    "Iterator",
    "create_default_iterator",
    "DEFAULT_TOLERANCE",
    "StopCriterion",
    "CriterionKind",
    "IterationCountStopCriterion",
    "ResidualStopCriterion",
    "DivergenceStopCriterion",
    "FailureStopCriterion",
    "CancellationSource",
    "CancellationStopCriterion",
    "DelegateStopCriterion",
    # Solvers
    "IterativeSolver",
    "SolverRegistry",
    "BiCGStab",
    "MinRes",
    # Operators and preconditioners
    "LinearOperator",
    "MatrixOperator",
    "aslinearoperator",
    "Preconditioner",
    "UnitPreconditioner",
    "DiagonalPreconditioner",
    "ILU0Preconditioner",
    "SciPyILUPreconditioner",
    "OperatorPreconditioner",
    "ZeroPivotError",
    "create_preconditioner",
]
