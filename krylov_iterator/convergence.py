"""
Iteration status and convergence information objects.
"""

from dataclasses import dataclass
from enum import Enum


class IterationStatus(str, Enum):
    """
    Status of an iterative calculation.

    ``CONTINUE`` is the only non-terminal value.
    """
    CONTINUE = "continue"
    CONVERGED = "converged"
    DIVERGED = "diverged"
    STOPPED_WITHOUT_CONVERGENCE = "stopped_without_convergence"
    CANCELLED = "cancelled"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self is not IterationStatus.CONTINUE


@dataclass
class ConvergenceInfo:
    """
    Information about the outcome of an iterative solve.

    Attributes
    ----------
    status : IterationStatus
        Final status of the iterator
    iterations : int
        Number of iterations performed
    residual_norm : float
        Final residual norm ||b - Ax||
    relative_residual : float
        Final relative residual norm ||b - Ax|| / ||b||
    solve_time : float
        Time taken for the solve (seconds)
    setup_time : float
        Time taken for preconditioner setup (seconds)
    reason : str
        Human-readable reason for termination
    raw_info : int
        Solver specific stop code (MINRES ``istop``, 0 otherwise)
    """
    status: IterationStatus
    iterations: int
    residual_norm: float
    relative_residual: float
    solve_time: float = 0.0
    setup_time: float = 0.0
    reason: str = ""
    raw_info: int = 0

    @property
    def converged(self) -> bool:
        return self.status is IterationStatus.CONVERGED

    def __str__(self):
        status = "Converged" if self.converged else f"Not converged ({self.status.value})"
        return (
            f"{status} in {self.iterations} iterations\n"
            f"  Residual norm: {self.residual_norm:.2e}\n"
            f"  Relative residual: {self.relative_residual:.2e}\n"
            f"  Solve time: {self.solve_time:.4f}s"
        )

    def to_dict(self):
        """Convert to a plain dictionary."""
        return {
            "status": self.status.value,
            "converged": self.converged,
            "niter": self.iterations,
            "residual_norm": self.residual_norm,
            "relative_residual": self.relative_residual,
            "time": self.solve_time,
            "setup_time": self.setup_time,
            "reason": self.reason,
            "raw_info": self.raw_info,
        }
