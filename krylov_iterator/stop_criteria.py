"""
Stop criteria for iterative calculations.

A stop criterion inspects the iteration number and the current residual norm
and decides whether the calculation should continue. Criteria hold their
configuration (immutable after construction) separately from their progress
state, which ``reset()`` restores and ``clone()`` creates afresh.

The set of criteria is closed: every criterion carries a ``kind`` tag from
:class:`CriterionKind`.
"""

import math
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .convergence import IterationStatus


class CriterionKind(str, Enum):
    """Tag identifying the variant of a stop criterion."""
    ITERATION_COUNT = "iteration_count"
    RESIDUAL = "residual"
    DIVERGENCE = "divergence"
    FAILURE = "failure"
    CANCELLATION = "cancellation"
    DELEGATE = "delegate"


class StopCriterion(ABC):
    """
    Abstract base class for stop criteria.

    Implementations must only reset progress state in ``reset()``, never the
    user supplied configuration.
    """

    kind: CriterionKind

    def __init__(self):
        self._status = IterationStatus.CONTINUE

    @abstractmethod
    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        """
        Determine the status of the calculation and store it in ``status``.

        Parameters
        ----------
        iteration : int
            The number of iterations that have passed so far
        residual_norm : float
            The norm of the current residual vector

        Returns
        -------
        status : IterationStatus
            The new status

        Notes
        -----
        Criteria may track progress across calls, so this should be called
        exactly once per iteration.
        """
        pass

    @property
    def status(self) -> IterationStatus:
        """The status determined by the last call."""
        return self._status

    def reset(self):
        """Reset the criterion to the pre-calculation state."""
        self._status = IterationStatus.CONTINUE

    @abstractmethod
    def clone(self) -> "StopCriterion":
        """Return a copy with the same configuration and fresh progress state."""
        pass

    def __repr__(self):
        return f"{type(self).__name__}()"


class IterationCountStopCriterion(StopCriterion):
    """Stops the calculation once a maximum number of iterations is reached."""

    kind = CriterionKind.ITERATION_COUNT

    DEFAULT_MAXIMUM_ITERATIONS = 1000

    def __init__(self, maximum_iterations: int = DEFAULT_MAXIMUM_ITERATIONS):
        super().__init__()
        if maximum_iterations < 1:
            raise ValueError(f"maximum_iterations must be at least 1, got {maximum_iterations}")
        self._maximum_iterations = int(maximum_iterations)

    @property
    def maximum_iterations(self) -> int:
        return self._maximum_iterations

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        if iteration >= self._maximum_iterations:
            self._status = IterationStatus.STOPPED_WITHOUT_CONVERGENCE
        else:
            self._status = IterationStatus.CONTINUE
        return self._status

    def clone(self) -> "IterationCountStopCriterion":
        return IterationCountStopCriterion(self._maximum_iterations)

    def __repr__(self):
        return f"IterationCountStopCriterion(maximum_iterations={self._maximum_iterations})"


class ResidualStopCriterion(StopCriterion):
    """
    Stops the calculation once the residual norm drops below a tolerance.

    Parameters
    ----------
    tolerance : float
        Residual norm at or below which the calculation is considered converged
    minimum_iterations_below : int
        Number of calls for which the residual has to stay below the tolerance

    Notes
    -----
    The run length below tolerance is taken as the difference between the
    current and the previously processed iteration number. This is only a
    count of consecutive iterations when ``determine_status`` is called once
    per iteration, which is how the solvers in this package call it.
    """

    kind = CriterionKind.RESIDUAL

    def __init__(self, tolerance: float, minimum_iterations_below: int = 0):
        super().__init__()
        if tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {tolerance}")
        if minimum_iterations_below < 0:
            raise ValueError(
                f"minimum_iterations_below must be non-negative, got {minimum_iterations_below}"
            )
        self._tolerance = float(tolerance)
        self._minimum_iterations_below = int(minimum_iterations_below)
        self._iteration_count = 0
        self._last_iteration = -1

    @property
    def tolerance(self) -> float:
        return self._tolerance

    @property
    def minimum_iterations_below(self) -> int:
        return self._minimum_iterations_below

    @property
    def iterations_below(self) -> int:
        """Current run length below the tolerance."""
        return self._iteration_count

    @property
    def last_iteration(self) -> int:
        return self._last_iteration

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        if math.isnan(residual_norm):
            self._iteration_count = 0
            self._status = IterationStatus.DIVERGED
            return self._status

        if residual_norm <= self._tolerance:
            # Out-of-order calls keep the previous verdict.
            if self._last_iteration <= iteration:
                self._iteration_count = iteration - self._last_iteration
                if self._iteration_count >= self._minimum_iterations_below:
                    self._status = IterationStatus.CONVERGED
                else:
                    self._status = IterationStatus.CONTINUE
        else:
            self._iteration_count = 0
            self._status = IterationStatus.CONTINUE

        self._last_iteration = iteration
        return self._status

    def reset(self):
        super().reset()
        self._iteration_count = 0
        self._last_iteration = -1

    def clone(self) -> "ResidualStopCriterion":
        return ResidualStopCriterion(self._tolerance, self._minimum_iterations_below)

    def __repr__(self):
        return (
            f"ResidualStopCriterion(tolerance={self._tolerance!r}, "
            f"minimum_iterations_below={self._minimum_iterations_below})"
        )


class DivergenceStopCriterion(StopCriterion):
    """
    Monitors the residual for signs of divergence.

    The calculation is considered diverging when the residual norm grew by
    more than ``maximum_relative_increase`` in each of the last
    ``minimum_iterations`` iterations.

    Parameters
    ----------
    maximum_relative_increase : float
        Relative increase the residual may show per iteration before it counts
        as growing. Default is 0.08.
    minimum_iterations : int
        Number of iterations over which the residual must grow. At least 3.
        Default is 10.
    """

    kind = CriterionKind.DIVERGENCE

    def __init__(self, maximum_relative_increase: float = 0.08, minimum_iterations: int = 10):
        super().__init__()
        if maximum_relative_increase <= 0:
            raise ValueError(
                f"maximum_relative_increase must be positive, got {maximum_relative_increase}"
            )
        # A relative increase needs at least three samples
        if minimum_iterations < 3:
            raise ValueError(f"minimum_iterations must be at least 3, got {minimum_iterations}")
        self._maximum_relative_increase = float(maximum_relative_increase)
        self._minimum_iterations = int(minimum_iterations)
        self._history = np.zeros(self._minimum_iterations + 1)
        self._samples = 0
        self._last_iteration = -1

    @property
    def maximum_relative_increase(self) -> float:
        return self._maximum_relative_increase

    @property
    def minimum_iterations(self) -> int:
        return self._minimum_iterations

    @property
    def last_iteration(self) -> int:
        return self._last_iteration

    @property
    def history(self) -> np.ndarray:
        """Copy of the tracked residual norms, oldest first."""
        count = min(self._samples, len(self._history))
        return self._history[len(self._history) - count:].copy()

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        if self._last_iteration >= iteration:
            return self._status

        self._last_iteration = iteration
        self._history[:-1] = self._history[1:]
        self._history[-1] = residual_norm
        self._samples += 1

        if math.isnan(residual_norm):
            self._status = IterationStatus.DIVERGED
            return self._status

        self._status = IterationStatus.DIVERGED if self._is_diverging() else IterationStatus.CONTINUE
        return self._status

    def _is_diverging(self) -> bool:
        if self._samples < len(self._history):
            return False

        factor = 1.0 + self._maximum_relative_increase
        for previous, current in zip(self._history[:-1], self._history[1:]):
            # NaN compares false and ends the run as well
            if not (current >= previous and current > previous * factor):
                return False
        return True

    def reset(self):
        super().reset()
        self._history.fill(0.0)
        self._samples = 0
        self._last_iteration = -1

    def clone(self) -> "DivergenceStopCriterion":
        return DivergenceStopCriterion(self._maximum_relative_increase, self._minimum_iterations)

    def __repr__(self):
        return (
            f"DivergenceStopCriterion(maximum_relative_increase={self._maximum_relative_increase!r}, "
            f"minimum_iterations={self._minimum_iterations})"
        )


class FailureStopCriterion(StopCriterion):
    """Monitors the residual norm for NaN values."""

    kind = CriterionKind.FAILURE

    def __init__(self):
        super().__init__()
        self._last_iteration = -1

    @property
    def last_iteration(self) -> int:
        return self._last_iteration

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        if self._last_iteration >= iteration:
            return self._status

        self._status = IterationStatus.FAILURE if math.isnan(residual_norm) else IterationStatus.CONTINUE
        self._last_iteration = iteration
        return self._status

    def reset(self):
        super().reset()
        self._last_iteration = -1

    def clone(self) -> "FailureStopCriterion":
        return FailureStopCriterion()


class CancellationSource:
    """
    Master cancellation flag shared between a caller and any number of
    cancellation criteria. Safe to trip from another thread.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self):
        return f"CancellationSource(is_cancelled={self.is_cancelled})"


class CancellationStopCriterion(StopCriterion):
    """
    Stops the calculation on request.

    The criterion reports ``CANCELLED`` when either its own flag (tripped by
    ``cancel()``) or the master ``CancellationSource`` is set. ``reset()``
    clears the own flag only; a tripped master keeps the criterion cancelled.

    Parameters
    ----------
    source : CancellationSource, optional
        Master source. A private one is created when omitted.
    """

    kind = CriterionKind.CANCELLATION

    def __init__(self, source: Optional[CancellationSource] = None):
        super().__init__()
        self._source = source if source is not None else CancellationSource()
        self._cancelled = False

    @property
    def source(self) -> CancellationSource:
        return self._source

    def cancel(self):
        """Cancel the iterative calculation."""
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled or self._source.is_cancelled

    @property
    def status(self) -> IterationStatus:
        return IterationStatus.CANCELLED if self.is_cancelled else IterationStatus.CONTINUE

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        return self.status

    def reset(self):
        self._cancelled = False

    def clone(self) -> "CancellationStopCriterion":
        return CancellationStopCriterion(self._source)

    def __repr__(self):
        return f"CancellationStopCriterion(source={self._source!r})"


class DelegateStopCriterion(StopCriterion):
    """
    Delegates the status determination to a user function.

    Parameters
    ----------
    determine : callable
        Function ``(iteration, residual_norm) -> IterationStatus``

    Notes
    -----
    ``reset()`` only resets the stored status; any state kept by the function
    itself is untouched. Clones share the same function.
    """

    kind = CriterionKind.DELEGATE

    def __init__(self, determine: Callable[[int, float], IterationStatus]):
        super().__init__()
        if not callable(determine):
            raise TypeError("determine must be callable")
        self._determine = determine

    @property
    def function(self) -> Callable[[int, float], IterationStatus]:
        return self._determine

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        self._status = IterationStatus(self._determine(iteration, residual_norm))
        return self._status

    def clone(self) -> "DelegateStopCriterion":
        return DelegateStopCriterion(self._determine)

    def __repr__(self):
        return f"DelegateStopCriterion({self._determine!r})"
