"""
Iterator deciding whether an iterative calculation should continue or stop.
"""

import logging
from typing import Iterable, Optional, Tuple

from .convergence import IterationStatus
from .stop_criteria import (
    CriterionKind,
    DivergenceStopCriterion,
    FailureStopCriterion,
    IterationCountStopCriterion,
    ResidualStopCriterion,
    StopCriterion,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-8


class Iterator:
    """
    Ordered collection of stop criteria controlling an iterative solve.

    On each iteration the criteria are evaluated in registration order and
    the first verdict other than ``CONTINUE`` becomes the iterator status.
    Once cancelled, the iterator stays cancelled until ``reset()`` and stops
    consulting its criteria.

    Parameters
    ----------
    *criteria : StopCriterion
        The stop criteria, at least one. A single iterable of criteria is
        accepted as well.

    Examples
    --------
    >>> iterator = Iterator(
    ...     IterationCountStopCriterion(100),
    ...     ResidualStopCriterion(1e-8),
    ... )
    >>> iterator.determine_status(0, 1.0)
    <IterationStatus.CONTINUE: 'continue'>
    """

    def __init__(self, *criteria):
        if len(criteria) == 1 and not isinstance(criteria[0], StopCriterion):
            criteria = tuple(criteria[0])

        if not criteria:
            raise ValueError("No stop criterion specified.")
        for criterion in criteria:
            if not isinstance(criterion, StopCriterion):
                raise TypeError(f"Expected a StopCriterion, got {type(criterion).__name__}")

        self._criteria: Tuple[StopCriterion, ...] = tuple(criteria)
        self._status = IterationStatus.CONTINUE
        self._iterations = 0

    @property
    def criteria(self) -> Tuple[StopCriterion, ...]:
        """The stop criteria in registration order."""
        return self._criteria

    @property
    def iterations(self) -> int:
        """The iteration number passed to the last ``determine_status`` call."""
        return self._iterations

    @property
    def status(self) -> IterationStatus:
        return self._status

    @status.setter
    def status(self, value: IterationStatus):
        # Solvers report breakdown or verified convergence through this
        # setter; cancellation always wins.
        if self._status is IterationStatus.CANCELLED:
            return
        self._status = IterationStatus(value)

    def determine_status(self, iteration: int, residual_norm: float) -> IterationStatus:
        """
        Determine the status of the calculation from the stop criteria.

        Parameters
        ----------
        iteration : int
            The number of iterations that have passed so far
        residual_norm : float
            The current residual norm

        Returns
        -------
        status : IterationStatus
            The new iterator status
        """
        if iteration < 0:
            raise ValueError(f"iteration must be non-negative, got {iteration}")

        self._iterations = iteration

        if self._status is IterationStatus.CANCELLED:
            return self._status

        for criterion in self._criteria:
            status = criterion.determine_status(iteration, residual_norm)
            if status is IterationStatus.CONTINUE:
                continue

            self._status = status
            return self._status

        self._status = IterationStatus.CONTINUE
        return self._status

    def cancel(self):
        """Cancel the calculation. The stop criteria are left untouched."""
        self._status = IterationStatus.CANCELLED

    def reset(self):
        """Reset the iterator and all its criteria to the pre-calculation state."""
        self._status = IterationStatus.CONTINUE
        self._iterations = 0
        for criterion in self._criteria:
            criterion.reset()
        logger.debug("Iterator reset (%d criteria)", len(self._criteria))

    def clone(self) -> "Iterator":
        """Deep clone: every criterion is cloned with fresh progress state."""
        return Iterator(*(criterion.clone() for criterion in self._criteria))

    def find(self, kind: CriterionKind) -> Optional[StopCriterion]:
        """Return the first registered criterion of the given kind, or None."""
        kind = CriterionKind(kind)
        for criterion in self._criteria:
            if criterion.kind is kind:
                return criterion
        return None

    def residual_tolerance(self, default: float = DEFAULT_TOLERANCE) -> float:
        """
        Tolerance of the first registered residual criterion.

        Parameters
        ----------
        default : float
            Returned when no residual criterion is registered. Default is 1e-8.
        """
        criterion = self.find(CriterionKind.RESIDUAL)
        if criterion is None:
            return default
        return criterion.tolerance

    def __iter__(self):
        return iter(self._criteria)

    def __len__(self):
        return len(self._criteria)

    def __repr__(self):
        criteria = ", ".join(repr(criterion) for criterion in self._criteria)
        return f"Iterator({criteria}; status={self._status.value})"


def create_default_iterator(tolerance: float = DEFAULT_TOLERANCE,
                            maxiter: int = 1000,
                            minimum_iterations_below: int = 0,
                            divergence: bool = False,
                            extra: Optional[Iterable[StopCriterion]] = None) -> Iterator:
    """
    Build the usual iterator: iteration limit, residual tolerance, NaN guard.

    Parameters
    ----------
    tolerance : float
        Residual tolerance. Default is 1e-8.
    maxiter : int
        Maximum number of iterations. Default is 1000.
    minimum_iterations_below : int
        Passed to the residual criterion. Default is 0.
    divergence : bool
        Also monitor for divergence with default settings. Default is False.
    extra : iterable of StopCriterion, optional
        Additional criteria appended after the defaults

    Returns
    -------
    iterator : Iterator
    """
    criteria = [
        IterationCountStopCriterion(maxiter),
        ResidualStopCriterion(tolerance, minimum_iterations_below),
        FailureStopCriterion(),
    ]
    if divergence:
        criteria.append(DivergenceStopCriterion())
    if extra is not None:
        criteria.extend(extra)
    return Iterator(*criteria)
