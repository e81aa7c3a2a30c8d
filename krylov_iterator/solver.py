"""
High level solver interface.

Builds the iterator, operator and preconditioner from plain options and
runs one of the registered iterative solvers. Supports preconditioner
caching, monitoring callbacks and cancellable asynchronous solves.
"""

import hashlib
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from .convergence import ConvergenceInfo, IterationStatus
from .iterator import DEFAULT_TOLERANCE, Iterator, create_default_iterator
from .operators import LinearOperator, MatrixOperator, aslinearoperator
from .preconditioners import Preconditioner, create_preconditioner
from .solvers import SolverRegistry
from .solvers.base import working_dtype
from .stop_criteria import CancellationSource, CancellationStopCriterion, DelegateStopCriterion

logger = logging.getLogger(__name__)

PRECONDITIONER_NAMES = ("none", "unit", "jacobi", "diagonal", "ilu0", "milu0", "ilu")

Callback = Callable[[int, float], Optional[IterationStatus]]


class LinearSolver:
    """
    Linear solver assembling iterator, operator and preconditioner.

    Each call to ``solve`` runs on a clone of the solver's iterator, so one
    LinearSolver may serve several concurrent solves.

    Parameters
    ----------
    method : str
        Solver method, ``"bicgstab"`` or ``"minres"``. Default is "bicgstab".
    preconditioner : str, Preconditioner, matrix, LinearOperator or callable
        Preconditioner choice, see
        :func:`krylov_iterator.preconditioners.create_preconditioner`.
        Default is "ilu0".
    tol : float
        Tolerance of the residual stop criterion. Default is 1e-8. The
        iterator compares it with the value the solver reports each
        iteration. BiCGStab reports the absolute norm ``||r||``, so the
        solve stops as converged once ``||r|| <= tol`` whatever ``||b||``
        is; BiCGStab itself also stops at ``||r|| <= tol * ||b||``. MINRES
        reports its relative estimate ``||r|| / (||A|| ||x|| + ||b||)``.
    maxiter : int
        Maximum iterations. Default is 1000.
    min_iterations_below : int
        Number of calls the residual has to stay below ``tol``. Default is 0.
    divergence : bool
        Also stop on divergence. Default is False.
    iterator : Iterator, optional
        Iterator used as template instead of the one built from ``tol``,
        ``maxiter``, ``min_iterations_below`` and ``divergence``
    solver_options : dict, optional
        Keyword arguments of the solver class (e.g. ``atol`` for BiCGStab,
        ``ptol`` for MINRES)
    **preconditioner_kwargs
        Additional preconditioner parameters (e.g. on_zero_diagonal,
        drop_tol, fill_factor)
    """

    def __init__(self,
                 method: str = "bicgstab",
                 preconditioner: Union[str, Any] = "ilu0",
                 tol: float = DEFAULT_TOLERANCE,
                 maxiter: int = 1000,
                 min_iterations_below: int = 0,
                 divergence: bool = False,
                 iterator: Optional[Iterator] = None,
                 solver_options: Optional[Dict[str, Any]] = None,
                 **preconditioner_kwargs):
        self.method = method.lower()
        if self.method not in SolverRegistry.list_solvers():
            raise ValueError(
                f"Method {method} not supported. Available methods: {SolverRegistry.list_solvers()}"
            )

        if isinstance(preconditioner, str) and preconditioner.lower() not in PRECONDITIONER_NAMES:
            raise ValueError(
                f"Preconditioner {preconditioner} not supported. "
                f"Available preconditioners: {list(PRECONDITIONER_NAMES)}"
            )

        self.preconditioner = preconditioner
        self.preconditioner_kwargs = preconditioner_kwargs
        self.solver_options = dict(solver_options or {})

        # Fail fast on bad solver options
        SolverRegistry.get_solver(self.method, **self.solver_options)

        if iterator is None:
            iterator = create_default_iterator(
                tolerance=tol,
                maxiter=maxiter,
                minimum_iterations_below=min_iterations_below,
                divergence=divergence,
            )
        self.iterator = iterator

        self._preconditioner_cache: Dict[str, Optional[Preconditioner]] = {}
        self._cache_lock = threading.Lock()

    def solve(self,
              A: Any,
              b: Any,
              x0: Optional[np.ndarray] = None,
              callback: Optional[Callback] = None,
              reuse_preconditioner: bool = True,
              cancellation: Optional[CancellationSource] = None) -> Tuple[np.ndarray, ConvergenceInfo]:
        """
        Solve Ax = b.

        Parameters
        ----------
        A : matrix or LinearOperator
            System matrix
        b : array-like
            Right-hand side vector
        x0 : array-like, optional
            Initial guess. Default is zero.
        callback : callable, optional
            Function ``(iteration, residual_norm)`` called once per
            iteration. Returning an IterationStatus other than CONTINUE stops
            the solve with that status; returning None continues.
        reuse_preconditioner : bool
            Whether to reuse a cached preconditioner for the same matrix
        cancellation : CancellationSource, optional
            Source that cancels the solve when tripped

        Returns
        -------
        x : numpy.ndarray
            Final iterate
        info : ConvergenceInfo
            Convergence information
        """
        operator = aslinearoperator(A)
        if x0 is None:
            dtype = working_dtype(operator, b)
        else:
            dtype = working_dtype(operator, b, x0)
        b = np.asarray(b, dtype=dtype)

        t0_setup = time.perf_counter()
        if reuse_preconditioner:
            M = self._cached_preconditioner(A)
        else:
            M = self._create_preconditioner(A)
        setup_time = time.perf_counter() - t0_setup

        iterator = self._iterator_for_solve(callback, cancellation)

        x = np.zeros(operator.column_count, dtype=dtype) if x0 is None else np.array(x0, dtype=dtype)

        solver = SolverRegistry.get_solver(self.method, **self.solver_options)
        solver.solve(operator, b, x, iterator, M)

        info = solver.info
        info.setup_time = setup_time
        return x, info

    def solve_async(self,
                    A: Any,
                    b: Any,
                    x0: Optional[np.ndarray] = None,
                    callback: Optional[Callback] = None) -> "AsyncSolveHandle":
        """
        Solve Ax = b in a background thread.

        Returns
        -------
        handle : AsyncSolveHandle
            Handle to query status, cancel, and get results
        """
        def run(source: CancellationSource):
            return self.solve(A, b, x0=x0, callback=callback, cancellation=source)

        return AsyncSolveHandle(run)

    def factorize(self, A: Any):
        """
        Build the preconditioner for ``A`` and cache it.

        Useful when solving multiple systems with the same matrix.
        """
        self._cached_preconditioner(A)

    def clear_cache(self):
        """Clear the preconditioner cache."""
        with self._cache_lock:
            self._preconditioner_cache.clear()

    def _iterator_for_solve(self,
                            callback: Optional[Callback],
                            cancellation: Optional[CancellationSource]) -> Iterator:
        iterator = self.iterator.clone()
        extra = []
        if cancellation is not None:
            extra.append(CancellationStopCriterion(cancellation))
        if callback is not None:
            extra.append(DelegateStopCriterion(_monitor(callback)))
        if extra:
            iterator = Iterator(*iterator.criteria, *extra)
        return iterator

    def _create_preconditioner(self, A: Any) -> Optional[Preconditioner]:
        if isinstance(A, MatrixOperator):
            abstract = isinstance(A.matrix, spla.LinearOperator)
        else:
            abstract = isinstance(A, (LinearOperator, spla.LinearOperator))
        if abstract and isinstance(self.preconditioner, str) and self.preconditioner.lower() != "none":
            raise ValueError("Named preconditioners need the matrix, not an abstract operator")
        return create_preconditioner(A, self.preconditioner, **self.preconditioner_kwargs)

    def _cached_preconditioner(self, A: Any) -> Optional[Preconditioner]:
        key = self._get_preconditioner_key(A)
        with self._cache_lock:
            if key in self._preconditioner_cache:
                return self._preconditioner_cache[key]

        M = self._create_preconditioner(A)
        logger.debug("Created %s preconditioner for matrix of shape %s", self.preconditioner, A.shape)

        with self._cache_lock:
            self._preconditioner_cache[key] = M
        return M

    def _get_preconditioner_key(self, A: Any) -> str:
        """Generate a cache key from the matrix content and the preconditioner choice."""
        if isinstance(A, MatrixOperator):
            A = A.matrix
        digest = hashlib.md5()
        digest.update(str(A.shape).encode())
        if sp.issparse(A):
            csr = A.tocsr()
            for part in (csr.data, csr.indices, csr.indptr):
                digest.update(np.ascontiguousarray(part).tobytes())
        elif isinstance(A, np.ndarray):
            digest.update(np.ascontiguousarray(A).tobytes())
        else:
            digest.update(str(id(A)).encode())
        digest.update(str(self.preconditioner).encode())
        digest.update(str(sorted(self.preconditioner_kwargs.items())).encode())
        return digest.hexdigest()


def _monitor(callback: Callback) -> Callable[[int, float], IterationStatus]:
    def determine(iteration: int, residual_norm: float) -> IterationStatus:
        result = callback(iteration, residual_norm)
        return IterationStatus.CONTINUE if result is None else IterationStatus(result)
    return determine


class AsyncSolveHandle:
    """
    Handle of a solve running in a daemon thread.

    The thread stores either the ``(x, info)`` pair or the exception the
    solve raised, then sets ``done``. A cancelled solve still ends normally,
    with status CANCELLED in its ConvergenceInfo.

    Parameters
    ----------
    run : callable
        ``run(cancellation) -> (x, info)``, executed in the thread with the
        handle's cancellation source
    """

    def __init__(self, run: Callable[[CancellationSource], Tuple[np.ndarray, ConvergenceInfo]]):
        self.cancellation = CancellationSource()
        self.done = threading.Event()
        self._outcome: Optional[Tuple[np.ndarray, ConvergenceInfo]] = None
        self._error: Optional[Exception] = None
        self.thread = threading.Thread(target=self._run, args=(run,), daemon=True)
        self.thread.start()

    def _run(self, run):
        try:
            self._outcome = run(self.cancellation)
        except Exception as e:
            logger.debug("Background solve raised %s: %s", type(e).__name__, e)
            self._error = e
        finally:
            self.done.set()

    @property
    def error(self) -> Optional[Exception]:
        """Exception raised by the solve, None while running or on success."""
        return self._error

    def cancel(self):
        """Request cancellation; the solve stops at its next iteration check."""
        self.cancellation.cancel()

    def is_done(self) -> bool:
        return self.done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Tuple[np.ndarray, ConvergenceInfo]:
        """
        Block until the solve ends and return ``(x, info)``.

        Raises
        ------
        TimeoutError
            If the solve is still running after ``timeout`` seconds
        RuntimeError
            If the solve raised; the original exception is its ``__cause__``
        """
        if not self.done.wait(timeout):
            raise TimeoutError(f"Solve still running after {timeout} s")
        if self._error is not None:
            raise RuntimeError(f"Solve failed: {self._error}") from self._error
        return self._outcome

    def get_result(self) -> Optional[Tuple[np.ndarray, ConvergenceInfo]]:
        """``(x, info)`` once the solve has succeeded, otherwise None."""
        if self.done.is_set() and self._error is None:
            return self._outcome
        return None


def solve(A: Any,
          b: Any,
          method: str = "bicgstab",
          preconditioner: Union[str, Any] = "ilu0",
          tol: float = DEFAULT_TOLERANCE,
          maxiter: int = 1000,
          x0: Optional[np.ndarray] = None,
          callback: Optional[Callback] = None,
          solver_options: Optional[Dict[str, Any]] = None,
          **kwargs) -> Tuple[np.ndarray, ConvergenceInfo]:
    """
    High-level solve function for linear systems.

    Parameters
    ----------
    A : matrix or LinearOperator
        System matrix
    b : array-like
        Right-hand side vector
    method : str
        Solver method ("bicgstab", "minres"). Default is "bicgstab".
    preconditioner : str, Preconditioner, matrix, LinearOperator or callable
        Preconditioner choice. Default is "ilu0".
    tol : float
        Residual tolerance, see :class:`LinearSolver`. Default is 1e-8.
    maxiter : int
        Maximum iterations. Default is 1000.
    x0 : array-like, optional
        Initial guess
    callback : callable, optional
        Function ``(iteration, residual_norm)`` for monitoring
    solver_options : dict, optional
        Keyword arguments of the solver class
    **kwargs
        Additional preconditioner parameters

    Returns
    -------
    x : numpy.ndarray
        Solution vector
    info : ConvergenceInfo
        Convergence information

    Examples
    --------
    >>> import numpy as np
    >>> import scipy.sparse as sp
    >>> from krylov_iterator import solve
    >>>
    >>> A = sp.diags([-1.0, 4.0, -1.0], [-1, 0, 1], shape=(100, 100), format="csr")
    >>> b = np.ones(100)
    >>> x, info = solve(A, b, method="bicgstab", preconditioner="ilu0")
    >>> info.converged
    True
    """
    solver = LinearSolver(
        method=method,
        preconditioner=preconditioner,
        tol=tol,
        maxiter=maxiter,
        solver_options=solver_options,
        **kwargs
    )
    return solver.solve(A, b, x0=x0, callback=callback)
