"""
Preconditioned BiCGStab solver for general (possibly unsymmetric) systems.

Based on the BiCGStab implementation of hypre
(https://github.com/hypre-space/hypre, Apache-2.0 OR MIT).
"""

import logging
import time
from typing import Any, Optional

import numpy as np
from scipy.linalg import blas

from ..convergence import IterationStatus
from ..iterator import Iterator
from ..preconditioners import Preconditioner, UnitPreconditioner
from .base import IterativeSolver

logger = logging.getLogger(__name__)


class BiCGStab(IterativeSolver):
    """
    Stabilized bi-conjugate gradient method.

    Convergence is declared when ``||r|| <= max(atol, rtol * ||b||)`` (or
    ``rtol * ||r0||`` when b = 0), where ``rtol`` is the tolerance of the
    residual criterion registered on the iterator. Before declaring
    convergence the true residual ``b - A x`` is recomputed, so drift of the
    recurrence residual cannot fake convergence.

    Real and complex systems are supported. For complex systems ``x`` must
    be a complex128 vector and inner products conjugate their first
    argument.

    Parameters
    ----------
    atol : float, optional
        Absolute tolerance. Default is 0.0 (relative tolerance only).
    min_iterations : int, optional
        Minimum number of iterations before the tolerance test applies.
        Default is 0.
    """

    name = "bicgstab"
    supports_complex = True

    # Denominators below this magnitude mean the recurrence broke down.
    TINY = 1.0e-128

    def __init__(self, atol: float = 0.0, min_iterations: int = 0):
        super().__init__()
        if atol < 0:
            raise ValueError(f"atol must be non-negative, got {atol}")
        if min_iterations < 0:
            raise ValueError(f"min_iterations must be non-negative, got {min_iterations}")
        self.atol = atol
        self.min_iterations = min_iterations

    def solve(self,
              A: Any,
              b: np.ndarray,
              x: np.ndarray,
              iterator: Iterator,
              preconditioner: Optional[Preconditioner] = None) -> None:
        t0 = time.perf_counter()
        A, b = self._prepare(A, b, x)
        M = preconditioner if preconditioner is not None else UnitPreconditioner(A)

        # daxpy/dscal/dnrm2 or zaxpy/zscal/dznrm2, matching b
        axpy, scal, nrm2 = blas.get_blas_funcs(("axpy", "scal", "nrm2"), (b,))

        n = b.shape[0]
        r = np.empty(n, dtype=b.dtype)
        s = np.empty(n, dtype=b.dtype)
        v = np.empty(n, dtype=b.dtype)
        q = np.empty(n, dtype=b.dtype)

        # r0 = b - A x is the fixed shadow residual
        r0 = b.copy()
        A.multiply_add(-1.0, x, 1.0, r0)
        r[:] = r0
        p = r0.copy()

        b_norm = nrm2(b)
        res = np.vdot(r0, r0)
        r_norm = float(np.linalg.norm(r0))

        # |r_i| <= max(atol, rtol * den_norm), den_norm = |b| or |r0| if b = 0
        den_norm = b_norm if b_norm > 0.0 else r_norm
        rtol = iterator.residual_tolerance()
        epsilon = max(self.atol, rtol * den_norm)

        debug = logger.isEnabledFor(logging.DEBUG)
        i = 0
        while iterator.determine_status(i, r_norm) is IterationStatus.CONTINUE:
            i += 1

            M.apply(p, v)
            A.multiply(v, q)
            temp = np.vdot(r0, q)
            if abs(temp) < self.TINY:
                return self._breakdown(iterator, i, r_norm, b_norm, t0, "(r0, A p) vanished")

            alpha = res / temp
            axpy(v, x, a=alpha)
            axpy(q, r, a=-alpha)

            M.apply(r, v)
            A.multiply(v, s)

            # 0/0 is taken as gamma = 0
            gamma_numer = np.vdot(s, r)
            gamma_denom = np.vdot(s, s)
            if gamma_numer == 0.0 and gamma_denom == 0.0:
                gamma = 0.0
            else:
                gamma = gamma_numer / gamma_denom

            axpy(v, x, a=gamma)
            axpy(s, r, a=-gamma)
            r_norm = nrm2(r)

            if debug:
                logger.debug("bicgstab iteration %d: residual %.6e", i, r_norm)

            if r_norm <= epsilon and i >= self.min_iterations:
                # Confirm with the true residual
                r[:] = b
                A.multiply_add(-1.0, x, 1.0, r)
                r_norm = nrm2(r)
                if r_norm <= epsilon:
                    iterator.status = IterationStatus.CONVERGED
                    break

            if abs(res) < self.TINY:
                return self._breakdown(iterator, i, r_norm, b_norm, t0, "(r0, r) vanished")

            beta = 1.0 / res
            res = np.vdot(r0, r)
            beta *= res
            axpy(q, p, a=-gamma)

            if abs(gamma) < self.TINY:
                return self._breakdown(iterator, i, r_norm, b_norm, t0, "stabilization factor vanished")

            scal(beta * alpha / gamma, p)
            axpy(r, p, a=1.0)

        self._record(iterator, i, r_norm, b_norm, time.perf_counter() - t0)

    def _breakdown(self, iterator, iterations, r_norm, b_norm, t0, reason):
        logger.warning("bicgstab breakdown at iteration %d: %s", iterations, reason)
        iterator.status = IterationStatus.FAILURE
        self._record(iterator, iterations, r_norm, b_norm, time.perf_counter() - t0,
                     reason=f"Breakdown: {reason}")
