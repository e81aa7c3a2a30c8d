"""
MINRES solver for symmetric, possibly indefinite or singular systems.

Solves A x = b or the least-squares problem min ||A x - b|| via the Lanczos
process with Givens rotations applied incrementally to the tridiagonal
matrix. After the MATLAB MINRES code by Michael Saunders (SOL, Stanford
University).

A preconditioner M must be symmetric positive definite. MINRES then
implicitly solves P A P' xbar = P b with M = C C', P = C^{-1}, and returns
x = P' xbar. The associated residual is rbar = P (b - A x).
"""

import logging
import math
import time
from typing import Any, Optional

import numpy as np
from scipy.linalg import blas

from ..convergence import IterationStatus
from ..iterator import Iterator
from ..preconditioners import Preconditioner
from .base import IterativeSolver

logger = logging.getLogger(__name__)

EPS = np.finfo(np.float64).eps

# Reasons for termination, indexed by ``istop``.
STOP_MESSAGES = {
    -1: "beta2 = 0; the right-hand side is an eigenvector, x = b / alpha1",
    0: "b = 0 (or b - A x0 = 0), the exact solution is x0",
    1: "A solution to Ax = b was found, given rtol",
    2: "A least-squares solution was found, given rtol",
    3: "Reasonable accuracy achieved, given eps",
    4: "x has converged to an eigenvector",
    5: "Acond has exceeded 0.1/eps",
    9: "M is not sufficiently SPD",
    10: "rtol reduced max times on preconditioned system",
}


class MinRes(IterativeSolver):
    """
    Minimum residual method for symmetric operators.

    The relative tolerance is read from the residual criterion of the
    iterator. Two tests are made each iteration against it:

    * ``test1 = ||r|| / (||A|| ||x|| + ||b||)`` for a solution of A x = b,
    * ``test2 = ||A r|| / (||A|| ||r||)`` for a least-squares solution.

    With a preconditioner an apparent convergence is re-checked on the
    unpreconditioned residual ``b - A x`` against the original tolerance. If
    that check fails, the working tolerance is divided by 10 and iteration
    continues, at most ``MAX_TOLERANCE_LEVELS`` tolerance values in total.

    After a solve the following estimates are available as attributes:

    ``anorm``
        Estimate of the norm of the (preconditioned) operator.
    ``acond``
        Estimate of its condition number, usually an under-estimate.
    ``rnorm``
        Estimate of the norm of the final (preconditioned) residual.
    ``arnorm``
        Estimate of ``||A r_{k-1}||``; lags one iteration behind ``rnorm``.
    ``ynorm``
        Norm of the correction ``x - x0`` (``sqrt(x' M x)`` when
        preconditioned, approximately).
    ``xnorm``
        Norm of the final x as used in the last true residual check.
    ``betacheck``
        Last value of the normalized inner product used to detect an
        indefinite preconditioner.
    ``istop``
        Stop code, see ``STOP_MESSAGES``.
    """

    name = "minres"

    # Inner products y' M^{-1} y / y'y below this mean M is not safely SPD.
    PTOL = 1e-6

    MAX_TOLERANCE_LEVELS = 5

    def __init__(self, ptol: float = PTOL):
        super().__init__()
        if ptol <= 0:
            raise ValueError(f"ptol must be positive, got {ptol}")
        self.ptol = ptol
        self._reset_estimates()

    def _reset_estimates(self):
        self.istop = 0
        self.anorm = 0.0
        self.acond = 0.0
        self.rnorm = 0.0
        self.arnorm = 0.0
        self.ynorm = 0.0
        self.xnorm = 0.0
        self.betacheck = 0.0

    def solve(self,
              A: Any,
              b: np.ndarray,
              x: np.ndarray,
              iterator: Iterator,
              preconditioner: Optional[Preconditioner] = None) -> None:
        t0 = time.perf_counter()
        A, b = self._prepare(A, b, x)
        M = preconditioner
        precon = M is not None
        n = b.shape[0]

        self._reset_estimates()
        rtol = iterator.residual_tolerance()

        x0 = x.copy()
        r0 = b.copy()

        bnorm = blas.dnrm2(b)
        x0norm = blas.dnrm2(x0)
        r0norm = bnorm

        # Solve A dx = r0 with r0 = b - A x0 and add x0 back at the end.
        if x0norm > 0.0:
            A.multiply_add(-1.0, x0, 1.0, r0)
            r0norm = blas.dnrm2(r0)

        # y = beta1 P' v1 with P = C^{-1}
        y = r0.copy()
        if precon:
            M.apply(r0, y)

        beta1 = np.dot(r0, y)
        if beta1 == 0.0:
            # r0 = 0 exactly, x0 is the solution
            iterator.status = IterationStatus.CONVERGED
            return self._finish(iterator, 0, 0, r0norm, bnorm, t0)

        self.betacheck = beta1 / np.dot(r0, r0)
        if precon and self.betacheck < self.ptol:
            logger.warning("minres: preconditioner does not appear to be SPD (betacheck %.3e)",
                           self.betacheck)
            iterator.status = IterationStatus.FAILURE
            return self._finish(iterator, 9, 0, r0norm, bnorm, t0)

        x.fill(0.0)

        r1 = r0.copy()
        r2 = r0.copy()
        v = np.zeros(n)
        w = np.zeros(n)
        w1 = np.zeros(n)
        w2 = np.zeros(n)
        xt = np.zeros(n)

        beta1 = math.sqrt(beta1)

        oldb = 0.0
        beta = beta1
        dbar = 0.0
        epsln = 0.0
        phibar = beta1
        rhs1 = beta1
        rhs2 = 0.0
        tnorm2 = 0.0
        cs = -1.0
        sn = 0.0
        gmax = 0.0
        gmin = np.finfo(np.float64).max

        numrtol = 1
        rtol0 = rtol
        istop = 0
        dxnorm = 0.0

        # Ratio between the true and the estimated residual measure, updated
        # whenever a true residual check fails.
        residual_scale = 1.0
        test1 = r0norm

        debug = logger.isEnabledFor(logging.DEBUG)
        itn = 0
        while iterator.determine_status(itn, test1 * residual_scale) is IterationStatus.CONTINUE:
            itn += 1

            # Lanczos step: v = y / beta, y = A v - (beta / oldb) r1 - (alfa / beta) r2
            np.multiply(y, 1.0 / beta, out=v)
            A.multiply(v, y)
            if itn > 1:
                blas.daxpy(r1, y, a=-beta / oldb)

            alfa = np.dot(v, y)

            blas.daxpy(r2, y, a=-alfa / beta)
            r1[:] = r2
            r2[:] = y
            if precon:
                M.apply(r2, y)

            oldb = beta
            beta = np.dot(r2, y)

            # r2 = 0 means the Lanczos process terminated and beta = 0
            r2norm2 = np.dot(r2, r2)
            if r2norm2 > 0.0:
                self.betacheck = beta / r2norm2
                if precon and self.betacheck < self.ptol:
                    logger.warning("minres: preconditioner is not sufficiently SPD at iteration %d "
                                   "(betacheck %.3e)", itn, self.betacheck)
                    istop = 9
                    iterator.status = IterationStatus.FAILURE
                    break

            beta = math.sqrt(beta)
            tnorm2 += alfa * alfa + oldb * oldb + beta * beta

            if itn == 1 and beta / beta1 <= 10.0 * EPS:
                # beta2 = 0 or ~ 0, terminate after the x update below
                istop = -1

            # Apply the previous rotation Q_{k-1}:
            #   [delta_k epsln_k+1] = [cs  sn][dbar_k     0      ]
            #   [gbar_k  dbar_k+1 ]   [sn -cs][alfa_k  beta_k+1  ]
            oldeps = epsln
            delta = cs * dbar + sn * alfa
            gbar = sn * dbar - cs * alfa
            epsln = sn * beta
            dbar = -cs * beta

            root = math.hypot(gbar, dbar)
            self.arnorm = phibar * root

            # Compute the next plane rotation Q_k
            gamma = max(math.hypot(gbar, beta), EPS)
            cs = gbar / gamma
            sn = beta / gamma
            phi = cs * phibar
            phibar = sn * phibar

            # Update x: w = (v - oldeps w1 - delta w2) / gamma, x += phi w
            w1, w2, w = w2, w, w1
            np.multiply(w1, -oldeps, out=w)
            blas.daxpy(w2, w, a=-delta)
            blas.daxpy(v, w, a=1.0)
            blas.dscal(1.0 / gamma, w)
            blas.daxpy(w, x, a=phi)

            gmax = max(gmax, gamma)
            gmin = min(gmin, gamma)
            z = rhs1 / gamma
            rhs1 = rhs2 - delta * z
            rhs2 = -epsln * z

            # Norm estimates for the preconditioned system; arnorm above
            # belongs to the previous iteration.
            self.anorm = math.sqrt(tnorm2)
            dxnorm = blas.dnrm2(x)
            self.ynorm = dxnorm
            self.rnorm = phibar

            # Diagonals of R in Q H = R, with H the Lanczos tridiagonal
            # matrix plus the extra row beta_k+1 e_k'.
            self.acond = gmax / gmin

            if istop != 0:
                break

            epsx = (self.anorm * dxnorm + beta1) * EPS
            test1 = self.rnorm / (self.anorm * dxnorm + bnorm)
            test2 = self.arnorm / (self.anorm * (self.rnorm + EPS))

            if debug:
                logger.debug("minres iteration %d: test1 %.6e test2 %.6e acond %.3e",
                             itn, test1, test2, self.acond)

            # These tests work if rtol < eps
            if 1.0 + test2 <= 1.0:
                istop = 2
            if 1.0 + test1 <= 1.0:
                istop = 1

            if self.acond >= 0.1 / EPS:
                istop = 5
            if epsx >= beta1:
                istop = 3
            if test2 <= rtol:
                istop = 2
            if test1 <= rtol:
                istop = 1

            if precon and 0 < istop <= 5:
                # The preconditioned system satisfied rtol; check A x = b
                # against the original tolerance.
                if x0norm == 0.0:
                    self.xnorm = dxnorm
                    v[:] = b
                    A.multiply_add(-1.0, x, 1.0, v)
                else:
                    np.add(x0, x, out=xt)
                    self.xnorm = blas.dnrm2(xt)
                    v[:] = b
                    A.multiply_add(-1.0, xt, 1.0, v)
                rnormk = blas.dnrm2(v)

                denom = self.anorm * self.xnorm + bnorm
                epsr = denom * rtol0

                if rnormk <= epsr:
                    istop = 1
                elif numrtol < self.MAX_TOLERANCE_LEVELS and rtol > EPS:
                    numrtol += 1
                    rtol = rtol / 10.0
                    istop = 0
                    if test1 > 0.0:
                        residual_scale = max(residual_scale, (rnormk / denom) / test1)
                    logger.debug("minres: true residual check failed at iteration %d, "
                                 "reducing rtol to %.1e", itn, rtol)
                else:
                    istop = 10
                    logger.warning("minres: rtol reduced %d times without satisfying the "
                                   "unpreconditioned residual", numrtol - 1)

            if istop != 0:
                iterator.status = IterationStatus.CONVERGED if istop < 5 else IterationStatus.FAILURE
                break

        if istop == -1:
            iterator.status = IterationStatus.CONVERGED

        if x0norm > 0.0:
            blas.daxpy(x0, x, a=1.0)

        self._finish(iterator, istop, itn, self.rnorm, bnorm, t0)

    def _finish(self, iterator, istop, iterations, residual_norm, bnorm, t0):
        self.istop = istop
        self._record(iterator, iterations, residual_norm, bnorm, time.perf_counter() - t0,
                     raw_info=istop, reason=STOP_MESSAGES.get(istop, ""))
