"""
Preconditioner implementations.

A preconditioner M approximates A. Given a right-hand side b, ``apply(b, x)``
writes an approximate solution of M x = b into ``x``. Preconditioners are
read-only after construction, so one instance may serve several concurrent
solves of the same system.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Union

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from .operators import LinearOperator, MatrixOperator

logger = logging.getLogger(__name__)


class ZeroPivotError(ValueError):
    """Raised when an incomplete factorization meets a zero pivot."""

    def __init__(self, row: int):
        super().__init__(f"Zero pivot encountered on row {row} during ILU process")
        self.row = row


class Preconditioner(ABC):
    """Abstract base class for preconditioners."""

    # Scalar type of the values held by the preconditioner
    dtype = np.dtype(np.float64)

    @abstractmethod
    def apply(self, b: np.ndarray, x: np.ndarray):
        """
        Approximate the solution of M x = b.

        Parameters
        ----------
        b : numpy.ndarray
            Right-hand side (input)
        x : numpy.ndarray
            Approximate solution (output, written in place)
        """
        pass

    def __call__(self, b: np.ndarray) -> np.ndarray:
        x = np.empty_like(b, dtype=np.result_type(b, self.dtype))
        self.apply(b, x)
        return x


def _square_size(A: Any) -> int:
    rows, columns = A.shape
    if rows != columns:
        raise ValueError(f"Matrix must be square, got shape {A.shape}")
    return rows


class UnitPreconditioner(Preconditioner):
    """
    Preconditioner that does nothing (M = I).

    Used by the solvers when no preconditioner is given.
    """

    def __init__(self, A: Any):
        self._size = _square_size(A)

    def apply(self, b: np.ndarray, x: np.ndarray):
        x[:self._size] = b[:self._size]


class DiagonalPreconditioner(Preconditioner):
    """
    Jacobi (diagonal) preconditioner, x_i = b_i / A_ii.

    Parameters
    ----------
    A : matrix or MatrixOperator
        Square real or complex matrix. Only the main diagonal is read.
    on_zero_diagonal : str, optional
        What to do with a zero or structurally missing diagonal entry:
        ``"unit"`` uses 1 for that entry, ``"raise"`` raises ValueError.
        Default is ``"unit"``.
    """

    def __init__(self, A: Any, on_zero_diagonal: str = "unit"):
        policy = on_zero_diagonal.lower()
        if policy not in ("unit", "raise"):
            raise ValueError("on_zero_diagonal must be 'unit' or 'raise'")

        n = _square_size(A)
        if isinstance(A, MatrixOperator):
            D = A.diagonal()
        elif sp.issparse(A):
            D = A.diagonal()
        else:
            D = np.diag(np.asarray(A))
        D = np.asarray(D)
        D = D.astype(np.result_type(D, np.float64), copy=True)

        zeros = np.flatnonzero(D == 0.0)
        if zeros.size:
            if policy == "raise":
                raise ValueError(
                    f"Zero diagonal entry on row {zeros[0]}, cannot build Jacobi preconditioner."
                )
            logger.warning("Substituting 1.0 for %d zero diagonal entries", zeros.size)
            D[zeros] = 1.0

        self._inverse_diagonal = 1.0 / D
        self._inverse_diagonal.setflags(write=False)
        self.dtype = D.dtype
        self._size = n

    @property
    def inverse_diagonal(self) -> np.ndarray:
        return self._inverse_diagonal

    def apply(self, b: np.ndarray, x: np.ndarray):
        np.multiply(b, self._inverse_diagonal, out=x)


class ILU0Preconditioner(Preconditioner):
    """
    Incomplete LU factorization with zero fill-in, ILU(0) or MILU(0).

    L and U are stored together in modified sparse row (MSR) format: the
    first n entries hold the inverted diagonal of U, row i holds the strict
    lower part of L (unit diagonal implied) followed by the strict upper
    part of U.

    Parameters
    ----------
    A : matrix or MatrixOperator
        Square sparse or dense matrix, real or complex. The sparsity pattern
        is the set of stored entries, explicit zeros included; a dense
        matrix contributes its nonzero entries only.
    modified : bool, optional
        Add the dropped fill-in back to the diagonal (MILU), which preserves
        the row sums of A. Default is True.

    Raises
    ------
    ZeroPivotError
        If a zero pivot is met during the factorization.

    Notes
    -----
    Does not preserve symmetry. After the Fortran routine ``milu0`` by
    Youcef Saad.
    """

    def __init__(self, A: Any, modified: bool = True):
        if isinstance(A, MatrixOperator):
            A = A.matrix
        n = _square_size(A)

        csr = sp.csr_matrix(A, copy=True)
        csr = csr.astype(np.result_type(csr.dtype, np.float64))
        csr.sum_duplicates()
        csr.sort_indices()

        self.dtype = csr.dtype
        self._modified = modified
        self._size = n
        self._lux, self._lup, self._diag = self._factorize(
            n, csr.data.tolist(), csr.indices.tolist(), csr.indptr.tolist(), modified
        )
        logger.debug("%s factorization of order %d with %d stored entries",
                     "MILU(0)" if modified else "ILU(0)", n, len(self._lux))

    @property
    def modified(self) -> bool:
        return self._modified

    @staticmethod
    def _factorize(n, ax, ai, ap, modified):
        off_diagonal = sum(1 for i in range(n) for j in range(ap[i], ap[i + 1]) if ai[j] != i)
        size = n + 1 + off_diagonal

        lux = [0.0] * size
        lup = [0] * size
        diag = [0] * n
        iw = [-1] * n

        p = n + 1
        lup[0] = p

        for i in range(n):
            pold = p
            upper_start = -1

            # Copy row i of A; the diagonal always belongs to the pattern.
            iw[i] = i
            for j in range(ap[i], ap[i + 1]):
                jcol = ai[j]
                if jcol == i:
                    lux[i] = ax[j]
                    continue
                if jcol > i and upper_start < 0:
                    upper_start = p
                lux[p] = ax[j]
                lup[p] = jcol
                iw[jcol] = p
                p += 1

            diag[i] = upper_start if upper_start >= 0 else p
            lup[i + 1] = p

            # Eliminate the strict lower part of row i.
            s = 0.0
            for j in range(pold, diag[i]):
                jrow = lup[j]
                tl = lux[j] * lux[jrow]
                lux[j] = tl

                for k in range(diag[jrow], lup[jrow + 1]):
                    jw = iw[lup[k]]
                    if jw != -1:
                        lux[jw] -= tl * lux[k]
                    else:
                        s += tl * lux[k]

            if modified:
                lux[i] -= s

            if lux[i] == 0.0:
                raise ZeroPivotError(i)

            lux[i] = 1.0 / lux[i]

            iw[i] = -1
            for k in range(pold, p):
                iw[lup[k]] = -1

        return lux, lup, diag

    def apply(self, b: np.ndarray, x: np.ndarray):
        n = self._size
        if len(b) != n or len(x) != n:
            raise ValueError(f"Vectors must have length {n}")

        lux, lup, diag = self._lux, self._lup, self._diag

        # Forward solve with L.
        for i in range(n):
            t = b[i]
            for k in range(lup[i], diag[i]):
                t -= lux[k] * x[lup[k]]
            x[i] = t

        # Backward solve with U.
        for i in range(n - 1, -1, -1):
            t = x[i]
            for k in range(diag[i], lup[i + 1]):
                t -= lux[k] * x[lup[k]]
            x[i] = lux[i] * t


class SciPyILUPreconditioner(Preconditioner):
    """
    Threshold ILU preconditioner using scipy.sparse.linalg.spilu.

    Parameters
    ----------
    A : matrix or MatrixOperator
        Square sparse or dense matrix
    drop_tol : float, optional
        Drop tolerance for ILU factorization. Default is 1e-4.
    fill_factor : float, optional
        Fill factor for ILU factorization. Default is 10.

    Notes
    -----
    ``SuperLU.solve`` returns a new array, so each application allocates
    one vector.
    """

    def __init__(self, A: Any, drop_tol: float = 1e-4, fill_factor: float = 10.0):
        if isinstance(A, MatrixOperator):
            A = A.matrix
        _square_size(A)
        # SuperLU prefers CSC format
        A_csc = sp.csc_matrix(A)
        A_csc = A_csc.astype(np.result_type(A_csc.dtype, np.float64))
        self.dtype = A_csc.dtype
        try:
            self._ilu = spla.spilu(A_csc, drop_tol=drop_tol, fill_factor=fill_factor)
        except RuntimeError as e:
            raise ValueError(f"ILU factorization failed: {e}") from e

    def apply(self, b: np.ndarray, x: np.ndarray):
        x[:] = self._ilu.solve(b)


class OperatorPreconditioner(Preconditioner):
    """
    Preconditioner wrapping an operator P with P(b) ~ A^{-1} b.

    Parameters
    ----------
    operator : matrix, LinearOperator or callable
        Dense/sparse matrix, linear operator, or function ``b -> x``.
        A function returns a new array on every application.
    """

    def __init__(self, operator: Union[Any, Callable[[np.ndarray], np.ndarray]]):
        if isinstance(operator, (LinearOperator, spla.LinearOperator)) or sp.issparse(operator) \
                or isinstance(operator, np.ndarray):
            self._operator = operator if isinstance(operator, LinearOperator) else MatrixOperator(operator)
            self._function = None
            self.dtype = self._operator.dtype
        elif callable(operator):
            self._operator = None
            self._function = operator
        else:
            raise TypeError(f"Unsupported preconditioner operator: {type(operator).__name__}")

    def apply(self, b: np.ndarray, x: np.ndarray):
        if self._operator is not None:
            self._operator.multiply(b, x)
        else:
            x[:] = self._function(b)


def create_preconditioner(A: Any, preconditioner: Any, **kwargs) -> Preconditioner:
    """
    Build a preconditioner from a name or an object.

    Parameters
    ----------
    A : matrix or MatrixOperator
        System matrix
    preconditioner : str, Preconditioner, matrix, LinearOperator, callable or None
        ``"none"``/``"unit"``, ``"jacobi"``/``"diagonal"``, ``"ilu0"``,
        ``"milu0"`` or ``"ilu"`` (SciPy threshold ILU). Preconditioner
        instances are returned as they are; other objects are wrapped in an
        :class:`OperatorPreconditioner`.
    **kwargs
        Preconditioner-specific parameters (``on_zero_diagonal``, ``drop_tol``,
        ``fill_factor``)

    Returns
    -------
    M : Preconditioner or None
        None for ``"none"``
    """
    if preconditioner is None:
        return None
    if isinstance(preconditioner, Preconditioner):
        return preconditioner

    if isinstance(preconditioner, str):
        prec_type = preconditioner.lower()
        if prec_type == "none":
            return None
        elif prec_type == "unit":
            return UnitPreconditioner(A)
        elif prec_type in ("jacobi", "diagonal"):
            return DiagonalPreconditioner(A, on_zero_diagonal=kwargs.get("on_zero_diagonal", "unit"))
        elif prec_type == "ilu0":
            return ILU0Preconditioner(A, modified=False)
        elif prec_type == "milu0":
            return ILU0Preconditioner(A, modified=True)
        elif prec_type == "ilu":
            return SciPyILUPreconditioner(
                A,
                drop_tol=kwargs.get("drop_tol", 1e-4),
                fill_factor=kwargs.get("fill_factor", 10.0),
            )
        raise ValueError(f"Unknown preconditioner type: {preconditioner}")

    return OperatorPreconditioner(preconditioner)
