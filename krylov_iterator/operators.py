"""
Linear operator contract consumed by the iterative solvers.

The solvers only ever need ``y := A x`` and ``y := alpha A x + beta y``.
:class:`MatrixOperator` provides both for real or complex NumPy arrays, SciPy
sparse matrices and ``scipy.sparse.linalg.LinearOperator`` instances.
"""

from abc import ABC, abstractmethod
from typing import Any, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla


class LinearOperator(ABC):
    """Abstract base class for linear operators A."""

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, int]:
        pass

    @property
    def dtype(self) -> np.dtype:
        """Scalar type of the operator, float64 unless overridden."""
        return np.dtype(np.float64)

    @property
    def row_count(self) -> int:
        return self.shape[0]

    @property
    def column_count(self) -> int:
        return self.shape[1]

    @property
    def is_square(self) -> bool:
        return self.shape[0] == self.shape[1]

    @abstractmethod
    def multiply(self, x: np.ndarray, y: np.ndarray):
        """Compute y := A x, writing into ``y``."""
        pass

    def multiply_add(self, alpha: float, x: np.ndarray, beta: float, y: np.ndarray):
        """
        Compute y := alpha A x + beta y, writing into ``y``.

        Allocates one temporary vector; the solvers only call this outside
        their iteration loops.
        """
        ax = np.empty_like(y)
        self.multiply(x, ax)
        y *= beta
        y += alpha * ax

    def __call__(self, x: np.ndarray) -> np.ndarray:
        y = np.empty(self.row_count, dtype=np.result_type(x, self.dtype))
        self.multiply(x, y)
        return y


class MatrixOperator(LinearOperator):
    """
    Linear operator backed by a matrix.

    Parameters
    ----------
    A : numpy.ndarray, scipy.sparse matrix or scipy.sparse.linalg.LinearOperator
        The matrix, real or complex. Sparse matrices are converted to CSR
        once.

    Notes
    -----
    Only the dense product is computed straight into ``y``. SciPy has no
    public sparse product with an output argument, so the sparse and
    abstract cases build ``A x`` in a temporary and copy it into ``y``: one
    allocation per call.
    """

    def __init__(self, A: Any):
        if sp.issparse(A):
            A = A.tocsr()
            self._kind = "sparse"
        elif isinstance(A, spla.LinearOperator):
            self._kind = "operator"
        else:
            A = np.asarray(A)
            if A.ndim != 2:
                raise ValueError(f"Expected a 2-D matrix, got an array with {A.ndim} dimensions")
            self._kind = "dense"
        self._matrix = A

    @property
    def matrix(self) -> Any:
        return self._matrix

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self._matrix.shape)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self._matrix.dtype)

    def multiply(self, x: np.ndarray, y: np.ndarray):
        if self._kind == "dense":
            np.dot(self._matrix, x, out=y)
        elif self._kind == "sparse":
            y[:] = self._matrix @ x
        else:
            y[:] = self._matrix.matvec(x)

    def diagonal(self) -> np.ndarray:
        """Main diagonal of the matrix (not available for abstract operators)."""
        if self._kind == "operator":
            raise TypeError("The diagonal of an abstract LinearOperator is not available")
        return np.asarray(self._matrix.diagonal())

    def __repr__(self):
        return f"MatrixOperator(shape={self.shape}, kind={self._kind!r})"


def aslinearoperator(A: Any) -> LinearOperator:
    """Return ``A`` as a :class:`LinearOperator`, wrapping matrices as needed."""
    if isinstance(A, LinearOperator):
        return A
    return MatrixOperator(A)
