"""
Unit tests for the preconditioners.
"""

import numpy as np
import pytest
import scipy.sparse as sp

from krylov_iterator import (
    DiagonalPreconditioner,
    ILU0Preconditioner,
    MatrixOperator,
    OperatorPreconditioner,
    SciPyILUPreconditioner,
    UnitPreconditioner,
    ZeroPivotError,
    create_preconditioner,
)

from .conftest import laplacian_1d, laplacian_2d, random_unsymmetric


@pytest.mark.unit
class TestUnitPreconditioner:
    def test_copies_input(self):
        M = UnitPreconditioner(np.eye(3))
        b = np.array([1.0, 2.0, 3.0])
        x = np.zeros(3)
        M.apply(b, x)
        np.testing.assert_array_equal(x, b)

    def test_requires_square(self):
        with pytest.raises(ValueError):
            UnitPreconditioner(np.ones((2, 3)))


@pytest.mark.unit
class TestDiagonalPreconditioner:
    def test_inverse_diagonal(self):
        A = sp.diags([2.0, 4.0, 8.0]).tocsr()
        M = DiagonalPreconditioner(A)
        np.testing.assert_allclose(M.inverse_diagonal, [0.5, 0.25, 0.125])
        np.testing.assert_allclose(M(np.ones(3)), [0.5, 0.25, 0.125])

    def test_dense_and_operator_input(self):
        A = np.array([[2.0, 1.0], [1.0, 5.0]])
        np.testing.assert_allclose(DiagonalPreconditioner(A).inverse_diagonal, [0.5, 0.2])
        np.testing.assert_allclose(DiagonalPreconditioner(MatrixOperator(A)).inverse_diagonal, [0.5, 0.2])

    def test_complex_diagonal(self):
        A = sp.diags([2.0j, 1.0 + 1.0j, 4.0]).tocsr()
        M = DiagonalPreconditioner(A)

        assert M.dtype == np.complex128
        np.testing.assert_allclose(M.inverse_diagonal, [-0.5j, 0.5 - 0.5j, 0.25])
        x = np.zeros(3, dtype=complex)
        M.apply(np.array([2.0j, 2.0, 1.0]), x)
        np.testing.assert_allclose(x, [1.0, 1.0 - 1.0j, 0.25])

    def test_zero_diagonal_uses_unit(self):
        A = np.array([[0.0, 1.0], [1.0, 4.0]])
        M = DiagonalPreconditioner(A)
        np.testing.assert_allclose(M.inverse_diagonal, [1.0, 0.25])

    def test_zero_diagonal_raise(self):
        A = np.array([[0.0, 1.0], [1.0, 4.0]])
        with pytest.raises(ValueError):
            DiagonalPreconditioner(A, on_zero_diagonal="raise")

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            DiagonalPreconditioner(np.eye(2), on_zero_diagonal="ignore")

    def test_inverse_diagonal_is_read_only(self):
        M = DiagonalPreconditioner(np.eye(2))
        with pytest.raises(ValueError):
            M.inverse_diagonal[0] = 2.0


@pytest.mark.unit
class TestILU0Preconditioner:
    @pytest.mark.parametrize("modified", [False, True])
    def test_exact_for_tridiagonal(self, modified):
        # No fill-in is dropped, so the factorization is the exact LU.
        A = laplacian_1d(10)
        b = np.arange(1.0, 11.0)

        M = ILU0Preconditioner(A, modified=modified)
        np.testing.assert_allclose(M(b), np.linalg.solve(A.toarray(), b), rtol=1e-10)

    def test_exact_for_unsymmetric_tridiagonal(self):
        A = sp.diags([-1.5, 3.0, -0.5], [-1, 0, 1], shape=(8, 8), format="csr")
        b = np.ones(8)
        M = ILU0Preconditioner(A, modified=False)
        np.testing.assert_allclose(M(b), np.linalg.solve(A.toarray(), b), rtol=1e-10)

    def test_milu_preserves_row_sums(self):
        A = laplacian_2d(4, 4)
        ones = np.ones(A.shape[0])
        b = A @ ones

        milu = ILU0Preconditioner(A, modified=True)
        np.testing.assert_allclose(milu(b), ones, rtol=1e-10)

        ilu = ILU0Preconditioner(A, modified=False)
        assert not np.allclose(ilu(b), ones)

    def test_stored_zeros_extend_the_pattern(self):
        # Storing the zeros of the whole band gives ILU(0) room for every
        # fill-in of the exact LU.
        A = laplacian_2d(4, 4)
        dense = A.toarray()
        rows, cols = np.nonzero(np.abs(np.subtract.outer(np.arange(16), np.arange(16))) <= 4)
        banded = sp.csr_matrix((dense[rows, cols], (rows, cols)), shape=A.shape)
        assert banded.nnz > A.nnz

        ones = np.ones(16)
        ilu = ILU0Preconditioner(banded, modified=False)
        np.testing.assert_allclose(ilu(A @ ones), ones, rtol=1e-10)

    def test_complex_tridiagonal_is_exact(self):
        A = sp.diags([-1.0 + 0.5j, 3.0 + 1.0j, -0.5 - 0.25j], [-1, 0, 1], shape=(8, 8), format="csr")
        b = np.arange(1.0, 9.0) + 1.0j
        M = ILU0Preconditioner(A, modified=False)

        assert M.dtype == np.complex128
        np.testing.assert_allclose(M(b), np.linalg.solve(A.toarray(), b), rtol=1e-10)

    def test_default_is_modified(self):
        assert ILU0Preconditioner(laplacian_1d(3)).modified

    def test_approximates_inverse(self):
        A = random_unsymmetric(30, 0.1)
        b = A @ np.ones(30)
        x = ILU0Preconditioner(A, modified=False)(b)
        assert np.linalg.norm(x - 1.0) < 0.5 * np.sqrt(30)

    def test_dense_input(self):
        A = laplacian_1d(5).toarray()
        b = np.ones(5)
        np.testing.assert_allclose(ILU0Preconditioner(A)(b), np.linalg.solve(A, b), rtol=1e-10)

    def test_missing_diagonal(self):
        A = sp.csr_matrix(np.array([[0.0, 1.0], [1.0, 0.0]]))
        with pytest.raises(ZeroPivotError) as excinfo:
            ILU0Preconditioner(A)
        assert excinfo.value.row == 0

    def test_zero_pivot_row(self):
        A = np.array([[1.0, 1.0], [1.0, 1.0]])
        with pytest.raises(ZeroPivotError) as excinfo:
            ILU0Preconditioner(A, modified=False)
        assert excinfo.value.row == 1
        assert isinstance(excinfo.value, ValueError)
        assert "row 1" in str(excinfo.value)

    def test_does_not_modify_input(self):
        A = laplacian_1d(5)
        data = A.data.copy()
        ILU0Preconditioner(A)
        np.testing.assert_array_equal(A.data, data)

    def test_length_mismatch(self):
        M = ILU0Preconditioner(laplacian_1d(4))
        with pytest.raises(ValueError):
            M.apply(np.ones(3), np.zeros(3))


@pytest.mark.unit
class TestSciPyILUPreconditioner:
    def test_near_exact_without_dropping(self):
        A = laplacian_1d(10)
        b = np.ones(10)
        M = SciPyILUPreconditioner(A, drop_tol=1e-12)
        np.testing.assert_allclose(M(b), np.linalg.solve(A.toarray(), b), rtol=1e-8)


@pytest.mark.unit
class TestOperatorPreconditioner:
    def test_matrix(self):
        A = np.array([[2.0, 1.0], [1.0, 3.0]])
        M = OperatorPreconditioner(np.linalg.inv(A))
        np.testing.assert_allclose(M(np.array([3.0, 4.0])), [1.0, 1.0])

    def test_callable(self):
        M = OperatorPreconditioner(lambda b: 0.5 * b)
        np.testing.assert_allclose(M(np.array([2.0, 4.0])), [1.0, 2.0])

    def test_unsupported(self):
        with pytest.raises(TypeError):
            OperatorPreconditioner(42)


@pytest.mark.unit
class TestCreatePreconditioner:
    def test_names(self):
        A = laplacian_1d(5)
        assert create_preconditioner(A, None) is None
        assert create_preconditioner(A, "none") is None
        assert isinstance(create_preconditioner(A, "unit"), UnitPreconditioner)
        assert isinstance(create_preconditioner(A, "jacobi"), DiagonalPreconditioner)
        assert isinstance(create_preconditioner(A, "Diagonal"), DiagonalPreconditioner)
        assert not create_preconditioner(A, "ilu0").modified
        assert create_preconditioner(A, "milu0").modified
        assert isinstance(create_preconditioner(A, "ilu"), SciPyILUPreconditioner)

    def test_instance_passthrough(self):
        A = laplacian_1d(5)
        M = UnitPreconditioner(A)
        assert create_preconditioner(A, M) is M

    def test_operator_wrapped(self):
        assert isinstance(create_preconditioner(np.eye(2), np.eye(2)), OperatorPreconditioner)

    def test_kwargs(self):
        A = np.array([[0.0, 1.0], [1.0, 4.0]])
        with pytest.raises(ValueError):
            create_preconditioner(A, "jacobi", on_zero_diagonal="raise")

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            create_preconditioner(np.eye(2), "amg")
