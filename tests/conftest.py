"""
Pytest configuration and shared fixtures for the krylov_iterator test suite.
"""

import numpy as np
import pytest
import scipy.sparse as sp

RANDOM_SEED = 357


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (slower, cross-component)")


# =============================================================================
# Matrix builders
# =============================================================================


def laplacian_1d(n):
    """1-D Laplacian with Dirichlet boundary conditions, tridiag(-1, 2, -1)."""
    return sp.diags([-1.0, 2.0, -1.0], [-1, 0, 1], shape=(n, n), format="csr")


def laplacian_2d(nx, ny):
    """5-point 2-D Laplacian on an nx-by-ny grid, without stored zeros."""
    Ix = sp.identity(nx, format="csr")
    Iy = sp.identity(ny, format="csr")
    A = (sp.kron(Iy, laplacian_1d(nx)) + sp.kron(laplacian_1d(ny), Ix)).tocsr()
    # kron stores the zero entries of its dense blocks
    A.eliminate_zeros()
    return A


def random_symmetric(n, density, definite, seed=RANDOM_SEED):
    """
    Random sparse symmetric matrix.

    Off-diagonal values are positive. With ``definite`` the diagonal dominates
    the row sums, otherwise it is drawn from [0, 1) and the matrix is
    indefinite.
    """
    rng = np.random.default_rng(seed)
    nz = max(int(n * n * density), 1)
    pairs = (nz - n) // 2

    rows, cols, vals = [], [], []
    row_sums = np.zeros(n)
    for _ in range(pairs):
        i, j = rng.integers(0, n, size=2)
        if i == j:
            continue
        value = rng.random()
        row_sums[i] += value
        row_sums[j] += value
        rows.extend((i, j))
        cols.extend((j, i))
        vals.extend((value, value))

    diagonal = rng.random(n)
    if definite:
        diagonal = np.maximum((diagonal + 1.0) * row_sums, 1.0)
    rows.extend(range(n))
    cols.extend(range(n))
    vals.extend(diagonal)

    return sp.coo_matrix((vals, (rows, cols)), shape=(n, n)).tocsr()


def random_unsymmetric(n, density, seed=RANDOM_SEED):
    """Random sparse unsymmetric matrix with a dominant diagonal."""
    R = sp.random(n, n, density=density, random_state=seed, format="csr")
    R = R - 0.5 * R.T.tocsr()
    dominance = np.asarray(abs(R).sum(axis=1)).ravel() + 1.0
    return (R + sp.diags(dominance)).tocsr()


def random_complex(n, density, seed=RANDOM_SEED):
    """
    Random sparse complex matrix with a dominant diagonal.

    The off-diagonal entries of :func:`random_unsymmetric` get random phases,
    which keeps every magnitude and so the diagonal dominance.
    """
    A = random_unsymmetric(n, density, seed).tocoo()
    rng = np.random.default_rng(seed)
    phase = np.exp(1j * rng.uniform(0.0, 2.0 * np.pi, A.nnz))
    phase[A.row == A.col] = 1.0
    return sp.coo_matrix((A.data * phase, (A.row, A.col)), shape=A.shape).tocsr()


def symmetric_indefinite(n, seed=RANDOM_SEED):
    """Dense symmetric matrix with eigenvalues in [-2, -1] and [1, 2]."""
    rng = np.random.default_rng(seed)
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    half = n // 2
    eigenvalues = np.concatenate([
        -np.linspace(1.0, 2.0, half),
        np.linspace(1.0, 2.0, n - half),
    ])
    return (Q * eigenvalues) @ Q.T


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def laplacian():
    """1-D Laplacian of order 100 and b = A * ones."""
    A = laplacian_1d(100)
    return A, A @ np.ones(100)


@pytest.fixture
def unsymmetric_system():
    """Diagonally dominant unsymmetric system of order 100 with solution ones."""
    A = random_unsymmetric(100, 0.05)
    return A, A @ np.ones(100)


@pytest.fixture
def complex_system():
    """Complex diagonally dominant system of order 100 with solution (1 + 1j) * ones."""
    A = random_complex(100, 0.1)
    solution = np.full(100, 1.0 + 1.0j)
    return A, A @ solution, solution


@pytest.fixture
def spd_system():
    """Random diagonally dominant SPD system of order 100 with solution ones."""
    A = random_symmetric(100, 0.1, definite=True)
    return A, A @ np.ones(100)


@pytest.fixture
def indefinite_system():
    """Symmetric indefinite system of order 60 with solution ones."""
    A = symmetric_indefinite(60)
    return A, A @ np.ones(60)
