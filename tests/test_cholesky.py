import numpy as np
import pytest
import scipy.sparse as sp

from ARAP import CholeskyFactor, ConfigurationError, NumericalInvariantError


@pytest.fixture
def spd_matrix():
    rng = np.random.default_rng(0)
    B = rng.standard_normal((20, 20))
    return sp.csc_matrix(B @ B.T + 20.0 * np.eye(20))


@pytest.mark.parametrize("prefer_cholmod", [True, False])
def test_solve_matches_dense(spd_matrix, prefer_cholmod):
    factor = CholeskyFactor(prefer_cholmod=prefer_cholmod)
    factor.factorization(spd_matrix)
    assert factor.is_factorized

    rng = np.random.default_rng(1)
    b = rng.standard_normal(20)
    np.testing.assert_allclose(spd_matrix @ factor.solve(b), b, atol=1e-9)

    B = rng.standard_normal((20, 3))
    X = factor.solve(B)
    assert X.shape == (20, 3)
    np.testing.assert_allclose(spd_matrix @ X, B, atol=1e-9)


def test_superlu_backend_name():
    assert CholeskyFactor(prefer_cholmod=False).backend == "superlu"


def test_solve_before_factorization():
    with pytest.raises(ConfigurationError):
        CholeskyFactor(prefer_cholmod=False).solve(np.ones(3))


def test_rhs_size_mismatch(spd_matrix):
    factor = CholeskyFactor(prefer_cholmod=False)
    factor.factorization(spd_matrix)
    with pytest.raises(ConfigurationError):
        factor.solve(np.ones(7))


def test_non_square_matrix():
    with pytest.raises(NumericalInvariantError):
        CholeskyFactor(prefer_cholmod=False).factorization(sp.csc_matrix(np.ones((2, 3))))


def test_non_symmetric_matrix():
    A = sp.csc_matrix(np.array([[2.0, 1.0], [0.0, 2.0]]))
    with pytest.raises(NumericalInvariantError):
        CholeskyFactor(prefer_cholmod=False).factorization(A)


def test_singular_matrix():
    A = sp.csc_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))
    with pytest.raises(NumericalInvariantError):
        CholeskyFactor(prefer_cholmod=False).factorization(A)


@pytest.mark.parametrize(
    "dense",
    [
        [[1.0, 0.0], [0.0, -1.0]],
        [[1.0, 2.0], [2.0, 1.0]],
        [[-2.0, 0.0, 0.0], [0.0, 3.0, 1.0], [0.0, 1.0, 3.0]],
    ],
)
def test_indefinite_matrix(dense):
    with pytest.raises(NumericalInvariantError):
        CholeskyFactor(prefer_cholmod=False).factorization(sp.csc_matrix(np.array(dense)))
