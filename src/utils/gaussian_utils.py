import numpy as np
from dataclasses import dataclass

from scipy.linalg import solve_triangular


LOG_SQRT_2PI = 0.5 * np.log(2.0 * np.pi)


@dataclass
class Gaussian:
    mean: np.ndarray
    cov: np.ndarray


# ============================================================
# Covariance factorization
# ============================================================
@dataclass(frozen=True)
class CovarianceFactor:
    """
    Cholesky factorization of a symmetric positive-definite covariance.

        Sigma = L L^T

    Everything a zero-mean density needs (log-determinant and the
    quadratic form x^T Sigma^{-1} x) is read off L, so Sigma is never
    inverted explicitly.
    """

    L   :   np.ndarray
    """Lower-triangular Cholesky factor of shape (k, k)."""

    @property
    def dim(self) -> int:
        return self.L.shape[0]

    @property
    def log_det(self) -> float:
        """log det(Sigma) = 2 * sum(log(diag(L)))"""
        return 2.0 * float(np.sum(np.log(np.diag(self.L))))


def factorize(
    cov :   np.ndarray
) -> CovarianceFactor:
    """
    Factorize a covariance matrix.

    Parameters
    ----------
    cov : np.ndarray
        Symmetric positive-definite matrix of shape (k, k).

    Returns
    -------
    CovarianceFactor
        Cholesky factor of `cov`.

    Raises
    ------
    ValueError
        If `cov` is not square or not symmetric.
    numpy.linalg.LinAlgError
        If `cov` is not positive-definite.
    """

    cov = np.atleast_2d(np.asarray(cov, dtype=float))

    if cov.ndim != 2 or cov.shape[0] != cov.shape[1]:
        raise ValueError(f"covariance must be square, got shape {cov.shape}")

    if not np.allclose(cov, cov.T, rtol=1e-10, atol=0.0, equal_nan=True):
        raise ValueError("covariance must be symmetric")

    L = np.linalg.cholesky(cov)

    return CovarianceFactor(L=L)


def log_det(
    factor  :   CovarianceFactor
) -> float:
    """Log-determinant of the factorized covariance."""
    return factor.log_det


def quad_form(
    factor  :   CovarianceFactor,
    x       :   np.ndarray
) -> float:
    """
    Quadratic form x^T Sigma^{-1} x.

    Solves L z = x by forward substitution, then x^T Sigma^{-1} x = z^T z.
    """

    x = np.atleast_1d(np.asarray(x, dtype=float))

    if x.shape[0] != factor.dim:
        raise ValueError(
            f"vector of length {x.shape[0]} does not match covariance of dimension {factor.dim}"
        )

    z = solve_triangular(factor.L, x, lower=True)

    return float(z.T @ z)


# ============================================================
# Gaussian density
# ============================================================
def gaussian_neg_log_density(
    factor  :   CovarianceFactor,
    x       :   np.ndarray
) -> float:
    """
    Negative log-density of a zero-mean multivariate normal N(0, Sigma).

        -log p(x) = 0.5 log det(Sigma) + 0.5 x^T Sigma^{-1} x + k log(sqrt(2 pi))

    Parameters
    ----------
    factor : CovarianceFactor
        Factorization of Sigma.
    x : np.ndarray
        Point of evaluation, shape (k,).

    Returns
    -------
    float
        Negative log-density at `x`.
    """

    x = np.atleast_1d(x)
    k = x.shape[0]

    return 0.5 * factor.log_det + 0.5 * quad_form(factor, x) + k * LOG_SQRT_2PI

