import numpy as np
from dataclasses import dataclass, replace
from enum import Enum

from scipy.special import gammaln

from utils.gaussian_utils import (
    CovarianceFactor,
    factorize,
    quad_form,
    gaussian_neg_log_density,
)


class DensityKind(Enum):
    """Which zero-mean density an ObservationDensity evaluates."""

    STUDENT_T = 0
    GAUSSIAN = 1

    @classmethod
    def from_code(cls, code: int) -> "DensityKind":
        """
        Map the integer model selector to a density kind.

            0 -> Student-t
            1 -> Gaussian
        """
        try:
            return cls(int(code))
        except ValueError:
            raise ValueError(
                f"unknown model code {code!r}; expected 0 (Student-t) or 1 (Gaussian)"
            ) from None


def student_t_neg_log_density(
    factor  :   CovarianceFactor,
    x       :   np.ndarray,
    df      :   float
) -> float:
    """
    Negative log-density of a zero-mean multivariate Student-t variable.

    With scale matrix Sigma, degrees of freedom nu and dimension k:

        -log p(x) = lgamma(nu/2) - lgamma((nu + k)/2)
                    + (k/2) log(nu) + k lgamma(1/2)
                    + 0.5 log det(Sigma)
                    + 0.5 (nu + k) log(1 + x^T Sigma^{-1} x / nu)

    (Lange, Little & Taylor 1989.)

    Parameters
    ----------
    factor : CovarianceFactor
        Factorization of the scale matrix Sigma.
    x : np.ndarray
        Point of evaluation, shape (k,).
    df : float
        Degrees of freedom, must be positive.

    Returns
    -------
    float
        Negative log-density at `x`.
    """

    if not df > 0.0:
        raise ValueError(f"degrees of freedom must be positive, got {df}")

    x = np.atleast_1d(x)
    k = x.shape[0]

    return float(
        gammaln(0.5 * df)
        - gammaln(0.5 * (df + k))
        + 0.5 * k * np.log(df)
        + k * gammaln(0.5)
        + 0.5 * factor.log_det
        + 0.5 * (df + k) * np.log1p(quad_form(factor, x) / df)
    )


@dataclass(frozen=True)
class ObservationDensity:
    """
    Zero-mean observation density over a shared covariance factorization.

    The same factorized scale matrix is evaluated either as a multivariate
    Student-t (heavy tails) or as a multivariate normal (light tails),
    depending on `kind`. Switching kind never re-derives the covariance.
    """

    factor  :   CovarianceFactor
    """Factorization of the scale (Student-t) or covariance (Gaussian) matrix."""

    df      :   float
    """Degrees of freedom. Ignored when kind is GAUSSIAN."""

    kind    :   DensityKind = DensityKind.STUDENT_T

    @classmethod
    def from_covariance(
        cls,
        cov     :   np.ndarray,
        df      :   float,
        kind    :   DensityKind = DensityKind.STUDENT_T
    ) -> "ObservationDensity":
        return cls(factor=factorize(cov), df=float(df), kind=kind)

    def with_df(self, df: float) -> "ObservationDensity":
        """Copy of this density with new degrees of freedom."""
        return replace(self, df=float(df))

    def __call__(self, x: np.ndarray) -> float:
        """Evaluate the negative log-density at x."""
        if self.kind is DensityKind.GAUSSIAN:
            return gaussian_neg_log_density(self.factor, x)
        return student_t_neg_log_density(self.factor, x, self.df)
