import numpy as np
from dataclasses import dataclass
from typing import Tuple

from densities.student_t import DensityKind, ObservationDensity


def observation_variances(
    log_sd_obs      :   np.ndarray,
    log_correction  :   np.ndarray
) -> np.ndarray:
    """
    Observation variance per axis and quality class.

        var[a, 0] = exp(2 * log_sd_obs[a])
        var[a, q] = exp(2 * (log_sd_obs[a] + log_correction[a, q - 1]))   q >= 1

    Quality class 0 is the reference class and carries no correction.

    Parameters
    ----------
    log_sd_obs : np.ndarray
        (2,) baseline log standard deviations (lat, lon).
    log_correction : np.ndarray
        (2, Q - 1) log-scale multiplicative corrections for the
        non-reference classes.

    Returns
    -------
    np.ndarray
        (2, Q) variances.
    """

    log_sd_obs = np.asarray(log_sd_obs, dtype=float)
    log_correction = np.asarray(log_correction, dtype=float).reshape(log_sd_obs.shape[0], -1)

    log_sd = np.column_stack([log_sd_obs, log_sd_obs[:, None] + log_correction])

    return np.exp(2.0 * log_sd)


@dataclass(frozen=True)
class QualityClassTable:
    """
    One observation density per quality class, built once per evaluation.

    Indexed by the (small, non-negative) quality class of a record.
    """

    densities   :   Tuple[ObservationDensity, ...]
    variances   :   np.ndarray
    """(2, Q) per-axis observation variances, column q for class q."""

    def __len__(self) -> int:
        return len(self.densities)

    def _index(self, q: int) -> int:
        q = int(q)
        if not 0 <= q < len(self.densities):
            raise IndexError(
                f"quality class {q} out of range for {len(self.densities)} classes"
            )
        return q

    def __getitem__(self, q: int) -> ObservationDensity:
        return self.densities[self._index(q)]

    @property
    def sd(self) -> np.ndarray:
        """(2, Q) observation standard deviations."""
        return np.sqrt(self.variances)

    def cov(self, q: int) -> np.ndarray:
        """Diagonal 2x2 observation covariance of class q."""
        return np.diag(self.variances[:, self._index(q)])


def build_quality_table(
    log_sd_obs      :   np.ndarray,
    log_correction  :   np.ndarray,
    df              :   np.ndarray,
    min_df          :   float = 0.0,
    kind            :   DensityKind = DensityKind.STUDENT_T
) -> QualityClassTable:
    """
    Build the per-class observation densities.

    Degrees of freedom are reparameterized as exp(df[q]) + min_df so that
    any real df keeps nu above the floor. The same `kind` is used for
    every class.
    """

    variances = observation_variances(log_sd_obs, log_correction)
    dfs = effective_df(df, min_df)

    if dfs.shape[0] != variances.shape[1]:
        raise ValueError(
            f"got {dfs.shape[0]} degrees-of-freedom parameters for {variances.shape[1]} quality classes"
        )

    densities = tuple(
        ObservationDensity.from_covariance(np.diag(variances[:, q]), dfs[q], kind)
        for q in range(variances.shape[1])
    )

    return QualityClassTable(densities=densities, variances=variances)


def effective_df(df: np.ndarray, min_df: float = 0.0) -> np.ndarray:
    return np.exp(np.atleast_1d(np.asarray(df, dtype=float))) + min_df
