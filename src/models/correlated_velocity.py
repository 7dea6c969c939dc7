import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from utils.gaussian_utils import Gaussian, factorize, gaussian_neg_log_density


class MeanForm(Enum):
    """
    How the predicted position offset is computed.

    LITERAL
        p0 + v0 * (1 - exp(-beta dt) / beta)
        Bit-compatible with the established likelihood.
    INTEGRATED
        p0 + v0 * (1 - exp(-beta dt)) / beta
        Tends to p0 + v0 dt as beta -> 0.
    """

    LITERAL = "literal"
    INTEGRATED = "integrated"


def crw_mean(
    p0          :   float,
    v0          :   float,
    beta        :   float,
    gamma       :   float,
    dt          :   float,
    mean_form   :   MeanForm = MeanForm.LITERAL
) -> Tuple[float, float]:
    """
    Predicted (position, velocity) of one axis after a gap dt.

    Velocity mean-reverts towards the drift gamma at rate beta:

        E[v(dt)] = gamma + exp(-beta dt) (v0 - gamma)

    Position follows `mean_form`.

    Returns
    -------
    Tuple[float, float]
        Predicted position and velocity.
    """

    decay = np.exp(-beta * dt)

    if mean_form is MeanForm.INTEGRATED:
        mean_pos = p0 + v0 * (-np.expm1(-beta * dt)) / beta
    else:
        mean_pos = p0 + v0 * (1.0 - decay / beta)

    mean_vel = gamma + decay * (v0 - gamma)

    return mean_pos, mean_vel


_SERIES_CUTOFF = 1e-2


def _pos_variance_factor(x: float) -> float:
    """
    (x - 2 (1 - e^{-x}) + (1 - e^{-2x}) / 2) / x^3

    Below the cutoff the closed form cancels catastrophically, so the Taylor
    series 1/3 - x/4 + 7x^2/60 - x^3/24 + ... is summed instead. The
    coefficient of x^(n-3) is (-1)^n (2 - 2^(n-1)) / n!.
    """

    if x < _SERIES_CUTOFF:
        total = 0.0
        term = 1.0 / 6.0          # 1 / n! at n = 3
        for n in range(3, 13):
            total += (-1) ** n * (2.0 - 2.0 ** (n - 1)) * term * x ** (n - 3)
            term /= n + 1
        return total

    return (x + 2.0 * np.expm1(-x) - 0.5 * np.expm1(-2.0 * x)) / x**3


def crw_cov_block(
    beta        :   float,
    var_state   :   float,
    dt          :   float
) -> np.ndarray:
    """
    2x2 transition covariance of (position, velocity) for one axis.

    Closed-form Ornstein-Uhlenbeck integrals over a gap dt:

        Var(pos)     = s2 / beta^2 * (dt - 2 (1 - e^{-b dt}) / beta + (1 - e^{-2 b dt}) / (2 beta))
        Var(vel)     = s2 * (1 - e^{-2 b dt}) / (2 beta)
        Cov(pos,vel) = s2 * (1 - 2 e^{-b dt} + e^{-2 b dt}) / (2 beta^2)

    where s2 = var_state. Var(pos) is evaluated as s2 dt^3 f(beta dt) with
    f(x) -> 1/3 as x -> 0, so it stays positive for small gaps and slow
    mean reversion. The matrix vanishes as dt -> 0.
    """

    one_minus_e1 = -np.expm1(-beta * dt)
    one_minus_e2 = -np.expm1(-2.0 * beta * dt)

    var_pos = var_state * dt**3 * _pos_variance_factor(beta * dt)
    var_vel = var_state * one_minus_e2 / (2.0 * beta)
    # 1 - 2e^{-x} + e^{-2x} = (1 - e^{-x})^2
    cov_pv = var_state * one_minus_e1**2 / (2.0 * beta**2)

    return np.array([
        [var_pos,   cov_pv],
        [cov_pv,    var_vel]
    ])


def stack_state(pos: np.ndarray, vel: np.ndarray) -> np.ndarray:
    """Interleave per-axis position and velocity as [pos_0, vel_0, pos_1, vel_1]."""
    return np.array([pos[0], vel[0], pos[1], vel[1]], dtype=float)


@dataclass
class CorrelatedVelocityModel:
    """
    Continuous-time correlated velocity process for two independent axes.

    State per record (axis 0 first, then axis 1):
        x = [pos_0, vel_0, pos_1, vel_1]

    The axes share no parameters and are uncoupled, so the transition
    covariance is block diagonal with one 2x2 block per axis.
    """

    beta        :   np.ndarray
    """(2,) mean-reversion rates, positive."""
    var_state   :   np.ndarray
    """(2,) process variance rates."""
    gamma       :   np.ndarray
    """(2,) asymptotic velocity drift."""
    mean_form   :   MeanForm = MeanForm.LITERAL

    @classmethod
    def from_log_params(
        cls,
        logbeta         :   np.ndarray,
        log_sd_state    :   np.ndarray,
        gamma           :   np.ndarray,
        mean_form       :   MeanForm = MeanForm.LITERAL
    ) -> "CorrelatedVelocityModel":
        """Build the model from unconstrained log-scale parameters."""
        return cls(
            beta=np.exp(np.asarray(logbeta, dtype=float)),
            var_state=np.exp(2.0 * np.asarray(log_sd_state, dtype=float)),
            gamma=np.asarray(gamma, dtype=float),
            mean_form=mean_form,
        )

    def predict(
        self,
        pos_prev    :   np.ndarray,
        vel_prev    :   np.ndarray,
        dt          :   float
    ) -> Gaussian:
        """
        Transition distribution of the 4-dim state after a gap dt.

        Parameters
        ----------
        pos_prev : np.ndarray
            (2,) previous latent position per axis.
        vel_prev : np.ndarray
            (2,) previous latent velocity per axis.
        dt : float
            Time gap, non-negative.

        Returns
        -------
        Gaussian
            Predicted mean [pos_0, vel_0, pos_1, vel_1] and 4x4 covariance.
        """

        mean = np.zeros(4)
        cov = np.zeros((4, 4))

        for c in range(2):
            mean[2 * c], mean[2 * c + 1] = crw_mean(
                pos_prev[c], vel_prev[c], self.beta[c], self.gamma[c], dt, self.mean_form
            )
            cov[2 * c:2 * c + 2, 2 * c:2 * c + 2] = crw_cov_block(self.beta[c], self.var_state[c], dt)

        return Gaussian(mean, cov)

    def residual(
        self,
        pos_prev    :   np.ndarray,
        vel_prev    :   np.ndarray,
        pos_curr    :   np.ndarray,
        vel_curr    :   np.ndarray,
        dt          :   float
    ) -> np.ndarray:
        """Actual minus predicted state, ordered [pos_0, vel_0, pos_1, vel_1]."""

        return stack_state(pos_curr, vel_curr) - self.predict(pos_prev, vel_prev, dt).mean

    def neg_log_density(
        self,
        pos_prev    :   np.ndarray,
        vel_prev    :   np.ndarray,
        pos_curr    :   np.ndarray,
        vel_curr    :   np.ndarray,
        dt          :   float
    ) -> float:
        """
        Negative log transition density of the current latent state given
        the previous one, across a gap dt > 0.
        """

        predicted = self.predict(pos_prev, vel_prev, dt)
        residual = stack_state(pos_curr, vel_curr) - predicted.mean

        return gaussian_neg_log_density(factorize(predicted.cov), residual)
