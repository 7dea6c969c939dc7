import numpy as np
from dataclasses import dataclass
from typing import Optional

from densities.student_t import DensityKind
from likelihood.track_model import TrackData, TrackParameters, LikelihoodConfig, state_index
from models.correlated_velocity import CorrelatedVelocityModel
from models.observation import observation_variances, effective_df


@dataclass
class SimulatedTrack:
    """Synthetic track together with the latent states that generated it."""

    data    :   TrackData
    mu      :   np.ndarray
    """(2, num_states) true latent positions."""
    vel     :   np.ndarray
    """(2, num_states) true latent velocities."""


def propagate_state(
    x_prev  :   np.ndarray,
    dt      :   float,
    model   :   CorrelatedVelocityModel,
    rng     :   np.random.Generator
) -> np.ndarray:
    """
    Draw the next latent state across a gap dt > 0.

    State layout:
        x = [pos_0, vel_0, pos_1, vel_1]
    """

    predicted = model.predict(x_prev[[0, 2]], x_prev[[1, 3]], dt)

    return rng.multivariate_normal(mean=predicted.mean, cov=predicted.cov)


def observe_fix(
    pos     :   np.ndarray,
    var     :   np.ndarray,
    df      :   float,
    kind    :   DensityKind,
    rng     :   np.random.Generator
) -> np.ndarray:
    """
    Noisy (lat, lon) fix of a latent position.

    Gaussian noise with diagonal covariance diag(var), or for Student-t the
    same draw divided by sqrt(chi2_df / df).
    """

    v = rng.multivariate_normal(mean=np.zeros(2), cov=np.diag(var))

    if kind is DensityKind.STUDENT_T:
        v = v / np.sqrt(rng.chisquare(df) / df)

    return pos + v


def simulate_track(
    dt          :   np.ndarray,
    qual        :   np.ndarray,
    params      :   TrackParameters,
    rng         :   np.random.Generator,
    config      :   Optional[LikelihoodConfig] = None,
    x0          :   Optional[np.ndarray] = None
) -> SimulatedTrack:
    """
    Simulate a track from the correlated velocity model.

    The latent state is propagated once per record with dt > 0 (after the
    first record) and every record draws a fix from its quality class.
    Only the process and observation parameters of `params` are used; its
    mu/vel are ignored.

    Parameters
    ----------
    dt : np.ndarray
        (n,) time gaps.
    qual : np.ndarray
        (n,) quality classes.
    params : TrackParameters
        Process and observation parameters.
    rng : np.random.Generator
        Random number generator.
    config : LikelihoodConfig, optional
        Observation density kind, df floor and mean form.
    x0 : np.ndarray, optional
        Initial state [pos_0, vel_0, pos_1, vel_1]. Defaults to zeros.

    Returns
    -------
    SimulatedTrack
        Observed data and the true latent states.
    """

    if config is None:
        config = LikelihoodConfig()

    dt = np.asarray(dt, dtype=float)
    qual = np.asarray(qual, dtype=int)
    states = state_index(dt)
    S = int(states[-1]) + 1 if states.shape[0] > 0 else 0

    model = CorrelatedVelocityModel.from_log_params(
        params.logbeta, params.log_sd_state, params.gamma, mean_form=config.mean_form
    )
    variances = observation_variances(params.log_sd_obs, params.log_correction)
    dfs = effective_df(params.df, config.min_df)

    # Allocate storage
    x_true = np.zeros((S, 4))
    fixes = np.zeros((dt.shape[0], 2))

    # Initial condition
    if S > 0:
        x_true[0] = np.zeros(4) if x0 is None else np.asarray(x0, dtype=float)

    for i in range(dt.shape[0]):
        s = states[i]
        if s > 0 and dt[i] > 0:
            x_true[s] = propagate_state(x_true[s - 1], dt[i], model, rng)

        fixes[i] = observe_fix(x_true[s, [0, 2]], variances[:, qual[i]], dfs[qual[i]], config.density, rng)

    data = TrackData(lat=fixes[:, 0], lon=fixes[:, 1], dt=dt, qual=qual)

    return SimulatedTrack(data=data, mu=x_true[:, [0, 2]].T, vel=x_true[:, [1, 3]].T)
