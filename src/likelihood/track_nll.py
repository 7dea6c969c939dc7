import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional

from likelihood.track_model import TrackData, TrackParameters, LikelihoodConfig, state_index
from models.correlated_velocity import CorrelatedVelocityModel
from models.observation import build_quality_table, effective_df


logger = logging.getLogger(__name__)


@dataclass
class TrackLikelihoodResult:
    """
    Output of one likelihood evaluation.

    `nll` is the objective. Everything else is derived for reporting and
    does not feed back into the likelihood.
    """

    nll                 :   float
    """Total negative log-likelihood."""
    process_nll         :   float
    """Sum of the transition terms."""
    observation_nll     :   float
    """Sum of the masked observation terms."""
    correction          :   np.ndarray
    """(2, Q - 1) corrections on linear scale, exp(log_correction)."""
    sd_obs              :   np.ndarray
    """(2, Q) observation standard deviation per axis and quality class."""
    dfs                 :   np.ndarray
    """(Q,) effective degrees of freedom, exp(df) + min_df."""
    residual_at_numdata :   np.ndarray
    """(2,) raw (lat, lon) observation residual of record numdata, zero if there is none."""


def track_negative_log_likelihood(
    data    :   TrackData,
    params  :   TrackParameters,
    config  :   Optional[LikelihoodConfig] = None
) -> TrackLikelihoodResult:
    """
    Negative log-likelihood of a track under the correlated velocity model.

    Records are visited in order. The latent state advances on each record
    after the first with dt > 0; at such a record the transition from the
    previous state is scored. Records with dt <= 0 reuse the current state
    and add no transition term. The first state has no prior.

    Every record adds an observation term for its fix against the current
    latent position, weighted by

        include[i] * (i < numdata)

    The weights multiply the term and never short-circuit it.

    Parameters
    ----------
    data : TrackData
        Fixes, time gaps, quality classes and inclusion flags.
    params : TrackParameters
        Current parameter values.
    config : LikelihoodConfig, optional
        Degrees-of-freedom floor, density kind and mean form.

    Returns
    -------
    TrackLikelihoodResult
        Total and split negative log-likelihood plus reporting quantities.
    """

    if config is None:
        config = LikelihoodConfig()

    states = state_index(data.dt)
    if data.n > 0 and params.num_states < states[-1] + 1:
        raise ValueError(
            f"track refers to {states[-1] + 1} latent states but mu/vel hold {params.num_states}"
        )

    process = CorrelatedVelocityModel.from_log_params(
        params.logbeta, params.log_sd_state, params.gamma, mean_form=config.mean_form
    )
    table = build_quality_table(
        params.log_sd_obs, params.log_correction, params.df,
        min_df=config.min_df, kind=config.density
    )

    process_nll = 0.0
    observation_nll = 0.0
    residual_at_numdata = np.zeros(2)

    for i in range(data.n):
        s = states[i]

        if s > 0 and data.dt[i] > 0:
            process_nll += process.neg_log_density(
                params.mu[:, s - 1], params.vel[:, s - 1],
                params.mu[:, s], params.vel[:, s],
                data.dt[i],
            )

        obs = np.array([data.lat[i], data.lon[i]]) - params.mu[:, s]

        keep = float(i < params.numdata)
        observation_nll += table[data.qual[i]](obs) * data.include[i] * keep
        residual_at_numdata += float(i == params.numdata) * obs

    nll = process_nll + observation_nll

    logger.debug(
        "track nll %.6g (process %.6g, observation %.6g) over %d records, %d states",
        nll, process_nll, observation_nll, data.n, params.num_states,
    )

    return TrackLikelihoodResult(
        nll=nll,
        process_nll=process_nll,
        observation_nll=observation_nll,
        correction=np.exp(params.log_correction),
        sd_obs=table.sd,
        dfs=effective_df(params.df, config.min_df),
        residual_at_numdata=residual_at_numdata,
    )


def track_nll(
    data    :   TrackData,
    params  :   TrackParameters,
    config  :   Optional[LikelihoodConfig] = None
) -> float:
    """Scalar objective for an optimizer."""
    return track_negative_log_likelihood(data, params, config).nll
