import logging
import numpy as np
from dataclasses import dataclass, fields
from typing import Optional

from densities.student_t import DensityKind
from models.correlated_velocity import MeanForm


logger = logging.getLogger(__name__)


def state_index(dt: np.ndarray) -> np.ndarray:
    """
    Latent-state column used by each record.

    The counter advances on every record after the first whose time gap is
    positive. Records with dt <= 0 share the state of the record before them.
    """

    dt = np.asarray(dt, dtype=float)
    advances = dt > 0
    if advances.shape[0] > 0:
        advances[0] = False

    return np.cumsum(advances)


@dataclass
class TrackData:
    """
    An irregularly sampled track of quality-graded location fixes.

    One entry per record, in time order.
    """

    lat     :   np.ndarray
    """(n,) observed latitude."""
    lon     :   np.ndarray
    """(n,) observed longitude."""
    dt      :   np.ndarray
    """(n,) time since the previous record. dt == 0 marks a duplicate timestamp."""
    qual    :   np.ndarray
    """(n,) integer quality class, 0 is the reference class."""
    include :   Optional[np.ndarray] = None
    """(n,) 0/1 weight of each record's observation term. Defaults to all ones."""

    def __post_init__(self):
        self.lat = np.asarray(self.lat, dtype=float)
        self.lon = np.asarray(self.lon, dtype=float)
        self.dt = np.asarray(self.dt, dtype=float)
        self.qual = np.asarray(self.qual, dtype=int)

        if self.include is None:
            self.include = np.ones(self.lat.shape[0])
        self.include = np.asarray(self.include, dtype=float)

        n = self.lat.shape[0] if self.lat.ndim == 1 else -1
        for f in fields(self):
            value = getattr(self, f.name)
            if value.ndim != 1 or value.shape[0] != n:
                raise ValueError(
                    f"{f.name} must be a 1-D array of length {n}, got shape {value.shape}"
                )

        if np.any(self.qual < 0):
            raise ValueError("quality classes must be non-negative")

        if np.any(self.dt < 0):
            logger.warning(
                "%d negative time gaps; those records get no process term",
                int(np.sum(self.dt < 0)),
            )

    @property
    def n(self) -> int:
        return self.lat.shape[0]

    @property
    def num_states(self) -> int:
        """Number of distinct latent states the records refer to."""
        if self.n == 0:
            return 0
        return int(state_index(self.dt)[-1]) + 1

    @property
    def num_quality_classes(self) -> int:
        """Smallest table size that covers every observed quality class."""
        if self.n == 0:
            return 1
        return int(self.qual.max()) + 1


@dataclass
class TrackParameters:
    """
    Unconstrained model parameters.

    Scale parameters are on log scale so that any real vector is valid;
    rows of the (2, .) matrices are the two axes, latitude first.
    """

    logbeta         :   np.ndarray
    """(2,) log mean-reversion rates."""
    log_sd_state    :   np.ndarray
    """(2,) log process standard deviations."""
    log_sd_obs      :   np.ndarray
    """(2,) log baseline observation standard deviations."""
    log_correction  :   np.ndarray
    """(2, Q - 1) log corrections for the non-reference quality classes."""
    gamma           :   np.ndarray
    """(2,) asymptotic velocity drift."""
    mu              :   np.ndarray
    """(2, num_states) latent positions."""
    vel             :   np.ndarray
    """(2, num_states) latent velocities."""
    df              :   np.ndarray
    """(Q,) raw degrees of freedom, nu = exp(df) + min_df."""
    numdata         :   float = np.inf
    """Records with index < numdata are scored; the residual at index numdata is reported."""

    def __post_init__(self):
        for name in ("logbeta", "log_sd_state", "log_sd_obs", "gamma", "df"):
            setattr(self, name, np.atleast_1d(np.asarray(getattr(self, name), dtype=float)))
        for name in ("mu", "vel"):
            setattr(self, name, np.atleast_2d(np.asarray(getattr(self, name), dtype=float)))
        self.log_correction = np.asarray(self.log_correction, dtype=float).reshape(2, -1)
        self.numdata = float(self.numdata)

        for name in ("logbeta", "log_sd_state", "log_sd_obs", "gamma"):
            if getattr(self, name).shape != (2,):
                raise ValueError(f"{name} must have length 2, got shape {getattr(self, name).shape}")

        if self.mu.shape[0] != 2 or self.mu.shape != self.vel.shape:
            raise ValueError(
                f"mu and vel must both have shape (2, num_states), got {self.mu.shape} and {self.vel.shape}"
            )

        if self.df.shape[0] != self.log_correction.shape[1] + 1:
            raise ValueError(
                f"df has {self.df.shape[0]} entries but log_correction describes "
                f"{self.log_correction.shape[1] + 1} quality classes"
            )

    @property
    def num_quality_classes(self) -> int:
        return self.df.shape[0]

    @property
    def num_states(self) -> int:
        return self.mu.shape[1]

    @staticmethod
    def init_from_data(
        data                :   TrackData,
        num_quality_classes :   Optional[int] = None,
        log_sd_obs          :   Optional[np.ndarray] = None
    ) -> "TrackParameters":
        """
        Starting point for an optimizer, read off the data.

        Latent positions start at the mean fix of each state, velocities at
        the finite-difference speed between consecutive states, the process
        at beta = 1 with unit variance, the observation noise at the spread
        of the fixes around their state means, and every class at df = 0.
        """

        if num_quality_classes is None:
            num_quality_classes = data.num_quality_classes

        states = state_index(data.dt)
        S = data.num_states

        mu = np.zeros((2, S))
        for c, coords in enumerate((data.lat, data.lon)):
            mu[c] = np.bincount(states, weights=coords, minlength=S) / np.bincount(states, minlength=S)

        vel = np.zeros((2, S))
        if S > 1:
            gaps = np.zeros(S)
            gaps[states[data.dt > 0]] = data.dt[data.dt > 0]
            vel[:, 1:] = np.diff(mu, axis=1) / np.where(gaps[1:] > 0, gaps[1:], 1.0)

        if log_sd_obs is None:
            spread = np.array([
                np.std(data.lat - mu[0, states]),
                np.std(data.lon - mu[1, states]),
            ])
            log_sd_obs = np.log(np.where(spread > 0, spread, 1.0))

        return TrackParameters(
            logbeta=np.zeros(2),
            log_sd_state=np.zeros(2),
            log_sd_obs=np.asarray(log_sd_obs, dtype=float),
            log_correction=np.zeros((2, num_quality_classes - 1)),
            gamma=np.zeros(2),
            mu=mu,
            vel=vel,
            df=np.zeros(num_quality_classes),
            numdata=data.n,
        )

    # --------------------------------------------------------
    # Flat parameter vector
    # --------------------------------------------------------
    _VECTOR_FIELDS = ("logbeta", "log_sd_state", "log_sd_obs", "log_correction", "gamma", "mu", "vel", "df")

    def to_vector(self) -> np.ndarray:
        """
        Concatenate all free parameters into one vector.

        numdata is a selector, not a free parameter, and is left out.
        """
        return np.concatenate([np.ravel(getattr(self, name)) for name in self._VECTOR_FIELDS])

    @classmethod
    def from_vector(
        cls,
        theta   :   np.ndarray,
        like    :   "TrackParameters"
    ) -> "TrackParameters":
        """Inverse of to_vector, taking shapes and numdata from `like`."""

        theta = np.asarray(theta, dtype=float)
        values = {}
        offset = 0
        for name in cls._VECTOR_FIELDS:
            shape = getattr(like, name).shape
            size = int(np.prod(shape))
            values[name] = theta[offset:offset + size].reshape(shape)
            offset += size

        if offset != theta.shape[0]:
            raise ValueError(f"expected a vector of length {offset}, got {theta.shape[0]}")

        return cls(numdata=like.numdata, **values)


@dataclass
class LikelihoodConfig:
    """Settings fixed for a whole run."""

    min_df      :   float = 0.0
    """Floor added to exp(df) for every quality class."""
    density     :   DensityKind = DensityKind.STUDENT_T
    """Observation density used for all quality classes."""
    mean_form   :   MeanForm = MeanForm.LITERAL

    @classmethod
    def from_model_code(
        cls,
        model_code  :   int,
        min_df      :   float = 0.0,
        mean_form   :   MeanForm = MeanForm.LITERAL
    ) -> "LikelihoodConfig":
        """Model code 0 selects Student-t observations, 1 selects Gaussian."""
        return cls(min_df=float(min_df), density=DensityKind.from_code(model_code), mean_form=mean_form)
