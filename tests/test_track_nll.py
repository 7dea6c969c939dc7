"""Tests for the track likelihood orchestrator."""
import numpy as np
import pytest

from densities.student_t import DensityKind, student_t_neg_log_density
from likelihood.track_model import LikelihoodConfig, TrackData, TrackParameters
from likelihood.track_nll import track_negative_log_likelihood, track_nll
from models.correlated_velocity import CorrelatedVelocityModel
from utils.gaussian_utils import factorize, gaussian_neg_log_density


GAUSSIAN = LikelihoodConfig(density=DensityKind.GAUSSIAN)
LOG_2PI = np.log(2.0 * np.pi)


def make_params(num_states, num_classes=1, **overrides):
    values = dict(
        logbeta=np.zeros(2),
        log_sd_state=np.zeros(2),
        log_sd_obs=np.log([0.5, 2.0]),
        log_correction=np.zeros((2, num_classes - 1)),
        gamma=np.zeros(2),
        mu=np.zeros((2, num_states)),
        vel=np.zeros((2, num_states)),
        df=np.zeros(num_classes),
    )
    values.update(overrides)
    return TrackParameters(**values)


def random_track(n=6, seed=0):
    rng = np.random.default_rng(seed)
    dt = np.array([0.0, 1.0, 0.0, 0.5, 2.0, 0.0])[:n]
    data = TrackData(
        lat=rng.normal(size=n),
        lon=rng.normal(size=n),
        dt=dt,
        qual=np.array([0, 1, 2, 1, 0, 2])[:n],
    )
    params = make_params(
        data.num_states,
        num_classes=3,
        log_correction=rng.normal(scale=0.3, size=(2, 2)),
        mu=rng.normal(size=(2, data.num_states)),
        vel=rng.normal(size=(2, data.num_states)),
        gamma=np.array([0.2, -0.1]),
        df=np.array([0.5, 1.0, 2.0]),
    )
    return data, params


class TestHandComputed:
    """Reference values computable by hand."""

    def test_three_records_zero_residual(self):
        data = TrackData(lat=[1.0, 1.0, 1.0], lon=[2.0, 2.0, 2.0], dt=[0.0, 1.0, 1.0], qual=[0, 0, 0])
        params = make_params(3, mu=np.tile([[1.0], [2.0]], 3))

        result = track_negative_log_likelihood(data, params, GAUSSIAN)

        # Observation: Sigma_obs = diag(0.25, 4), logdet = 0
        obs_term = 0.5 * np.log(0.25 * 4.0) + LOG_2PI

        # Process with beta = 1, sigma^2 = 1, dt = 1 on both axes
        e1, e2 = np.exp(-1.0), np.exp(-2.0)
        var_pos = 1.0 - 2.0 * (1.0 - e1) + (1.0 - e2) / 2.0
        var_vel = (1.0 - e2) / 2.0
        cov_pv = (1.0 - 2.0 * e1 + e2) / 2.0
        block_det = var_pos * var_vel - cov_pv**2
        proc_term = 0.5 * 2.0 * np.log(block_det) + 2.0 * LOG_2PI

        assert result.observation_nll == pytest.approx(3 * obs_term, rel=1e-12)
        assert result.process_nll == pytest.approx(2 * proc_term, rel=1e-10)
        assert result.nll == pytest.approx(3 * obs_term + 2 * proc_term, rel=1e-10)

    def test_single_record_has_no_process_term(self):
        data = TrackData(lat=[0.3], lon=[-0.4], dt=[7.0], qual=[0])
        params = make_params(1)

        result = track_negative_log_likelihood(data, params, GAUSSIAN)

        expected = gaussian_neg_log_density(factorize(np.diag([0.25, 4.0])), np.array([0.3, -0.4]))
        assert result.process_nll == 0.0
        assert result.nll == pytest.approx(expected)


class TestStateSequence:
    """Transitions and shared states."""

    def test_duplicate_timestamps_share_state(self):
        data = TrackData(lat=[0.0, 0.1, 1.0, 1.2], lon=[0.0, 0.2, 1.0, 0.9], dt=[0.0, 0.0, 2.0, 0.0], qual=[0, 0, 0, 0])
        params = make_params(2, mu=np.array([[0.05, 1.1], [0.1, 0.95]]), vel=np.array([[0.3, 0.2], [0.1, -0.1]]))

        result = track_negative_log_likelihood(data, params, GAUSSIAN)

        process = CorrelatedVelocityModel.from_log_params(params.logbeta, params.log_sd_state, params.gamma)
        expected_process = process.neg_log_density(params.mu[:, 0], params.vel[:, 0], params.mu[:, 1], params.vel[:, 1], 2.0)
        assert result.process_nll == pytest.approx(expected_process)

        F = factorize(np.diag([0.25, 4.0]))
        fixes = np.column_stack([data.lat, data.lon])
        predicted = params.mu[:, [0, 0, 1, 1]].T
        expected_obs = sum(gaussian_neg_log_density(F, r) for r in fixes - predicted)
        assert result.observation_nll == pytest.approx(expected_obs)

    def test_unused_state_columns_ignored(self):
        data = TrackData(lat=[0.0, 1.0], lon=[0.0, 1.0], dt=[0.0, 1.0], qual=[0, 0])
        small = make_params(2, mu=np.ones((2, 2)))
        large = make_params(4, mu=np.column_stack([np.ones((2, 2)), np.full((2, 2), 50.0)]))
        assert track_nll(data, small) == track_nll(data, large)

    def test_too_few_states(self):
        data = TrackData(lat=[0.0, 1.0, 2.0], lon=[0.0, 1.0, 2.0], dt=[0.0, 1.0, 1.0], qual=[0, 0, 0])
        with pytest.raises(ValueError, match="3 latent states"):
            track_nll(data, make_params(2))


class TestMasking:
    """Inclusion flags and the numdata prefix."""

    def test_excluded_record_contributes_nothing(self):
        data, params = random_track()
        include = np.array([1.0, 1.0, 0.0, 1.0, 1.0, 1.0])
        masked = TrackData(lat=data.lat, lon=data.lon, dt=data.dt, qual=data.qual, include=include)

        moved_lat = data.lat.copy()
        moved_lat[2] += 1e3
        moved = TrackData(lat=moved_lat, lon=data.lon, dt=data.dt, qual=data.qual, include=include)

        assert track_nll(masked, params) == track_nll(moved, params)

    def test_excluded_record_term_is_zero(self):
        data, params = random_track()
        include = np.ones(data.n)
        include[4] = 0.0
        masked = TrackData(lat=data.lat, lon=data.lon, dt=data.dt, qual=data.qual, include=include)

        full = track_negative_log_likelihood(data, params)
        part = track_negative_log_likelihood(masked, params)

        table_term = full.observation_nll - part.observation_nll
        s = 3  # record 4 is the first record of the fourth state
        dens_df = np.exp(params.df[0])
        expected = student_t_neg_log_density(
            factorize(np.diag(np.exp(2.0 * params.log_sd_obs))),
            np.array([data.lat[4], data.lon[4]]) - params.mu[:, s],
            dens_df,
        )
        assert table_term == pytest.approx(expected)
        assert full.process_nll == part.process_nll

    def test_numdata_scores_prefix(self):
        data, params = random_track()
        m = 3
        params.numdata = m

        result = track_negative_log_likelihood(data, params)

        prefix = TrackData(lat=data.lat, lon=data.lon, dt=data.dt, qual=data.qual,
                           include=(np.arange(data.n) < m).astype(float))
        params_all = TrackParameters.from_vector(params.to_vector(), like=params)
        params_all.numdata = np.inf
        assert result.nll == pytest.approx(track_nll(prefix, params_all))

    def test_numdata_residual(self):
        data, params = random_track()
        params.numdata = 3

        result = track_negative_log_likelihood(data, params)

        # record 3 belongs to state 2
        expected = np.array([data.lat[3], data.lon[3]]) - params.mu[:, 2]
        np.testing.assert_array_equal(result.residual_at_numdata, expected)

    def test_residual_zero_without_match(self):
        data, params = random_track()
        np.testing.assert_array_equal(track_negative_log_likelihood(data, params).residual_at_numdata, 0.0)


class TestDensitySelection:
    """Student-t versus Gaussian observations."""

    def test_gaussian_observation_terms(self):
        data, params = random_track()
        result = track_negative_log_likelihood(data, params, GAUSSIAN)

        var = np.exp(2.0 * np.column_stack([params.log_sd_obs, params.log_sd_obs[:, None] + params.log_correction]))
        expected = 0.0
        for i, s in enumerate([0, 1, 1, 2, 3, 3]):
            F = factorize(np.diag(var[:, data.qual[i]]))
            expected += gaussian_neg_log_density(F, np.array([data.lat[i], data.lon[i]]) - params.mu[:, s])
        assert result.observation_nll == pytest.approx(expected)

    def test_large_df_approaches_gaussian(self):
        data, params = random_track()
        params.df = np.full(3, np.log(1e7))
        t_nll = track_nll(data, params)
        n_nll = track_nll(data, params, GAUSSIAN)
        assert t_nll == pytest.approx(n_nll, abs=1e-3)

    def test_process_term_independent_of_density(self):
        data, params = random_track()
        a = track_negative_log_likelihood(data, params)
        b = track_negative_log_likelihood(data, params, GAUSSIAN)
        assert a.process_nll == b.process_nll


class TestReporting:
    """Derived quantities."""

    def test_reported_values(self):
        data, params = random_track()
        config = LikelihoodConfig(min_df=2.0)
        result = track_negative_log_likelihood(data, params, config)

        np.testing.assert_allclose(result.correction, np.exp(params.log_correction))
        np.testing.assert_allclose(result.dfs, np.exp(params.df) + 2.0)
        np.testing.assert_allclose(result.sd_obs[:, 0], np.exp(params.log_sd_obs))
        np.testing.assert_allclose(result.sd_obs[:, 1:], np.exp(params.log_sd_obs)[:, None] * result.correction)

    def test_observation_scale_follows_parameters(self):
        data = TrackData(lat=[3.0], lon=[4.0], dt=[0.0], qual=[0])
        params = make_params(1, log_sd_obs=np.log([5.0, 5.0]))

        result = track_negative_log_likelihood(data, params, GAUSSIAN)

        np.testing.assert_allclose(result.sd_obs, [[5.0], [5.0]])
        expected = 0.5 * np.log(25.0 * 25.0) + 0.5 * (9.0 + 16.0) / 25.0 + LOG_2PI
        assert result.nll == pytest.approx(expected, rel=1e-12)

    def test_no_external_table_argument(self):
        data, params = random_track()
        with pytest.raises(TypeError):
            track_negative_log_likelihood(data, params, table={})

    def test_repeatable(self):
        data, params = random_track()
        a = track_negative_log_likelihood(data, params)
        b = track_negative_log_likelihood(data, params)
        assert a.nll == b.nll
        assert track_nll(data, params) == a.nll


class TestErrors:
    """Fatal conditions."""

    def test_unknown_quality_class(self):
        data = TrackData(lat=[0.0, 1.0], lon=[0.0, 1.0], dt=[0.0, 1.0], qual=[0, 1])
        with pytest.raises(IndexError, match="quality class 1"):
            track_nll(data, make_params(2, num_classes=1))

    def test_degenerate_observation_variance(self):
        data = TrackData(lat=[0.0], lon=[0.0], dt=[0.0], qual=[0])
        params = make_params(1, log_sd_obs=np.array([-np.inf, 0.0]))
        with pytest.raises(np.linalg.LinAlgError):
            track_nll(data, params)
