"""Tests for multi-step prediction and the planning objectives."""

import numpy as np
import pytest

from narx_efe import (
    ConfigurationError,
    GoalSpecification,
    NumericalError,
    crossentropy,
    expected_free_energy,
    mutualinfo,
    posterior_predictive,
    predict,
    predictive_variance,
    quadratic_cost,
    scan_objective,
)
from narx_efe.objectives import gaussian_crossentropy


# ============================================================================
# Goals
# ============================================================================


class TestGoalSpecification:
    """Validation and windowing of goal sequences."""

    def test_constant(self):
        goals = GoalSpecification.constant(1.0, 0.5, 4)
        assert len(goals) == 4
        assert goals[2] == (1.0, 0.5)

    def test_from_pairs(self):
        goals = GoalSpecification.from_pairs([(0.0, 1.0), (1.0, 2.0)])
        np.testing.assert_array_equal(goals.means, [0.0, 1.0])
        np.testing.assert_array_equal(goals.variances, [1.0, 2.0])

    @pytest.mark.parametrize("means,variances", [
        ([0.0, 1.0], [1.0]),
        ([0.0], [0.0]),
        ([0.0], [-1.0]),
        ([np.nan], [1.0]),
        ([], []),
    ])
    def test_malformed_goals(self, means, variances):
        with pytest.raises(ConfigurationError):
            GoalSpecification(np.array(means), np.array(variances))

    def test_window_pads_with_last_goal(self):
        goals = GoalSpecification(np.arange(4.0), np.ones(4))
        window = goals.window(2, 4)
        np.testing.assert_array_equal(window.means, [2.0, 3.0, 3.0, 3.0])

    def test_require(self):
        goals = GoalSpecification.constant(0.0, 1.0, 3)
        goals.require(3)
        with pytest.raises(ConfigurationError):
            goals.require(4)


# ============================================================================
# Predictive propagation
# ============================================================================


class TestPredict:
    """Multi-step forecasts under a fixed belief."""

    def test_horizon_one_matches_closed_form(self, trained_agent, basis):
        belief = trained_agent.belief
        u = 0.37
        phi = basis.expand(belief.regressor(u))
        _, m, _ = posterior_predictive(belief, phi)

        trace = predict(belief, [u], basis, horizon=1)
        assert trace.means[0] == pytest.approx(m)
        assert trace.variances[0] == pytest.approx(predictive_variance(belief, phi))

    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_variance_non_decreasing(self, trained_agent, basis, seed):
        policy = np.random.RandomState(seed).uniform(-1, 1, size=12)
        trace = predict(trained_agent.belief, policy, basis)
        assert trace.horizon == 12
        assert np.all(np.diff(trace.variances) >= 0)
        assert np.all(trace.variances > 0)

    def test_belief_not_mutated(self, trained_agent, basis):
        belief = trained_agent.belief
        mu = belief.mu.copy()
        ys = belief.ybuffer.values().copy()
        us = belief.ubuffer.values().copy()
        t = belief.t

        predict(belief, np.full(5, 0.8), basis)

        np.testing.assert_array_equal(belief.mu, mu)
        np.testing.assert_array_equal(belief.ybuffer.values(), ys)
        np.testing.assert_array_equal(belief.ubuffer.values(), us)
        assert belief.t == t

    def test_means_feed_back(self, trained_agent, basis):
        """Step 2 uses the step-1 predicted mean as the newest output."""
        belief = trained_agent.belief
        policy = [0.1, -0.2]
        trace = predict(belief, policy, basis)

        regressor = np.concatenate([
            [trace.means[0], belief.ybuffer.values()[0]],
            [policy[1], policy[0], belief.ubuffer.values()[0]],
        ])
        np.testing.assert_allclose(trace.features[1], basis.expand(regressor))
        assert trace.means[1] == pytest.approx(belief.mu @ basis.expand(regressor))

    def test_diverging_forecast_is_fatal(self, trained_agent, basis):
        with pytest.raises(NumericalError):
            predict(trained_agent.belief, np.full(30, 1e60), basis)

    def test_policy_length_must_match_horizon(self, trained_agent, basis):
        with pytest.raises(ConfigurationError):
            predict(trained_agent.belief, [0.0, 0.0, 0.0], basis, horizon=5)


# ============================================================================
# Pointwise objectives
# ============================================================================


class TestPointwiseObjectives:
    """Cross-entropy and mutual information for a single control."""

    def test_mutualinfo_non_negative(self, trained_agent, belief, basis):
        for b in (trained_agent.belief, belief):
            for u in np.linspace(-1, 1, 41):
                assert mutualinfo(b, b.ybuffer, b.ubuffer, u, basis) >= 0

    def test_mutualinfo_shrinks_with_data(self, belief, trained_agent, basis):
        fresh = mutualinfo(belief, belief.ybuffer, belief.ubuffer, 0.5, basis)
        trained = trained_agent.mutualinfo(0.5)
        assert trained < fresh

    def test_crossentropy_closed_form(self, trained_agent, basis):
        belief = trained_agent.belief
        u, goal = -0.3, (0.5, 0.2)
        phi = basis.expand(belief.regressor(u))
        _, m, _ = posterior_predictive(belief, phi)
        v = predictive_variance(belief, phi)

        expected = 0.5 * np.log(2 * np.pi * 0.2) + (v + (m - 0.5) ** 2) / (2 * 0.2)
        value = crossentropy(belief, belief.ybuffer, belief.ubuffer, goal, u, basis)
        assert value == pytest.approx(expected)

    def test_buffers_as_arrays(self, trained_agent, basis):
        belief = trained_agent.belief
        ys, us = belief.ybuffer.values(), belief.ubuffer.values()
        a = crossentropy(belief, ys, us, (0.0, 1.0), 0.2, basis)
        b = crossentropy(belief, belief.ybuffer, belief.ubuffer, (0.0, 1.0), 0.2, basis)
        assert a == b

    def test_crossentropy_smooth_in_u(self, trained_agent):
        """Nearby controls give nearby values (finite-difference friendly)."""
        values = [trained_agent.crossentropy(u, (0.5, 0.1)) for u in (0.2, 0.2 + 1e-6)]
        assert abs(values[1] - values[0]) < 1e-3


# ============================================================================
# Horizon objectives
# ============================================================================


class TestHorizonObjectives:
    """EFE and QCR summed over the horizon."""

    def test_efe_decomposition(self, trained_agent, basis, goals):
        belief = trained_agent.belief
        policy = np.array([0.2, -0.1, 0.4, 0.0, -0.3])
        eta = 0.7

        trace = predict(belief, policy, basis)
        ce = gaussian_crossentropy(trace.means, trace.variances, goals.means[:5], goals.variances[:5])
        expected = ce.sum() - trace.mutual_info.sum() + eta * np.sum(policy ** 2)

        assert expected_free_energy(belief, policy, goals, basis, eta) == pytest.approx(expected)

    def test_qcr_decomposition(self, trained_agent, basis, goals):
        belief = trained_agent.belief
        policy = np.array([0.2, -0.1, 0.4, 0.0, -0.3])

        trace = predict(belief, policy, basis)
        expected = np.sum((trace.means - 0.5) ** 2 / (2 * 0.1)) + 0.3 * np.sum(policy ** 2)

        assert quadratic_cost(belief, policy, goals, basis, 0.3) == pytest.approx(expected)

    def test_qcr_reduces_to_regularizer_for_vague_goal(self, trained_agent, basis):
        vague = GoalSpecification.constant(0.0, 1e12, 5)
        policy = np.full(5, 0.5)
        value = quadratic_cost(trained_agent.belief, policy, vague, basis, eta=2.0)
        assert value == pytest.approx(2.0 * 5 * 0.25, rel=1e-6)

    def test_goals_too_short(self, trained_agent, basis):
        short = GoalSpecification.constant(0.0, 1.0, 2)
        with pytest.raises(ConfigurationError):
            expected_free_energy(trained_agent.belief, np.zeros(5), short, basis)


# ============================================================================
# Dense scan
# ============================================================================


class TestScan:
    """Grid evaluation of the one-step terms."""

    def test_parallel_matches_serial(self, trained_agent, basis):
        grid = np.linspace(-1, 1, 33)
        belief = trained_agent.belief
        serial = scan_objective(belief, basis, (0.5, 0.1), grid, eta=0.1)
        parallel = scan_objective(belief, basis, (0.5, 0.1), grid, eta=0.1, n_workers=4)

        np.testing.assert_allclose(serial.efe, parallel.efe)
        np.testing.assert_allclose(serial.qcr, parallel.qcr)

    def test_matches_pointwise(self, trained_agent, basis):
        belief = trained_agent.belief
        grid = np.array([-0.5, 0.0, 0.5])
        scan = scan_objective(belief, basis, (0.5, 0.1), grid)
        for u, ce, mi in zip(grid, scan.crossentropy, scan.mutual_info):
            assert ce == pytest.approx(trained_agent.crossentropy(u, (0.5, 0.1)))
            assert mi == pytest.approx(trained_agent.mutualinfo(u))

    def test_best_is_on_grid(self, trained_agent):
        scan = trained_agent.scan((0.5, 0.1), n_points=21)
        assert scan.controls.size == 21
        assert scan.best("efe") in scan.controls
        assert scan.best("qcr") in scan.controls
