"""Tests for the reference pendulum and goal schedules."""

import math

import numpy as np
import pytest

from narx_efe import ConfigurationError, Pendulum, SimulatorConfig
from narx_efe.tasks import setpoint_goals, swing_up_goals


class TestPendulum:
    """Dynamics, saturation and sensing."""

    def test_rest_stays_at_rest(self):
        system = Pendulum(sensor_noise=0.0)
        for _ in range(20):
            system.step(0.0)
        np.testing.assert_allclose(system.state, [0.0, 0.0], atol=1e-12)
        assert system.t == 20

    def test_torque_saturates(self):
        system = Pendulum(torque_lims=(-0.5, 0.5))
        system.step(10.0)
        assert system.torque == 0.5
        system.step(-10.0)
        assert system.torque == -0.5

    def test_positive_torque_lifts(self):
        system = Pendulum(sensor_noise=0.0)
        for _ in range(5):
            system.step(1.0)
        assert system.state[0] > 0.0

    def test_noiseless_sensor_reads_angle(self):
        system = Pendulum(sensor_noise=0.0, init_state=(0.3, 0.0))
        assert system.sensor() == 0.3

    def test_seeded_noise_is_reproducible(self):
        a = Pendulum(sensor_noise=0.1, seed=7)
        b = Pendulum(sensor_noise=0.1, seed=7)
        assert [a.sensor() for _ in range(5)] == [b.sensor() for _ in range(5)]

    def test_small_oscillation_period(self):
        """Undamped small swings follow T = 2π sqrt(l/g)."""
        system = Pendulum(damping=0.0, sensor_noise=0.0, dt=0.001, init_state=(0.01, 0.0))
        period = 2 * math.pi * math.sqrt(system.length / system.gravity)
        for _ in range(int(round(period / system.dt))):
            system.step(0.0)
        assert system.state[0] == pytest.approx(0.01, abs=1e-4)

    def test_from_config(self):
        config = SimulatorConfig(mass=1.0, init_state=(0.2, 0.0), seed=3)
        system = Pendulum.from_config(config, torque_lims=(-2.0, 2.0))
        assert system.mass == 1.0
        assert system.torque_lims == (-2.0, 2.0)
        np.testing.assert_array_equal(system.state, [0.2, 0.0])

    @pytest.mark.parametrize("kwargs", [
        {"mass": 0.0},
        {"dt": -0.1},
        {"sensor_noise": -1.0},
        {"torque_lims": (1.0, -1.0)},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ConfigurationError):
            Pendulum(**kwargs)


class TestGoalSchedules:
    """Goal builders for the reference tasks."""

    def test_swing_up(self):
        goals = swing_up_goals(10)
        assert len(goals) == 10
        assert goals[0] == (math.pi, 1e-4)

    def test_setpoints(self):
        goals = setpoint_goals([0.0, 0.5, 1.0], variance=0.2)
        np.testing.assert_array_equal(goals.means, [0.0, 0.5, 1.0])
        np.testing.assert_array_equal(goals.variances, [0.2, 0.2, 0.2])
