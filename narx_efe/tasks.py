"""
narx_efe.tasks - Process Simulators and Goal Schedules

The agent only talks to a process through two calls:

    sensor() -> float        current noisy observation
    step(control) -> None    advance one timestep under a control value

Any object with those two methods can be controlled. Pendulum is the
reference process: a damped, torque-actuated pendulum with actuator
saturation and Gaussian sensor noise.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

from narx_efe.config import SimulatorConfig
from narx_efe.exceptions import ConfigurationError
from narx_efe.objectives import GoalSpecification


class ProcessSimulator(ABC):
    """Abstract base class for controlled processes."""

    @abstractmethod
    def sensor(self) -> float:
        """Current noisy observation."""
        pass

    @abstractmethod
    def step(self, control: float) -> None:
        """Advance one timestep under the given control."""
        pass


class Pendulum(ProcessSimulator):
    """
    Damped pendulum driven by a saturating torque.

    Dynamics:
        θ'' = -(g/l) sin θ - c/(m l²) θ' + τ/(m l²)

    integrated with one RK4 step per call to step(). θ = 0 hangs down,
    θ = π is upright. The sensor reports θ with additive Gaussian noise.
    """

    def __init__(
        self,
        mass: float = 2.0,
        length: float = 0.5,
        damping: float = 0.01,
        gravity: float = 9.81,
        dt: float = 0.05,
        sensor_noise: float = 1e-3,
        torque_lims: Tuple[float, float] = (-1.0, 1.0),
        init_state: Tuple[float, float] = (0.0, 0.0),
        seed: Optional[int] = None,
    ):
        """
        Args:
            mass: Bob mass (kg)
            length: Rod length (m)
            damping: Viscous damping coefficient
            gravity: Gravitational acceleration (m/s²)
            dt: Integration timestep (s)
            sensor_noise: Standard deviation of the angle sensor
            torque_lims: Actuator saturation (τ_min, τ_max)
            init_state: Initial (angle, angular velocity)
            seed: Seed for the sensor noise
        """
        if mass <= 0 or length <= 0 or dt <= 0:
            raise ConfigurationError("mass, length and dt must be positive")
        if sensor_noise < 0:
            raise ConfigurationError(f"sensor_noise must be >= 0, got {sensor_noise}")
        if not torque_lims[0] < torque_lims[1]:
            raise ConfigurationError(f"Invalid torque limits {torque_lims}")

        self.mass = mass
        self.length = length
        self.damping = damping
        self.gravity = gravity
        self.dt = dt
        self.sensor_noise = sensor_noise
        self.torque_lims = torque_lims

        self.state = np.array(init_state, dtype=float)
        self.torque = 0.0
        self.t = 0
        self._rng = np.random.RandomState(seed)

    @classmethod
    def from_config(
        cls,
        config: SimulatorConfig,
        torque_lims: Tuple[float, float],
    ) -> "Pendulum":
        return cls(
            mass=config.mass,
            length=config.length,
            damping=config.damping,
            gravity=config.gravity,
            dt=config.dt,
            sensor_noise=config.sensor_noise,
            torque_lims=torque_lims,
            init_state=config.init_state,
            seed=config.seed,
        )

    @property
    def inertia(self) -> float:
        return self.mass * self.length ** 2

    def _derivative(self, state: np.ndarray, torque: float) -> np.ndarray:
        theta, omega = state
        accel = (
            -self.gravity / self.length * math.sin(theta)
            - self.damping / self.inertia * omega
            + torque / self.inertia
        )
        return np.array([omega, accel])

    def sensor(self) -> float:
        return float(self.state[0] + self.sensor_noise * self._rng.randn())

    def step(self, control: float) -> None:
        self.torque = float(np.clip(control, *self.torque_lims))

        h = self.dt
        k1 = self._derivative(self.state, self.torque)
        k2 = self._derivative(self.state + 0.5 * h * k1, self.torque)
        k3 = self._derivative(self.state + 0.5 * h * k2, self.torque)
        k4 = self._derivative(self.state + h * k3, self.torque)
        self.state = self.state + h / 6.0 * (k1 + 2 * k2 + 2 * k3 + k4)
        self.t += 1


# =============================================================================
# Goal Schedules
# =============================================================================

def swing_up_goals(
    n_steps: int,
    target: float = math.pi,
    variance: float = 1e-4,
) -> GoalSpecification:
    """Constant upright target for a swing-up trial."""
    return GoalSpecification.constant(target, variance, n_steps)


def setpoint_goals(
    setpoints: np.ndarray,
    variance: float = 1e-2,
) -> GoalSpecification:
    """Goals tracking a given setpoint trajectory with fixed tolerance."""
    setpoints = np.asarray(setpoints, dtype=float)
    return GoalSpecification(setpoints, np.full(setpoints.size, float(variance)))
