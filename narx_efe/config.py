"""
narx_efe.config - Agent Configuration

Handles loading and validating configuration for:
- Model structure (delays, polynomial degree, horizon)
- Prior hyperparameters of the Normal-Gamma belief
- Planner settings (objective, time budget, optimizer)
- The reference pendulum used by the CLI

Configs are plain dataclasses, read from and written to YAML.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import yaml

from narx_efe.basis import PolynomialBasis
from narx_efe.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Matrix = Union[float, List[List[float]]]
Vector = Union[float, List[float]]


def _plain(value):
    """numpy values to builtin types for YAML."""
    return np.asarray(value).tolist()


@dataclass
class PriorConfig:
    """
    Normal-Gamma prior hyperparameters.

    mu0 and Lambda0 may be scalars: mu0 is broadcast to every weight and
    Lambda0 multiplies the identity.
    """

    mu0: Vector = 1e-8
    Lambda0: Matrix = 0.5
    alpha0: float = 100.0
    beta0: float = 0.1

    def build(self, dim: int) -> Tuple[np.ndarray, np.ndarray]:
        """Materialize (mu0, Lambda0) for a basis of dimension dim."""
        if np.ndim(self.mu0) == 0:
            mu0 = np.full(dim, float(self.mu0))
        else:
            mu0 = np.asarray(self.mu0, dtype=float)
        if np.ndim(self.Lambda0) == 0:
            Lambda0 = float(self.Lambda0) * np.eye(dim)
        else:
            Lambda0 = np.asarray(self.Lambda0, dtype=float)

        if mu0.shape != (dim,):
            raise ConfigurationError(f"mu0 has shape {mu0.shape}, basis needs ({dim},)")
        if Lambda0.shape != (dim, dim):
            raise ConfigurationError(
                f"Lambda0 has shape {Lambda0.shape}, basis needs ({dim}, {dim})"
            )
        return mu0, Lambda0


@dataclass
class PlannerConfig:
    """Policy optimizer settings."""

    objective: str = "efe"
    time_limit: float = 10.0
    method: str = "L-BFGS-B"
    n_restarts: int = 0
    n_scan: int = 0
    max_iter: int = 500
    seed: Optional[int] = None
    warm_start: bool = True


@dataclass
class SimulatorConfig:
    """Reference pendulum parameters."""

    mass: float = 2.0
    length: float = 0.5
    damping: float = 0.01
    gravity: float = 9.81
    dt: float = 0.05
    sensor_noise: float = 1e-3
    init_state: Tuple[float, float] = (0.0, 0.0)
    seed: Optional[int] = None


@dataclass
class NARXConfig:
    """Complete agent configuration."""

    delay_inp: int = 2
    delay_out: int = 2
    pol_degree: int = 2
    include_bias: bool = True
    time_horizon: int = 10
    control_prior_precision: float = 0.0
    control_lims: Tuple[float, float] = (-1.0, 1.0)

    prior: PriorConfig = field(default_factory=PriorConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    simulator: SimulatorConfig = field(default_factory=SimulatorConfig)

    @property
    def n_vars(self) -> int:
        return self.delay_out + self.delay_inp + 1

    def make_basis(self) -> PolynomialBasis:
        return PolynomialBasis.for_delays(
            self.delay_out, self.delay_inp, self.pol_degree, self.include_bias
        )

    def validate(self) -> None:
        """Raise ConfigurationError on the first violated constraint."""
        for name in ("delay_inp", "delay_out", "pol_degree", "time_horizon"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value}")
        if self.control_prior_precision < 0:
            raise ConfigurationError(
                f"control_prior_precision must be >= 0, got {self.control_prior_precision}"
            )
        u_min, u_max = self.control_lims
        if not u_min < u_max:
            raise ConfigurationError(f"control_lims must satisfy u_min < u_max, got {self.control_lims}")
        if not self.prior.alpha0 > 1.0:
            raise ConfigurationError(f"alpha0 must be > 1, got {self.prior.alpha0}")
        if not self.prior.beta0 > 0.0:
            raise ConfigurationError(f"beta0 must be > 0, got {self.prior.beta0}")
        if self.planner.objective.lower() not in ("efe", "qcr"):
            raise ConfigurationError(f"Unknown objective '{self.planner.objective}'")
        if self.planner.time_limit < 0:
            raise ConfigurationError(f"time_limit must be >= 0, got {self.planner.time_limit}")
        if self.planner.n_restarts < 0 or self.planner.n_scan < 0:
            raise ConfigurationError("n_restarts and n_scan must be >= 0")

        # Prior shapes must agree with the basis dimension
        self.prior.build(self.make_basis().dim)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML-friendly dictionary."""
        return {
            "delay_inp": self.delay_inp,
            "delay_out": self.delay_out,
            "pol_degree": self.pol_degree,
            "include_bias": self.include_bias,
            "time_horizon": self.time_horizon,
            "control_prior_precision": self.control_prior_precision,
            "control_lims": list(self.control_lims),
            "prior": {
                "mu0": _plain(self.prior.mu0),
                "Lambda0": _plain(self.prior.Lambda0),
                "alpha0": self.prior.alpha0,
                "beta0": self.prior.beta0,
            },
            "planner": {
                "objective": self.planner.objective,
                "time_limit": self.planner.time_limit,
                "method": self.planner.method,
                "n_restarts": self.planner.n_restarts,
                "n_scan": self.planner.n_scan,
                "max_iter": self.planner.max_iter,
                "seed": self.planner.seed,
                "warm_start": self.planner.warm_start,
            },
            "simulator": {
                "mass": self.simulator.mass,
                "length": self.simulator.length,
                "damping": self.simulator.damping,
                "gravity": self.simulator.gravity,
                "dt": self.simulator.dt,
                "sensor_noise": self.simulator.sensor_noise,
                "init_state": list(self.simulator.init_state),
                "seed": self.simulator.seed,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NARXConfig":
        """Create from dictionary. Unknown keys are rejected."""
        data = dict(data)
        known = {
            "delay_inp", "delay_out", "pol_degree", "include_bias", "time_horizon",
            "control_prior_precision", "control_lims", "prior", "planner", "simulator",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        try:
            prior = PriorConfig(**data.pop("prior", {}) or {})
            planner = PlannerConfig(**data.pop("planner", {}) or {})
            sim_data = dict(data.pop("simulator", {}) or {})
            if "init_state" in sim_data:
                sim_data["init_state"] = tuple(sim_data["init_state"])
            simulator = SimulatorConfig(**sim_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration section: {e}") from e

        if "control_lims" in data:
            data["control_lims"] = tuple(data["control_lims"])

        return cls(prior=prior, planner=planner, simulator=simulator, **data)


# =============================================================================
# Loading Functions
# =============================================================================

def load_config(path: Union[str, Path]) -> NARXConfig:
    """Load and validate a configuration from YAML.

    Args:
        path: Config file path

    Returns:
        Validated configuration
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    config = NARXConfig.from_dict(data or {})
    config.validate()
    logger.info(f"Loaded config from {path}")
    return config


def save_config(config: NARXConfig, path: Union[str, Path]) -> Path:
    """Save configuration to YAML.

    Args:
        config: Configuration to save
        path: Destination file

    Returns:
        Path written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved config to {path}")
    return path
