"""
narx_efe - Bayesian NARX Agent with Expected Free Energy Planning

An online model-predictive controller for unknown nonlinear processes:

- Polynomial NARX feature map
- Exact Normal-Gamma belief updates with per-step free energy
- Multi-step Student-t forecasting under parameter uncertainty
- Expected free energy (goal cross-entropy minus information gain) and
  regularized quadratic cost objectives
- Bounded, time-limited policy optimization
- Closed-loop control against any process exposing sensor()/step()

Example:
    >>> from narx_efe import NARXAgent, NARXConfig, Pendulum, swing_up_goals
    >>> config = NARXConfig(time_horizon=5)
    >>> agent = NARXAgent(config, goals=swing_up_goals(105))
    >>> trajectory = agent.run(Pendulum(seed=0), n_steps=100, time_limit=0.5)
    >>> trajectory.get_observations()[-1]
"""

from narx_efe.basis import PolynomialBasis, expand, feature_dim
from narx_efe.core import (
    BeliefState,
    SlidingBuffer,
    log_evidence,
    narx_update,
    posterior_predictive,
    predictive_variance,
)
from narx_efe.objectives import (
    GoalSpecification,
    PredictionTrace,
    ScanResult,
    crossentropy,
    expected_free_energy,
    mutualinfo,
    predict,
    quadratic_cost,
    scan_objective,
)
from narx_efe.planning import PlanResult, minimize_efe, minimize_qcr, optimize_policy
from narx_efe.agents import NARXAgent, ControlTrajectory, TrajectoryStep
from narx_efe.tasks import ProcessSimulator, Pendulum, swing_up_goals, setpoint_goals
from narx_efe.config import (
    NARXConfig,
    PriorConfig,
    PlannerConfig,
    SimulatorConfig,
    load_config,
    save_config,
)
from narx_efe.exceptions import (
    NARXError,
    ConfigurationError,
    NumericalError,
    BoundsViolationError,
)

__version__ = "0.1.0"
__all__ = [
    # Feature map
    "PolynomialBasis",
    "expand",
    "feature_dim",
    # Belief
    "BeliefState",
    "SlidingBuffer",
    "narx_update",
    "posterior_predictive",
    "predictive_variance",
    "log_evidence",
    # Objectives
    "GoalSpecification",
    "PredictionTrace",
    "ScanResult",
    "predict",
    "crossentropy",
    "mutualinfo",
    "expected_free_energy",
    "quadratic_cost",
    "scan_objective",
    # Planning
    "PlanResult",
    "optimize_policy",
    "minimize_efe",
    "minimize_qcr",
    # Agents
    "NARXAgent",
    "ControlTrajectory",
    "TrajectoryStep",
    # Tasks
    "ProcessSimulator",
    "Pendulum",
    "swing_up_goals",
    "setpoint_goals",
    # Config
    "NARXConfig",
    "PriorConfig",
    "PlannerConfig",
    "SimulatorConfig",
    "load_config",
    "save_config",
    # Errors
    "NARXError",
    "ConfigurationError",
    "NumericalError",
    "BoundsViolationError",
]
