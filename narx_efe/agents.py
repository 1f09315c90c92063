"""
narx_efe.agents - NARX Agent and Control Loop

The agent owns one belief state and repeats, at every timestep:

    observe -> update belief -> re-plan -> apply first action

Each stage must finish (or time out) before the next observation arrives.

The ControlTrajectory class is the caller-side log of a trial: observations,
controls, free energies, prediction traces and goals, plus optional belief
snapshots for offline analysis. The agent itself only keeps the latest
belief.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from narx_efe.config import NARXConfig
from narx_efe.core import BeliefState, narx_update
from narx_efe.exceptions import ConfigurationError
from narx_efe.objectives import (
    GoalSpecification,
    PredictionTrace,
    ScanResult,
    crossentropy,
    mutualinfo,
    predict,
    scan_objective,
)
from narx_efe.planning import PlanResult, optimize_policy
from narx_efe.tasks import ProcessSimulator

logger = logging.getLogger(__name__)


@dataclass
class TrajectoryStep:
    """A single step of a closed-loop trial."""
    step: int
    observation: float
    control: float
    free_energy: float
    pred_means: np.ndarray
    pred_variances: np.ndarray
    goal_mean: float
    goal_variance: float
    objective: float = float("nan")
    timed_out: bool = False
    belief: Optional[BeliefState] = None


@dataclass
class ControlTrajectory:
    """
    Complete record of an agent controlling a process.

    Append-only; owned by the caller, not by the agent.
    """
    steps: List[TrajectoryStep] = field(default_factory=list)
    objective_name: str = "efe"
    horizon: int = 1

    @property
    def n_steps(self) -> int:
        """Number of control steps recorded."""
        return len(self.steps)

    def get_observations(self) -> np.ndarray:
        return np.array([s.observation for s in self.steps])

    def get_controls(self) -> np.ndarray:
        return np.array([s.control for s in self.steps])

    def get_free_energy(self) -> np.ndarray:
        return np.array([s.free_energy for s in self.steps])

    def get_objectives(self) -> np.ndarray:
        return np.array([s.objective for s in self.steps])

    def get_prediction_means(self) -> np.ndarray:
        """Predicted means, shape (n_steps, horizon)."""
        return np.array([s.pred_means for s in self.steps]).reshape(-1, self.horizon)

    def get_prediction_variances(self) -> np.ndarray:
        """Predicted variances, shape (n_steps, horizon)."""
        return np.array([s.pred_variances for s in self.steps]).reshape(-1, self.horizon)

    def get_goals(self) -> Tuple[np.ndarray, np.ndarray]:
        """Goal means and variances at each step."""
        return (
            np.array([s.goal_mean for s in self.steps]),
            np.array([s.goal_variance for s in self.steps]),
        )

    def get_beliefs(self) -> List[BeliefState]:
        """Belief snapshots (empty unless recorded with keep_beliefs)."""
        return [s.belief for s in self.steps if s.belief is not None]

    def n_timeouts(self) -> int:
        """Number of steps where planning ran out of time."""
        return sum(s.timed_out for s in self.steps)

    def to_dict(self) -> dict:
        """Convert trajectory to dictionary for serialization."""
        goal_means, goal_vars = self.get_goals()
        return {
            "n_steps": self.n_steps,
            "objective": self.objective_name,
            "horizon": self.horizon,
            "observations": self.get_observations().tolist(),
            "controls": self.get_controls().tolist(),
            "free_energy": self.get_free_energy().tolist(),
            "pred_means": self.get_prediction_means().tolist(),
            "pred_variances": self.get_prediction_variances().tolist(),
            "goal_means": goal_means.tolist(),
            "goal_variances": goal_vars.tolist(),
            "n_timeouts": self.n_timeouts(),
        }


class NARXAgent:
    """
    Active inference agent with a Bayesian polynomial NARX model.

    The agent can:
    - Learn the process from (input, output) pairs
    - Forecast the process under a candidate control sequence
    - Plan by minimizing expected free energy or a quadratic cost
    - Run closed-loop trials against any ProcessSimulator
    """

    def __init__(
        self,
        config: Optional[NARXConfig] = None,
        goals: Optional[GoalSpecification] = None,
        rng: Optional[np.random.RandomState] = None,
    ):
        """
        Initialize NARX agent.

        Args:
            config: Full configuration (defaults to NARXConfig())
            goals: Default goal sequence used when plan() gets none
            rng: Randomness for planner restarts (seeded from config if omitted)
        """
        self.config = config if config is not None else NARXConfig()
        self.config.validate()

        self.basis = self.config.make_basis()
        self.goals = goals
        if goals is not None:
            goals.require(self.horizon)
        self.rng = rng if rng is not None else np.random.RandomState(self.config.planner.seed)

        self.belief: BeliefState
        self.policy: np.ndarray
        self.last_control = 0.0
        self.step_index = 0
        self.reset()

    @property
    def horizon(self) -> int:
        return self.config.time_horizon

    @property
    def control_lims(self) -> Tuple[float, float]:
        return tuple(self.config.control_lims)

    @property
    def eta(self) -> float:
        return self.config.control_prior_precision

    def reset(self) -> None:
        """Reset belief, buffers and plan to the prior."""
        prior = self.config.prior
        mu0, Lambda0 = prior.build(self.basis.dim)
        self.belief = BeliefState.from_prior(
            mu0,
            Lambda0,
            prior.alpha0,
            prior.beta0,
            self.config.delay_out,
            self.config.delay_inp,
        )
        self.policy = np.zeros(self.horizon)
        self.last_control = 0.0
        self.step_index = 0

    # -------------------------------------------------------------------------
    # Learning and prediction
    # -------------------------------------------------------------------------

    def update(self, y: float, u: float) -> float:
        """
        Absorb a new observation y produced under input u.

        Returns:
            Free energy of the observation
        """
        return narx_update(self.belief, u, y, self.basis)

    def predict(self, policy: Sequence[float]) -> PredictionTrace:
        """Forecast the next T outputs under a policy of length T."""
        return predict(self.belief, policy, self.basis, horizon=self.horizon)

    def crossentropy(self, u: float, goal: Tuple[float, float]) -> float:
        """One-step cross-entropy to goal under control u."""
        return crossentropy(
            self.belief, self.belief.ybuffer, self.belief.ubuffer, goal, u, self.basis
        )

    def mutualinfo(self, u: float) -> float:
        """One-step information gain under control u."""
        return mutualinfo(self.belief, self.belief.ybuffer, self.belief.ubuffer, u, self.basis)

    def scan(
        self,
        goal: Tuple[float, float],
        n_points: int = 101,
        n_workers: int = 1,
    ) -> ScanResult:
        """One-step objective terms over the actuator range."""
        u_min, u_max = self.control_lims
        if not (np.isfinite(u_min) and np.isfinite(u_max)):
            raise ConfigurationError("Scanning needs finite control limits")
        grid = np.linspace(u_min, u_max, n_points)
        return scan_objective(self.belief, self.basis, goal, grid, self.eta, n_workers)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def initial_guess(self) -> np.ndarray:
        """Previous plan shifted by one step, or zeros without warm starting."""
        if not self.config.planner.warm_start:
            return np.zeros(self.horizon)
        return np.append(self.policy[1:], self.policy[-1])

    def plan(
        self,
        goals: Optional[GoalSpecification] = None,
        u_0: Optional[Sequence[float]] = None,
        time_limit: Optional[float] = None,
    ) -> PlanResult:
        """
        Choose a policy for the next T steps.

        Args:
            goals: Goal sequence (defaults to the agent's goals)
            u_0: Initial guess (defaults to initial_guess())
            time_limit: Planning budget in seconds (defaults to config)

        Returns:
            PlanResult; the policy is also kept for warm starting
        """
        goals = goals if goals is not None else self.goals
        if goals is None:
            raise ConfigurationError("No goal sequence given")

        planner = self.config.planner
        result = optimize_policy(
            self.belief,
            goals,
            self.basis,
            objective=planner.objective,
            u_0=u_0 if u_0 is not None else self.initial_guess(),
            time_limit=planner.time_limit if time_limit is None else time_limit,
            control_lims=self.control_lims,
            eta=self.eta,
            horizon=self.horizon,
            method=planner.method,
            n_restarts=planner.n_restarts,
            n_scan=planner.n_scan,
            max_iter=planner.max_iter,
            rng=self.rng,
        )
        self.policy = result.policy
        return result

    def step(
        self,
        y: float,
        goals: Optional[GoalSpecification] = None,
        time_limit: Optional[float] = None,
    ) -> float:
        """
        Observe y (produced by the last action), re-plan, return the next action.

        Goals are indexed by step as in run(): the k-th call plans against
        goals k..k+T-1, padded with the final goal.
        """
        goals = goals if goals is not None else self.goals
        if goals is None:
            raise ConfigurationError("No goal sequence given")

        self.update(y, self.last_control)
        result = self.plan(goals.window(self.step_index, self.horizon), time_limit=time_limit)
        self.step_index += 1
        self.last_control = result.first_action
        return self.last_control

    # -------------------------------------------------------------------------
    # Closed loop
    # -------------------------------------------------------------------------

    def run(
        self,
        system: ProcessSimulator,
        goals: Optional[GoalSpecification] = None,
        n_steps: int = 100,
        time_limit: Optional[float] = None,
        callback: Optional[Callable[[int, BeliefState], None]] = None,
        progress: bool = False,
        keep_beliefs: bool = False,
    ) -> ControlTrajectory:
        """
        Run the agent against a process for n_steps.

        Goals are indexed by timestep; the planner at step k sees goals
        k..k+T-1, padded with the final goal.

        Args:
            system: Process exposing sensor() and step(control)
            goals: Goal sequence (defaults to the agent's goals)
            n_steps: Number of control steps
            time_limit: Planning budget per step (defaults to config)
            callback: Optional callback(step, belief) called each step
            progress: Show a progress bar
            keep_beliefs: Store a belief snapshot at every step

        Returns:
            Complete trajectory
        """
        goals = goals if goals is not None else self.goals
        if goals is None:
            raise ConfigurationError("No goal sequence given")
        goals.require(self.horizon)
        if n_steps < 1:
            raise ConfigurationError(f"n_steps must be positive, got {n_steps}")

        self.reset()
        trajectory = ControlTrajectory(
            objective_name=self.config.planner.objective.lower(),
            horizon=self.horizon,
        )
        logger.info(
            f"Starting {n_steps}-step trial: objective={trajectory.objective_name} "
            f"T={self.horizon} M={self.basis.dim}"
        )

        for k in tqdm(range(n_steps), disable=not progress, desc="control"):
            y = system.sensor()
            free_energy = self.update(y, self.last_control)

            window = goals.window(k, self.horizon)
            result = self.plan(window, time_limit=time_limit)
            u = result.first_action
            trace = self.predict(result.policy)

            system.step(u)
            self.last_control = u
            self.step_index = k + 1

            trajectory.steps.append(TrajectoryStep(
                step=k,
                observation=y,
                control=u,
                free_energy=free_energy,
                pred_means=trace.means,
                pred_variances=trace.variances,
                goal_mean=float(window.means[0]),
                goal_variance=float(window.variances[0]),
                objective=result.objective,
                timed_out=result.timed_out,
                belief=self.belief.clone() if keep_beliefs else None,
            ))

            if callback is not None:
                callback(k, self.belief)

        logger.info(
            f"Finished trial: mean F={np.mean(trajectory.get_free_energy()):.4f} "
            f"timeouts={trajectory.n_timeouts()}"
        )
        return trajectory
