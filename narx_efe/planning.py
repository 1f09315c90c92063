"""
narx_efe.planning - Policy Optimization under a Time Budget

Searches bounded control sequences of length T for the lowest expected free
energy (or quadratic cost) using scipy.optimize:

- L-BFGS-B (default): box-constrained quasi-Newton, finite-difference gradients
- Nelder-Mead: derivative-free, bounded
- DE: differential evolution over the actuator box (finite limits only)

The objective is wrapped so that every evaluation is checked against a
wall-clock deadline and the best feasible point seen so far is kept. When
the deadline passes the search is abandoned and that incumbent is returned;
running out of time is not an error.

Candidates whose forecast diverges score DIVERGENCE_PENALTY and never
become the incumbent. Planning fails with NumericalError only if no
evaluated policy has a finite objective.

The landscape is non-convex, so results are "best found", not global
optima. Pass a seeded RandomState when restarts must be reproducible.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import Bounds, differential_evolution, minimize

from narx_efe.basis import PolynomialBasis
from narx_efe.core import BeliefState
from narx_efe.exceptions import BoundsViolationError, ConfigurationError, NumericalError
from narx_efe.objectives import GoalSpecification, get_objective, scan_objective

logger = logging.getLogger(__name__)

METHODS = ("L-BFGS-B", "Nelder-Mead", "DE")

# Finite stand-in for candidates whose forecast diverges
DIVERGENCE_PENALTY = 1e100


@dataclass
class PlanResult:
    """Result of one planning call."""
    policy: np.ndarray
    objective: float
    objective_name: str = "efe"

    # Optimization details
    success: bool = False
    timed_out: bool = False
    n_evaluations: int = 0
    n_starts: int = 0
    elapsed: float = 0.0
    message: str = ""

    @property
    def first_action(self) -> float:
        """Action to apply now."""
        return float(self.policy[0])


class _BudgetExhausted(Exception):
    """Raised from inside the objective once the deadline has passed."""


class _BudgetedObjective:
    """Objective wrapper tracking the incumbent and the wall-clock deadline."""

    def __init__(
        self,
        fn: Callable[[np.ndarray], float],
        lower: float,
        upper: float,
        deadline: float,
    ):
        self.fn = fn
        self.lower = lower
        self.upper = upper
        self.deadline = deadline

        self.best_x: Optional[np.ndarray] = None
        self.best_f = np.inf
        self.n_evaluations = 0
        self.n_diverged = 0

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def __call__(self, x: np.ndarray) -> float:
        if self.expired():
            raise _BudgetExhausted()

        x = np.asarray(x, dtype=float)
        self.n_evaluations += 1
        try:
            f = float(self.fn(x))
        except NumericalError:
            f = np.inf
        if not np.isfinite(f):
            self.n_diverged += 1
            return DIVERGENCE_PENALTY

        feasible = np.all(x >= self.lower) and np.all(x <= self.upper)
        if feasible and np.isfinite(f) and f < self.best_f:
            self.best_x = x.copy()
            self.best_f = f
        return f


def check_bounds(policy: np.ndarray, control_lims: Tuple[float, float]) -> None:
    """Raise BoundsViolationError if any action leaves the actuator range."""
    lower, upper = control_lims
    bad = np.flatnonzero((policy < lower) | (policy > upper) | ~np.isfinite(policy))
    if bad.size:
        raise BoundsViolationError(
            f"Actions {policy[bad].tolist()} at steps {bad.tolist()} "
            f"outside [{lower}, {upper}]"
        )


def _random_start(
    rng: np.random.RandomState,
    seed: np.ndarray,
    lower: float,
    upper: float,
) -> np.ndarray:
    if np.isfinite(lower) and np.isfinite(upper):
        return rng.uniform(lower, upper, size=seed.size)
    return np.clip(seed + rng.normal(0.0, 1.0, size=seed.size), lower, upper)


def optimize_policy(
    belief: BeliefState,
    goals: GoalSpecification,
    basis: PolynomialBasis,
    objective: str = "efe",
    u_0: Optional[Sequence[float]] = None,
    time_limit: float = 10.0,
    control_lims: Tuple[float, float] = (-np.inf, np.inf),
    eta: float = 0.0,
    horizon: Optional[int] = None,
    method: str = "L-BFGS-B",
    n_restarts: int = 0,
    n_scan: int = 0,
    max_iter: int = 500,
    rng: Optional[np.random.RandomState] = None,
) -> PlanResult:
    """
    Minimize a horizon objective over bounded control sequences.

    Args:
        belief: Current belief (not modified)
        goals: Goal distributions, at least T of them
        basis: Feature map matching the belief
        objective: "efe" or "qcr"
        u_0: Initial guess; zeros if omitted, clipped into the limits
        time_limit: Wall-clock budget in seconds
        control_lims: (u_min, u_max) applied to every step
        eta: Control-effort weight η
        horizon: Policy length T; defaults to len(u_0), then len(goals)
        method: "L-BFGS-B", "Nelder-Mead" or "DE"
        n_restarts: Extra random starts drawn from rng
        n_scan: Grid size of a one-step scan used as an extra constant start
        max_iter: Iteration cap per local search
        rng: Source of randomness for restarts and DE

    Returns:
        PlanResult whose policy lies inside control_lims
    """
    lower, upper = float(control_lims[0]), float(control_lims[1])
    if not lower < upper:
        raise ConfigurationError(f"Invalid control limits ({lower}, {upper})")
    if method not in METHODS:
        raise ConfigurationError(f"Unknown method '{method}', expected one of {METHODS}")
    if method == "DE" and not (np.isfinite(lower) and np.isfinite(upper)):
        raise ConfigurationError("Differential evolution needs finite control limits")
    if eta < 0:
        raise ConfigurationError(f"Control prior precision must be >= 0, got {eta}")

    if horizon is None:
        horizon = len(u_0) if u_0 is not None else len(goals)
    T = int(horizon)
    if T < 1:
        raise ConfigurationError(f"Time horizon must be positive, got {T}")
    goals.require(T)

    seed = np.zeros(T) if u_0 is None else np.asarray(u_0, dtype=float).copy()
    if seed.shape != (T,):
        raise ConfigurationError(f"Initial guess has shape {seed.shape}, expected ({T},)")
    seed = np.clip(seed, lower, upper)

    fn = get_objective(objective)
    rng = rng if rng is not None else np.random.RandomState()

    started = time.monotonic()
    budget = _BudgetedObjective(
        lambda u: fn(belief, u, goals, basis, eta),
        lower,
        upper,
        deadline=started + max(float(time_limit), 0.0),
    )

    starts: List[np.ndarray] = [seed]
    if n_scan > 0 and np.isfinite(lower) and np.isfinite(upper):
        scan = scan_objective(belief, basis, goals[0], np.linspace(lower, upper, n_scan), eta)
        starts.append(np.full(T, scan.best(objective)))
    for _ in range(n_restarts):
        starts.append(_random_start(rng, seed, lower, upper))

    success = False
    timed_out = False
    message = ""
    n_starts = 0
    seed_value = np.inf

    try:
        seed_value = budget(seed)

        if method == "DE":
            result = differential_evolution(
                budget,
                bounds=[(lower, upper)] * T,
                x0=seed,
                maxiter=max_iter,
                polish=False,
                seed=rng,
                callback=lambda *args, **kwargs: budget.expired(),
            )
            n_starts = 1
            success = bool(result.success)
            message = str(result.message)
        else:
            bounds = Bounds(np.full(T, lower), np.full(T, upper))
            for x0 in starts:
                n_starts += 1
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", RuntimeWarning)
                    result = minimize(
                        budget,
                        x0,
                        method=method,
                        bounds=bounds,
                        options={"maxiter": max_iter},
                    )
                success = success or bool(result.success)
                message = str(result.message)

    except _BudgetExhausted:
        timed_out = True
        message = "Time budget exhausted"

    elapsed = time.monotonic() - started

    if budget.best_x is None and budget.n_evaluations > 0:
        raise NumericalError(
            f"None of {budget.n_evaluations} evaluated policies has a finite "
            f"{objective.upper()}, starting from {seed.tolist()}"
        )
    if budget.best_x is None:
        logger.warning(
            f"Planning budget of {time_limit}s exhausted before any evaluation; "
            "returning the initial guess"
        )
        policy, value = seed, np.nan
    else:
        policy, value = budget.best_x, budget.best_f
        if timed_out and value >= seed_value:
            logger.warning(
                f"Planning budget of {time_limit}s exhausted without improving on the initial guess"
            )

    check_bounds(policy, (lower, upper))

    logger.debug(
        f"Planned {objective.upper()} T={T}: J={value:.4f} evals={budget.n_evaluations} "
        f"diverged={budget.n_diverged} starts={n_starts} elapsed={elapsed:.3f}s timed_out={timed_out}"
    )

    return PlanResult(
        policy=policy,
        objective=value,
        objective_name=objective.lower(),
        success=success and not timed_out,
        timed_out=timed_out,
        n_evaluations=budget.n_evaluations,
        n_starts=n_starts,
        elapsed=elapsed,
        message=message,
    )


def minimize_efe(
    belief: BeliefState,
    goals: GoalSpecification,
    basis: PolynomialBasis,
    u_0: Optional[Sequence[float]] = None,
    time_limit: float = 10.0,
    control_lims: Tuple[float, float] = (-np.inf, np.inf),
    eta: float = 0.0,
    **kwargs,
) -> np.ndarray:
    """Policy minimizing expected free energy. See optimize_policy."""
    return optimize_policy(
        belief, goals, basis,
        objective="efe",
        u_0=u_0,
        time_limit=time_limit,
        control_lims=control_lims,
        eta=eta,
        **kwargs,
    ).policy


def minimize_qcr(
    belief: BeliefState,
    goals: GoalSpecification,
    basis: PolynomialBasis,
    u_0: Optional[Sequence[float]] = None,
    time_limit: float = 10.0,
    control_lims: Tuple[float, float] = (-np.inf, np.inf),
    eta: float = 0.0,
    **kwargs,
) -> np.ndarray:
    """Policy minimizing the regularized quadratic cost. See optimize_policy."""
    return optimize_policy(
        belief, goals, basis,
        objective="qcr",
        u_0=u_0,
        time_limit=time_limit,
        control_lims=control_lims,
        eta=eta,
        **kwargs,
    ).policy
