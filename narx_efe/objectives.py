"""
narx_efe.objectives - Predictive Propagation and Planning Objectives

Rolls the belief forward under a candidate control sequence and scores the
resulting predictions.

Propagation:
    The predicted mean is fed back into a local copy of the output buffer.
    Predictive variance accumulates along the horizon,

        v_t = v_{t-1} + s²_t ν / (ν - 2),

    so v_1 is the one-step Student-t variance and the sequence never
    decreases. The agent's belief is only read.

Objectives (per horizon step, goal N(m*, v*)):
    cross-entropy   CE_t = ½ log(2π v*) + (v_t + (m_t - m*)²) / (2 v*)
    mutual info     MI_t = ½ log(1 + φ_tᵀ Λ⁻¹ φ_t)

    EFE(u) = Σ_t (CE_t - MI_t) + η ‖u‖²
    QCR(u) = Σ_t (m_t - m*)² / (2 v*) + η ‖u‖²
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from narx_efe.basis import PolynomialBasis
from narx_efe.core import BeliefState, SlidingBuffer, posterior_predictive
from narx_efe.exceptions import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)

Buffer = Union[SlidingBuffer, Sequence[float], np.ndarray]


# =============================================================================
# Goals and Traces
# =============================================================================

@dataclass
class GoalSpecification:
    """
    Target distributions N(mean, variance), one per future step.

    Read-only to the agent. Supplied at construction or between trials.
    """
    means: np.ndarray
    variances: np.ndarray

    def __post_init__(self):
        self.means = np.atleast_1d(np.asarray(self.means, dtype=float))
        self.variances = np.atleast_1d(np.asarray(self.variances, dtype=float))
        if self.means.ndim != 1 or self.means.shape != self.variances.shape:
            raise ConfigurationError(
                f"Goal means {self.means.shape} and variances {self.variances.shape} "
                "must be vectors of equal length"
            )
        if self.means.size == 0:
            raise ConfigurationError("Goal sequence is empty")
        if not np.all(np.isfinite(self.means)):
            raise ConfigurationError("Goal means must be finite")
        if not np.all(self.variances > 0):
            raise ConfigurationError("Goal variances must be positive")

    @classmethod
    def constant(cls, mean: float, variance: float, length: int) -> "GoalSpecification":
        """Same target at every step."""
        if length < 1:
            raise ConfigurationError(f"Goal length must be positive, got {length}")
        return cls(np.full(length, float(mean)), np.full(length, float(variance)))

    @classmethod
    def from_pairs(cls, pairs: Sequence[Tuple[float, float]]) -> "GoalSpecification":
        """Build from a sequence of (mean, variance) pairs."""
        if len(pairs) == 0:
            raise ConfigurationError("Goal sequence is empty")
        means, variances = zip(*pairs)
        return cls(np.array(means), np.array(variances))

    def __len__(self) -> int:
        return self.means.size

    def __getitem__(self, k: int) -> Tuple[float, float]:
        return float(self.means[k]), float(self.variances[k])

    def require(self, horizon: int) -> None:
        """Raise unless the sequence covers the horizon."""
        if len(self) < horizon:
            raise ConfigurationError(
                f"Goal sequence has {len(self)} steps, horizon needs {horizon}"
            )

    def window(self, start: int, length: int) -> "GoalSpecification":
        """Goals for steps start..start+length-1, padded with the final goal."""
        idx = np.minimum(np.arange(start, start + length), len(self) - 1)
        return GoalSpecification(self.means[idx], self.variances[idx])


@dataclass
class PredictionTrace:
    """Predicted mean and variance at each horizon step for one policy."""
    means: np.ndarray
    variances: np.ndarray
    features: np.ndarray
    leverage: np.ndarray  # φᵀ Λ⁻¹ φ per step

    @property
    def horizon(self) -> int:
        return self.means.size

    @property
    def mutual_info(self) -> np.ndarray:
        """Information gain about the weights at each step."""
        return 0.5 * np.log1p(self.leverage)

    @property
    def stds(self) -> np.ndarray:
        return np.sqrt(self.variances)


# =============================================================================
# Predictive Propagator
# =============================================================================

def predict(
    belief: BeliefState,
    policy: Sequence[float],
    basis: PolynomialBasis,
    horizon: Optional[int] = None,
) -> PredictionTrace:
    """
    Multi-step predictions for a control sequence.

    Args:
        belief: Current belief (not modified)
        policy: Control actions u_1..u_T
        basis: Feature map matching the belief
        horizon: Expected policy length, checked if given

    Returns:
        PredictionTrace with T means and non-decreasing variances
    """
    policy = np.atleast_1d(np.asarray(policy, dtype=float))
    T = policy.size
    if horizon is not None and T != horizon:
        raise ConfigurationError(f"Policy has {T} actions, horizon is {horizon}")
    if T == 0:
        raise ConfigurationError("Policy is empty")

    ybuffer = belief.ybuffer.copy()
    ubuffer = belief.ubuffer.copy()
    cov = belief.covariance()

    means = np.zeros(T)
    variances = np.zeros(T)
    leverage = np.zeros(T)
    features = np.zeros((T, belief.dim))

    v_acc = 0.0
    for t in range(T):
        ubuffer.push(policy[t])
        phi = basis.expand(np.concatenate([ybuffer.values(), ubuffer.values()]))
        nu, m, s2 = posterior_predictive(belief, phi)

        v_acc += s2 * nu / (nu - 2.0)
        if not np.isfinite(v_acc) or not np.isfinite(m):
            raise NumericalError(f"Non-finite prediction at horizon step {t + 1}")

        means[t] = m
        variances[t] = v_acc
        leverage[t] = float(phi @ cov @ phi)
        features[t] = phi

        ybuffer.push(m)

    return PredictionTrace(means=means, variances=variances, features=features, leverage=leverage)


# =============================================================================
# Pointwise Objectives
# =============================================================================

def gaussian_crossentropy(m_pred, v_pred, m_goal, v_goal):
    """E_p[-log N(y | m_goal, v_goal)] for p with mean m_pred, variance v_pred."""
    return 0.5 * np.log(2.0 * np.pi * v_goal) + (v_pred + (m_pred - m_goal) ** 2) / (2.0 * v_goal)


def _as_array(buffer: Buffer) -> np.ndarray:
    if isinstance(buffer, SlidingBuffer):
        return buffer.values()
    return np.asarray(buffer, dtype=float)


def _one_step_features(
    ybuf: Buffer,
    ubuf: Buffer,
    u: float,
    basis: PolynomialBasis,
) -> np.ndarray:
    ys = _as_array(ybuf)
    us = _as_array(ubuf)
    return basis.expand(np.concatenate([ys, [u], us[:-1]]))


def crossentropy(
    belief: BeliefState,
    ybuf: Buffer,
    ubuf: Buffer,
    goal: Tuple[float, float],
    u: float,
    basis: PolynomialBasis,
) -> float:
    """
    Cross-entropy between the one-step predictive under u and a Gaussian goal.

    Args:
        belief: Current belief
        ybuf: Past outputs, newest first
        ubuf: Past inputs, newest first (Lu+1 entries; the oldest drops out)
        goal: (mean, variance) of the target distribution
        u: Candidate control
        basis: Feature map
    """
    phi = _one_step_features(ybuf, ubuf, u, basis)
    nu, m, s2 = posterior_predictive(belief, phi)
    v = s2 * nu / (nu - 2.0)
    return float(gaussian_crossentropy(m, v, goal[0], goal[1]))


def mutualinfo(
    belief: BeliefState,
    ybuf: Buffer,
    ubuf: Buffer,
    u: float,
    basis: PolynomialBasis,
) -> float:
    """Expected information gain about the weights from observing y under u."""
    phi = _one_step_features(ybuf, ubuf, u, basis)
    return 0.5 * math.log1p(float(phi @ belief.covariance() @ phi))


# =============================================================================
# Horizon Objectives
# =============================================================================

def expected_free_energy(
    belief: BeliefState,
    policy: Sequence[float],
    goals: GoalSpecification,
    basis: PolynomialBasis,
    eta: float = 0.0,
) -> float:
    """Σ_t (cross-entropy - information gain) + η ‖u‖² over the horizon."""
    policy = np.atleast_1d(np.asarray(policy, dtype=float))
    goals.require(policy.size)
    T = policy.size

    trace = predict(belief, policy, basis)
    ce = gaussian_crossentropy(trace.means, trace.variances, goals.means[:T], goals.variances[:T])
    return float(np.sum(ce) - np.sum(trace.mutual_info) + eta * policy @ policy)


def quadratic_cost(
    belief: BeliefState,
    policy: Sequence[float],
    goals: GoalSpecification,
    basis: PolynomialBasis,
    eta: float = 0.0,
) -> float:
    """Precision-weighted squared tracking error + η ‖u‖² over the horizon."""
    policy = np.atleast_1d(np.asarray(policy, dtype=float))
    goals.require(policy.size)
    T = policy.size

    trace = predict(belief, policy, basis)
    err = (trace.means - goals.means[:T]) ** 2 / (2.0 * goals.variances[:T])
    return float(np.sum(err) + eta * policy @ policy)


OBJECTIVES = {
    "efe": expected_free_energy,
    "qcr": quadratic_cost,
}


def get_objective(name: str):
    """Look up a horizon objective by name."""
    try:
        return OBJECTIVES[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown objective '{name}', expected one of {sorted(OBJECTIVES)}"
        ) from None


# =============================================================================
# Dense Scan
# =============================================================================

@dataclass
class ScanResult:
    """One-step objective terms over a grid of candidate controls."""
    controls: np.ndarray
    crossentropy: np.ndarray
    mutual_info: np.ndarray
    quadratic: np.ndarray
    eta: float = 0.0

    @property
    def efe(self) -> np.ndarray:
        return self.crossentropy - self.mutual_info + self.eta * self.controls ** 2

    @property
    def qcr(self) -> np.ndarray:
        return self.quadratic + self.eta * self.controls ** 2

    def best(self, objective: str = "efe") -> float:
        """Grid control with the lowest objective value."""
        values = getattr(self, objective.lower())
        return float(self.controls[int(np.argmin(values))])


def scan_objective(
    belief: BeliefState,
    basis: PolynomialBasis,
    goal: Tuple[float, float],
    controls: Sequence[float],
    eta: float = 0.0,
    n_workers: int = 1,
) -> ScanResult:
    """
    Evaluate the one-step objective terms on a grid of controls.

    Grid points are independent and only read the belief, so they are
    spread over a thread pool when n_workers > 1.
    """
    controls = np.atleast_1d(np.asarray(controls, dtype=float))
    n = controls.size
    ybuf = belief.ybuffer.values()
    ubuf = belief.ubuffer.values()
    regressors = np.column_stack([
        np.tile(ybuf, (n, 1)),
        controls,
        np.tile(ubuf[:-1], (n, 1)),
    ])
    features = basis.expand_batch(regressors)
    belief.covariance()  # populate the cache before threads read it

    def evaluate(phi: np.ndarray) -> Tuple[float, float, float]:
        nu, m, s2 = posterior_predictive(belief, phi)
        v = s2 * nu / (nu - 2.0)
        ce = gaussian_crossentropy(m, v, goal[0], goal[1])
        mi = 0.5 * math.log1p(float(phi @ belief.covariance() @ phi))
        quad = (m - goal[0]) ** 2 / (2.0 * goal[1])
        return float(ce), mi, float(quad)

    if n_workers > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            rows: List[Tuple[float, float, float]] = list(executor.map(evaluate, features))
    else:
        rows = [evaluate(phi) for phi in features]

    values = np.array(rows).reshape(-1, 3)
    logger.debug(f"Scanned {controls.size} controls with {max(n_workers, 1)} worker(s)")
    return ScanResult(
        controls=controls,
        crossentropy=values[:, 0],
        mutual_info=values[:, 1],
        quadratic=values[:, 2],
        eta=eta,
    )
