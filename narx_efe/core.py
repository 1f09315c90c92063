"""
narx_efe.core - Bayesian NARX Belief Update Equations

Implements exact conjugate learning of a polynomial NARX model

    y_k = μᵀ φ(y_{k-1..k-Ly}, u_{k..k-Lu}) + e_k,    e_k ~ N(0, 1/τ)

under a Normal-Gamma posterior over the weights and the noise precision:

    θ | τ ~ N(μ, (τΛ)⁻¹),    τ ~ Gamma(α, β)

Key equations for one observation (φ, y):
    Λ' = Λ + φφᵀ
    μ' = Λ'⁻¹ (Λμ + φy)
    α' = α + 1/2
    β' = β + 1/2 (y² + μᵀΛμ - μ'ᵀΛ'μ')

The posterior predictive of y for a feature vector φ is a location-scale
Student-t with ν = 2α, location μᵀφ and squared scale β/α (1 + φᵀΛ⁻¹φ).
Its negative log-density at the observed y is the per-step free energy.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.stats import t as student_t

from narx_efe.basis import PolynomialBasis
from narx_efe.exceptions import ConfigurationError, NumericalError

logger = logging.getLogger(__name__)


# =============================================================================
# Sliding Buffers
# =============================================================================

class SlidingBuffer:
    """
    Fixed-capacity ring buffer of past values.

    Writes go to an explicit cursor; reads return the contents newest first,
    so values()[0] is the most recent entry and values()[-1] the oldest.
    """

    def __init__(self, capacity: int, fill: float = 0.0):
        if capacity < 1:
            raise ConfigurationError(f"Buffer capacity must be positive, got {capacity}")
        self._data = np.full(capacity, float(fill))
        self._cursor = 0

    @property
    def capacity(self) -> int:
        return self._data.size

    def push(self, value: float) -> None:
        """Insert a value, discarding the oldest."""
        self._data[self._cursor] = value
        self._cursor = (self._cursor + 1) % self._data.size

    def values(self) -> np.ndarray:
        """Contents ordered newest first."""
        idx = (self._cursor - 1 - np.arange(self._data.size)) % self._data.size
        return self._data[idx]

    def shifted(self, value: float) -> np.ndarray:
        """Contents as they would read after push(value), without mutating."""
        return np.concatenate([[value], self.values()[:-1]])

    def copy(self) -> "SlidingBuffer":
        other = SlidingBuffer.__new__(SlidingBuffer)
        other._data = self._data.copy()
        other._cursor = self._cursor
        return other

    def __len__(self) -> int:
        return self._data.size

    def __repr__(self) -> str:
        return f"SlidingBuffer({self.values().tolist()})"


# =============================================================================
# Belief State
# =============================================================================

def _cholesky(Lambda: np.ndarray):
    """Cholesky factor of a precision matrix, or NumericalError."""
    try:
        return cho_factor(Lambda, lower=True)
    except (LinAlgError, ValueError) as e:
        raise NumericalError(f"Precision matrix is not positive-definite: {e}") from e


@dataclass
class BeliefState:
    """
    Normal-Gamma posterior over NARX weights plus the sliding history.

    Attributes:
        mu: Posterior mean of the weights (M,)
        Lambda: Posterior precision matrix (M, M), symmetric positive-definite
        alpha: Gamma shape of the noise precision (> 1)
        beta: Gamma rate of the noise precision (> 0)

        ybuffer: Last Ly outputs, newest first
        ubuffer: Last Lu+1 inputs, newest first

        free_energy: Free energy of the most recent observation
        t: Number of observations absorbed
    """
    mu: np.ndarray
    Lambda: np.ndarray
    alpha: float
    beta: float
    ybuffer: SlidingBuffer
    ubuffer: SlidingBuffer
    free_energy: float = float("nan")
    t: int = 0

    _cov: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_prior(
        cls,
        mu0: np.ndarray,
        Lambda0: np.ndarray,
        alpha0: float,
        beta0: float,
        delay_out: int,
        delay_inp: int,
    ) -> "BeliefState":
        """Initialize the belief from prior hyperparameters and empty buffers."""
        mu0 = np.asarray(mu0, dtype=float).copy()
        Lambda0 = np.asarray(Lambda0, dtype=float).copy()
        M = mu0.size

        if mu0.ndim != 1:
            raise ConfigurationError(f"mu0 must be a vector, got shape {mu0.shape}")
        if Lambda0.shape != (M, M):
            raise ConfigurationError(
                f"Lambda0 has shape {Lambda0.shape}, expected ({M}, {M})"
            )
        if not np.allclose(Lambda0, Lambda0.T):
            raise ConfigurationError("Lambda0 must be symmetric")
        if not alpha0 > 1.0:
            raise ConfigurationError(f"alpha0 must be > 1, got {alpha0}")
        if not beta0 > 0.0:
            raise ConfigurationError(f"beta0 must be > 0, got {beta0}")
        try:
            _cholesky(Lambda0)
        except NumericalError as e:
            raise ConfigurationError(str(e)) from e

        return cls(
            mu=mu0,
            Lambda=Lambda0,
            alpha=float(alpha0),
            beta=float(beta0),
            ybuffer=SlidingBuffer(delay_out),
            ubuffer=SlidingBuffer(delay_inp + 1),
        )

    @property
    def dim(self) -> int:
        """Number of features M."""
        return self.mu.size

    def covariance(self) -> np.ndarray:
        """Λ⁻¹, cached until the next update."""
        if self._cov is None:
            cov = cho_solve(_cholesky(self.Lambda), np.eye(self.dim))
            self._cov = 0.5 * (cov + cov.T)
        return self._cov

    def regressor(self, u: float) -> np.ndarray:
        """Regressor for a new input u: [y_{k-1..k-Ly}, u, u_{k-1..k-Lu}]."""
        return np.concatenate([self.ybuffer.values(), self.ubuffer.shifted(u)])

    def noise_variance(self) -> float:
        """Expected noise variance E[1/τ] = β / (α - 1)."""
        return self.beta / (self.alpha - 1.0)

    def clone(self) -> "BeliefState":
        """Create a deep copy of the belief."""
        return BeliefState(
            mu=self.mu.copy(),
            Lambda=self.Lambda.copy(),
            alpha=self.alpha,
            beta=self.beta,
            ybuffer=self.ybuffer.copy(),
            ubuffer=self.ubuffer.copy(),
            free_energy=self.free_energy,
            t=self.t,
            _cov=None if self._cov is None else self._cov.copy(),
        )


# =============================================================================
# Posterior Predictive
# =============================================================================

def posterior_predictive(belief: BeliefState, phi: np.ndarray) -> Tuple[float, float, float]:
    """
    Student-t posterior predictive for a feature vector.

    Returns:
        (ν, m, s²): degrees of freedom, location and squared scale
    """
    nu = 2.0 * belief.alpha
    m = float(belief.mu @ phi)
    s2 = belief.beta / belief.alpha * (1.0 + float(phi @ belief.covariance() @ phi))
    return nu, m, s2


def predictive_variance(belief: BeliefState, phi: np.ndarray) -> float:
    """Variance of the one-step Student-t predictive, s² ν / (ν - 2)."""
    nu, _, s2 = posterior_predictive(belief, phi)
    return s2 * nu / (nu - 2.0)


def log_evidence(belief: BeliefState, phi: np.ndarray, y: float) -> float:
    """Log marginal likelihood of y under the current belief."""
    nu, m, s2 = posterior_predictive(belief, phi)
    return float(student_t.logpdf(y, df=nu, loc=m, scale=math.sqrt(s2)))


# =============================================================================
# Recursive Update
# =============================================================================

def narx_update(
    belief: BeliefState,
    u: float,
    y: float,
    basis: PolynomialBasis,
) -> float:
    """
    Absorb one (input, output) pair into the belief, in place.

    The regressor combines the current output history with u as the newest
    input. Every observation must be absorbed exactly once; repeating a call
    counts its evidence twice.

    Args:
        belief: Belief to update
        u: Input applied before y was observed
        y: New observation
        basis: Feature map matching the belief dimension

    Returns:
        Free energy (negative log-evidence) of y under the prior belief

    Raises:
        NumericalError: if the updated precision is not positive-definite
            or β is not positive. The belief is left untouched.
    """
    if not (np.isfinite(u) and np.isfinite(y)):
        raise NumericalError(f"Non-finite data pair: u={u}, y={y}")

    phi = basis.expand(belief.regressor(u))
    if phi.size != belief.dim:
        raise ConfigurationError(
            f"Basis produces {phi.size} features, belief has {belief.dim}"
        )

    # Unpack prior
    mu_0 = belief.mu
    Lambda_0 = belief.Lambda
    alpha_0 = belief.alpha
    beta_0 = belief.beta

    free_energy = -log_evidence(belief, phi, y)

    # === Conjugate update ===
    Lambda_new = Lambda_0 + np.outer(phi, phi)
    chol = _cholesky(Lambda_new)
    mu_new = cho_solve(chol, Lambda_0 @ mu_0 + phi * y)
    alpha_new = alpha_0 + 0.5
    beta_new = beta_0 + 0.5 * (
        y ** 2 + float(mu_0 @ Lambda_0 @ mu_0) - float(mu_new @ Lambda_new @ mu_new)
    )

    if not np.isfinite(beta_new) or beta_new <= 0.0:
        raise NumericalError(f"Non-positive rate parameter after update: beta={beta_new}")
    if not np.all(np.isfinite(mu_new)):
        raise NumericalError("Non-finite posterior mean after update")

    # === Commit ===
    belief.mu = mu_new
    belief.Lambda = Lambda_new
    belief.alpha = alpha_new
    belief.beta = beta_new
    belief._cov = None
    belief.ubuffer.push(u)
    belief.ybuffer.push(y)
    belief.free_energy = free_energy
    belief.t += 1

    logger.debug(
        f"t={belief.t} u={u:.4f} y={y:.4f} F={free_energy:.4f} beta={beta_new:.4g}"
    )
    return free_energy
