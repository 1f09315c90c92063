"""
narx_efe.basis - Polynomial Feature Map

Expands a NARX regressor (lagged outputs, current and lagged inputs) into
all monomials up to a given total degree.

Ordering:
    [1] + degree-1 monomials + degree-2 monomials + ... + degree-H monomials

Within a degree, monomials follow itertools.combinations_with_replacement
over the variable indices, e.g. for two variables and degree 2:

    1, x0, x1, x0*x0, x0*x1, x1*x1

The ordering never changes for a given (n_vars, degree, include_bias), which
keeps the posterior mean and precision aligned over the agent's lifetime.
"""

from __future__ import annotations

from functools import lru_cache
from itertools import combinations_with_replacement
from math import comb
from typing import Sequence, Tuple

import numpy as np

from narx_efe.exceptions import ConfigurationError


def feature_dim(n_vars: int, degree: int, include_bias: bool = True) -> int:
    """Number of monomials of total degree <= degree over n_vars variables."""
    if n_vars < 1 or degree < 1:
        raise ConfigurationError(
            f"n_vars and degree must be positive, got n_vars={n_vars}, degree={degree}"
        )
    M = comb(n_vars + degree, degree)
    return M if include_bias else M - 1


@lru_cache(maxsize=32)
def _monomial_indices(n_vars: int, degree: int) -> Tuple[Tuple[int, ...], ...]:
    terms = []
    for d in range(1, degree + 1):
        terms.extend(combinations_with_replacement(range(n_vars), d))
    return tuple(terms)


class PolynomialBasis:
    """
    Fixed polynomial basis over a regressor of n_vars variables.

    The exponent matrix is built once; expansion is a product of powers,
    which also vectorizes over a batch of regressors.
    """

    def __init__(self, n_vars: int, degree: int, include_bias: bool = True):
        self.dim = feature_dim(n_vars, degree, include_bias)
        self.n_vars = n_vars
        self.degree = degree
        self.include_bias = include_bias

        terms = _monomial_indices(n_vars, degree)
        exponents = np.zeros((len(terms), n_vars), dtype=int)
        for row, term in enumerate(terms):
            for idx in term:
                exponents[row, idx] += 1
        if include_bias:
            exponents = np.vstack([np.zeros((1, n_vars), dtype=int), exponents])
        self.exponents = exponents

    @classmethod
    def for_delays(
        cls,
        delay_out: int,
        delay_inp: int,
        degree: int,
        include_bias: bool = True,
    ) -> "PolynomialBasis":
        """Basis over Ly lagged outputs, Lu lagged inputs and the current input."""
        if delay_out < 1 or delay_inp < 1:
            raise ConfigurationError(
                f"delays must be positive, got delay_out={delay_out}, delay_inp={delay_inp}"
            )
        return cls(delay_out + delay_inp + 1, degree, include_bias)

    def expand(self, regressor: Sequence[float]) -> np.ndarray:
        """Feature vector of length dim for a single regressor."""
        x = np.asarray(regressor, dtype=float)
        if x.shape != (self.n_vars,):
            raise ConfigurationError(
                f"Regressor has shape {x.shape}, expected ({self.n_vars},)"
            )
        return np.prod(x[None, :] ** self.exponents, axis=1)

    def expand_batch(self, regressors: np.ndarray) -> np.ndarray:
        """Feature matrix (N, dim) for a batch of regressors (N, n_vars)."""
        X = np.atleast_2d(np.asarray(regressors, dtype=float))
        if X.shape[1] != self.n_vars:
            raise ConfigurationError(
                f"Regressors have {X.shape[1]} columns, expected {self.n_vars}"
            )
        return np.prod(X[:, None, :] ** self.exponents[None, :, :], axis=2)

    def __repr__(self) -> str:
        return (
            f"PolynomialBasis(n_vars={self.n_vars}, degree={self.degree}, "
            f"include_bias={self.include_bias}, dim={self.dim})"
        )


def expand(regressor: Sequence[float], degree: int, include_bias: bool = True) -> np.ndarray:
    """Expand a regressor into its polynomial feature vector."""
    x = np.asarray(regressor, dtype=float)
    return PolynomialBasis(x.size, degree, include_bias).expand(x)
