"""Shared fixtures for the NARX agent tests."""

import numpy as np
import pytest

from narx_efe import (
    BeliefState,
    GoalSpecification,
    NARXAgent,
    NARXConfig,
    PlannerConfig,
)


def simulate_narx(n_steps, seed=0, noise=0.01):
    """Inputs and outputs of a small nonlinear ARX process."""
    rng = np.random.RandomState(seed)
    u = rng.uniform(-1.0, 1.0, size=n_steps)
    y = np.zeros(n_steps)
    for k in range(n_steps):
        y1 = y[k - 1] if k >= 1 else 0.0
        y2 = y[k - 2] if k >= 2 else 0.0
        u1 = u[k - 1] if k >= 1 else 0.0
        y[k] = 0.6 * y1 - 0.2 * y2 + 0.5 * u[k] + 0.1 * u1 ** 2 + noise * rng.randn()
    return u, y


@pytest.fixture
def config():
    """Small model: Ly=2, Lu=2, H=2, T=5."""
    return NARXConfig(
        delay_inp=2,
        delay_out=2,
        pol_degree=2,
        time_horizon=5,
        control_lims=(-1.0, 1.0),
        planner=PlannerConfig(time_limit=2.0, seed=0),
    )


@pytest.fixture
def basis(config):
    return config.make_basis()


@pytest.fixture
def belief(config, basis):
    """Fresh belief at the prior."""
    mu0, Lambda0 = config.prior.build(basis.dim)
    return BeliefState.from_prior(
        mu0, Lambda0, config.prior.alpha0, config.prior.beta0,
        config.delay_out, config.delay_inp,
    )


@pytest.fixture
def trained_agent(config):
    """Agent that has absorbed 40 observations of the test process."""
    agent = NARXAgent(config)
    u, y = simulate_narx(40, seed=1)
    for u_k, y_k in zip(u, y):
        agent.update(y_k, u_k)
    return agent


@pytest.fixture
def goals():
    return GoalSpecification.constant(0.5, 0.1, 20)
