"""
narx_efe.exceptions - Error Taxonomy

Configuration errors are raised before anything runs. Numerical errors abort
the current control step. Neither is corrected silently; the caller decides
whether to halt the trial or fall back to a safe action.
"""


class NARXError(Exception):
    """Base exception for NARX agent errors."""
    pass


class ConfigurationError(NARXError, ValueError):
    """Inconsistent dimensions, invalid hyperparameters or malformed goals."""
    pass


class NumericalError(NARXError, ArithmeticError):
    """Belief update or prediction produced an invalid quantity."""
    pass


class BoundsViolationError(NARXError, AssertionError):
    """Planner produced an action outside the actuator limits."""
    pass
