"""Type definitions for COFFEE-JAX.

This module contains type aliases, status codes and the exception taxonomy
used throughout the package. Array types use jaxtyping for runtime type
checking with beartype.
"""

from collections.abc import Callable
from typing import Any, Union

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " m"]
Matrix = Float[Array, "m m"]

# Python floats and traced 0-d arrays are both accepted where a scalar
# parameter (tolerance, radius) is expected.
ScalarLike = Union[float, Float[Array, ""]]

# Gradient function type: grad_fn(lambda, args) -> ∇L(lambda)
GradFn = Callable[[Vector, Any], Vector]

# Hessian function type: hess_fn(lambda, args) -> ∇²L(lambda), dense (m, m)
HessianFn = Callable[[Vector, Any], Matrix]

# Progress sink: receives one formatted message at a time
ProgressSink = Callable[[str], None]


class SteihaugStatus:
    """Constants for Steihaug subproblem termination status."""

    RUNNING = 0
    CONVERGED = 1
    BOUNDARY = 2
    MAX_ITERATIONS = 3
    FAILED = 4
    CALL_LIMIT = 5


class OptimizerError(Exception):
    """Base class for errors raised by the optimizer.

    The message is a human-readable cause, suitable for showing to users.
    """


class ValidationError(OptimizerError, ValueError):
    """Inputs or configuration are inconsistent (dimensions, radius, options)."""


class SolverFailureError(OptimizerError):
    """The trust-region subproblem solver could not produce a step."""
