"""COFFEE-JAX: polymer equilibrium concentrations in JAX.

This package computes the equilibrium composition of a polymerizing mixture
by minimizing the dual Lagrangian of the mass-conservation problem with a
trust-region Newton method. The trust-region subproblem is solved with
Steihaug truncated conjugate gradients, and the outer loop is an Optimistix
minimiser.
"""

import jax

# Boltzmann weights reach e^{-230} and, for energies near -230 kcal/mol, e^{370};
# float32 cannot represent them.
jax.config.update("jax_enable_x64", True)

from coffee_jax.format import (  # noqa: E402
    conclude_message,
    process_message,
    results_message,
    start_message,
)
from coffee_jax.lagrangian import (  # noqa: E402
    Problem,
    concentration_error,
    concentrations,
    lagrangian,
    lagrangian_gradient,
    lagrangian_hessian,
    polymer_weights,
)
from coffee_jax.optimizer import (  # noqa: E402
    OptimizeOutcome,
    Optimizer,
    OptimizerArgs,
    OptimizerResults,
)
from coffee_jax.solver import TrustRegionNewton, TrustRegionState  # noqa: E402
from coffee_jax.steihaug import (  # noqa: E402
    Steihaug,
    SteihaugResult,
    SteihaugState,
    steihaug_cg,
)
from coffee_jax.thermo import (  # noqa: E402
    boltzmann_factors,
    thermal_energy,
    water_density,
    water_molarity,
)
from coffee_jax.types import (  # noqa: E402
    OptimizerError,
    SolverFailureError,
    SteihaugStatus,
    ValidationError,
)

__all__ = [
    # Optimizer
    "Optimizer",
    "OptimizerArgs",
    "OptimizerResults",
    "OptimizeOutcome",
    # Minimiser
    "TrustRegionNewton",
    "TrustRegionState",
    # Subproblem solver
    "Steihaug",
    "SteihaugState",
    "SteihaugResult",
    "SteihaugStatus",
    "steihaug_cg",
    # Lagrangian
    "Problem",
    "polymer_weights",
    "lagrangian",
    "lagrangian_gradient",
    "lagrangian_hessian",
    "concentrations",
    "concentration_error",
    # Thermodynamics
    "water_density",
    "water_molarity",
    "thermal_energy",
    "boltzmann_factors",
    # Messages
    "start_message",
    "process_message",
    "conclude_message",
    "results_message",
    # Errors
    "OptimizerError",
    "ValidationError",
    "SolverFailureError",
]
