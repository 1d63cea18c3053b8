"""Dual Lagrangian of the polymer equilibrium problem.

For monomer totals m (length M), stoichiometry P (N x M) and Boltzmann
weights q (length N), the equilibrium polymer concentrations are

    x(lambda) = q * exp(P lambda)

where lambda holds one chemical potential per monomer. Mass conservation
P^T x = m is the stationarity condition of

    S(lambda) = sum_j q_j exp((P lambda)_j) - lambda . m

and the optimizer minimizes its logarithm, the dual Lagrangian

    L(lambda) = log S(lambda)

whose derivatives have closed forms:

    grad L = (P^T (q * w) - m) / S
    hess L = P^T diag(q * w) P / S - grad L grad L^T

with w = exp(P lambda). L is only defined where S > 0; this is a
precondition on the inputs and is not checked here.
"""

import equinox as eqx
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from coffee_jax.types import Scalar


class Problem(eqx.Module):
    """Problem data of one equilibrium computation.

    Attributes:
        monomers: Monomer totals, already divided by the water molarity when
            scaling is enabled.
        polymers: Stoichiometry matrix, one row per polymer.
        polymers_q: Boltzmann weights of the polymers.
        scaling: Factor converting x back to the caller's concentration
            units (the water molarity, or 1.0 without scaling).
    """

    monomers: Float[Array, " m"]
    polymers: Float[Array, "n m"]
    polymers_q: Float[Array, " n"]
    scaling: float = eqx.field(static=True, default=1.0)

    @property
    def num_monomers(self) -> int:
        return self.monomers.shape[0]

    @property
    def num_polymers(self) -> int:
        return self.polymers.shape[0]


@jaxtyped(typechecker=beartype)
def polymer_weights(
    lam: Float[Array, " m"], problem: Problem
) -> Float[Array, " n"]:
    """exp(P lambda), one weight per polymer."""
    return jnp.exp(problem.polymers @ lam)


def _dual_argument(
    lam: Float[Array, " m"], weights: Float[Array, " n"], problem: Problem
) -> Scalar:
    return jnp.dot(problem.polymers_q, weights) - jnp.dot(lam, problem.monomers)


@jaxtyped(typechecker=beartype)
def lagrangian(lam: Float[Array, " m"], problem: Problem) -> Scalar:
    """Dual Lagrangian L(lambda) = log(q . exp(P lambda) - lambda . m).

    The argument order matches the ``fn(y, args)`` convention of the
    minimiser.
    """
    weights = polymer_weights(lam, problem)
    return jnp.log(_dual_argument(lam, weights, problem))


@jaxtyped(typechecker=beartype)
def lagrangian_gradient(lam: Float[Array, " m"], problem: Problem) -> Float[Array, " m"]:
    """Closed-form gradient of the dual Lagrangian."""
    weights = polymer_weights(lam, problem)
    argument = _dual_argument(lam, weights, problem)
    after_energies = problem.polymers_q * weights
    return (problem.polymers.T @ after_energies - problem.monomers) / argument


@jaxtyped(typechecker=beartype)
def lagrangian_hessian(lam: Float[Array, " m"], problem: Problem) -> Float[Array, "m m"]:
    """Closed-form (dense, M x M) Hessian of the dual Lagrangian.

    The matrix is symmetric but not necessarily positive definite away from
    the optimum, which is why the subproblem is solved with Steihaug CG.
    """
    weights = polymer_weights(lam, problem)
    argument = _dual_argument(lam, weights, problem)
    after_energies = problem.polymers_q * weights
    gradient = (problem.polymers.T @ after_energies - problem.monomers) / argument

    # P^T diag(q * w) P without materializing the N x N diagonal
    polymerization = problem.polymers * after_energies[:, None]
    second_moment = problem.polymers.T @ polymerization

    return second_moment / argument - jnp.outer(gradient, gradient)


@jaxtyped(typechecker=beartype)
def concentrations(lam: Float[Array, " m"], problem: Problem) -> Float[Array, " n"]:
    """Equilibrium polymer concentrations x(lambda), in the caller's units."""
    return problem.polymers_q * polymer_weights(lam, problem) * problem.scaling


@jaxtyped(typechecker=beartype)
def concentration_error(x: Float[Array, " n"], problem: Problem) -> Scalar:
    """Mass-conservation error max_i |m_i - (P^T x)_i| in the caller's units."""
    backtrack = problem.monomers * problem.scaling - problem.polymers.T @ x
    return jnp.max(jnp.abs(backtrack))
