"""Tests for the dual Lagrangian and its closed-form derivatives."""

import jax
import jax.numpy as jnp
import numpy as np

from coffee_jax.lagrangian import (
    Problem,
    concentration_error,
    concentrations,
    lagrangian,
    lagrangian_gradient,
    lagrangian_hessian,
    polymer_weights,
)

jax.config.update("jax_enable_x64", True)

GOLDEN = (np.sqrt(5.0) - 1.0) / 2.0


def _dimer_problem(scaling=1.0):
    """A + B <-> AB with unit totals and zero energies."""
    return Problem(
        monomers=jnp.array([1.0, 1.0]),
        polymers=jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]),
        polymers_q=jnp.array([1.0, 1.0, 1.0]),
        scaling=scaling,
    )


def _random_problem(seed, num_monomers=3, num_polymers=7):
    rng = np.random.default_rng(seed)
    polymers = rng.integers(0, 3, size=(num_polymers, num_monomers)).astype(float)
    polymers[:num_monomers] = np.eye(num_monomers)
    return Problem(
        monomers=jnp.asarray(rng.uniform(0.1, 2.0, num_monomers)),
        polymers=jnp.asarray(polymers),
        polymers_q=jnp.asarray(rng.uniform(0.5, 3.0, num_polymers)),
    )


class TestProblem:
    def test_sizes(self):
        problem = _dimer_problem()
        assert problem.num_monomers == 2
        assert problem.num_polymers == 3

    def test_polymer_weights(self):
        problem = _dimer_problem()
        lam = jnp.array([0.5, -1.0])
        np.testing.assert_allclose(
            polymer_weights(lam, problem), jnp.exp(jnp.array([0.5, -1.0, -0.5]))
        )


class TestLagrangian:
    def test_value_at_origin(self):
        """At lambda = 0 the Lagrangian is log(sum(q))."""
        problem = _dimer_problem()
        np.testing.assert_allclose(lagrangian(jnp.zeros(2), problem), np.log(3.0))

    def test_gradient_matches_autodiff(self):
        for seed in range(3):
            problem = _random_problem(seed)
            lam = jnp.asarray(np.random.default_rng(seed + 10).uniform(-0.5, 0.2, 3))

            expected = jax.grad(lagrangian)(lam, problem)
            np.testing.assert_allclose(
                lagrangian_gradient(lam, problem), expected, rtol=1e-10, atol=1e-12
            )

    def test_hessian_matches_autodiff(self):
        for seed in range(3):
            problem = _random_problem(seed)
            lam = jnp.asarray(np.random.default_rng(seed + 10).uniform(-0.5, 0.2, 3))

            expected = jax.hessian(lagrangian)(lam, problem)
            hessian = lagrangian_hessian(lam, problem)
            np.testing.assert_allclose(hessian, expected, rtol=1e-9, atol=1e-12)
            np.testing.assert_allclose(hessian, hessian.T, atol=1e-14)

    def test_stationary_at_equilibrium(self):
        """The dimer optimum has x_A = x_B = (sqrt(5) - 1) / 2."""
        problem = _dimer_problem()
        lam = jnp.full((2,), np.log(GOLDEN))

        np.testing.assert_allclose(
            lagrangian_gradient(lam, problem), [0.0, 0.0], atol=1e-14
        )


class TestConcentrations:
    def test_equilibrium_concentrations(self):
        problem = _dimer_problem()
        lam = jnp.full((2,), np.log(GOLDEN))

        x = concentrations(lam, problem)

        np.testing.assert_allclose(x, [GOLDEN, GOLDEN, GOLDEN**2], rtol=1e-12)
        assert float(concentration_error(x, problem)) < 1e-12

    def test_scaling_converts_units(self):
        """Monomers are stored divided by the scaling; x comes back multiplied."""
        scaling = 55.0
        problem = Problem(
            monomers=jnp.array([1.0, 1.0]) / scaling,
            polymers=jnp.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]]),
            polymers_q=jnp.array([1.0, 1.0, 1.0]),
            scaling=scaling,
        )
        lam = jnp.array([-1.0, -2.0])

        x = concentrations(lam, problem)

        np.testing.assert_allclose(x, scaling * jnp.exp(jnp.array([-1.0, -2.0, -3.0])))
        backtrack = np.array([1.0, 1.0]) - np.asarray(problem.polymers.T @ x)
        expected_error = np.max(np.abs(backtrack))
        np.testing.assert_allclose(concentration_error(x, problem), expected_error)

    def test_error_is_max_abs_violation(self):
        problem = _dimer_problem()
        x = jnp.array([0.5, 0.25, 0.25])
        # P^T x = (0.75, 0.5) against totals (1, 1)
        np.testing.assert_allclose(concentration_error(x, problem), 0.5)
