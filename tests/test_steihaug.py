"""Unit tests for the Steihaug truncated CG subproblem solver.

These tests verify that the kernel returns the Newton step when it fits in
the trust region, stops on the boundary otherwise, and that the stateful
wrapper enforces its call limit.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from coffee_jax.steihaug import (
    Steihaug,
    boundary_step_length,
    steihaug_cg,
)
from coffee_jax.types import SteihaugStatus

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def _random_symmetric(rng, n, definite=True):
    A = rng.standard_normal((n, n))
    if definite:
        return jnp.asarray(A @ A.T + n * np.eye(n))
    return jnp.asarray(0.5 * (A + A.T))


class TestSteihaugKernel:
    """Tests for the pure ``steihaug_cg`` kernel."""

    def test_interior_solution_matches_newton_step(self):
        """With a large radius the step is -H^{-1} g."""
        H = jnp.array([[4.0, 1.0, 0.0], [1.0, 3.0, 0.5], [0.0, 0.5, 2.0]])
        g = jnp.array([1.0, -2.0, 0.5])

        result = steihaug_cg(g, H, 1e-12, 1e6)

        expected = -jnp.linalg.solve(H, g)
        np.testing.assert_allclose(result.step, expected, rtol=1e-8)
        assert int(result.status) in (
            SteihaugStatus.CONVERGED,
            SteihaugStatus.MAX_ITERATIONS,
        )

    def test_zero_gradient_exits_immediately(self):
        H = jnp.eye(2)
        g = jnp.zeros(2)

        result = steihaug_cg(g, H, 0.0, 1.0)

        np.testing.assert_array_equal(result.step, [0.0, 0.0])
        assert int(result.status) == SteihaugStatus.CONVERGED
        assert int(result.iterations) == 0

    def test_small_gradient_below_tolerance(self):
        H = jnp.eye(2)
        g = jnp.array([1e-9, 0.0])

        result = steihaug_cg(g, H, 1e-6, 1.0)

        np.testing.assert_array_equal(result.step, [0.0, 0.0])
        assert int(result.status) == SteihaugStatus.CONVERGED

    def test_boundary_stop_on_large_step(self):
        """H = I, g = (10, 0): the Newton step has norm 10 > delta = 1."""
        H = jnp.eye(2)
        g = jnp.array([10.0, 0.0])

        result = steihaug_cg(g, H, 1e-10, 1.0)

        np.testing.assert_allclose(result.step, [-1.0, 0.0], atol=1e-12)
        assert int(result.status) == SteihaugStatus.BOUNDARY

    def test_negative_curvature_goes_to_boundary(self):
        """H = -I has only negative curvature; step to the boundary along -g."""
        H = -jnp.eye(2)
        g = jnp.array([1.0, 0.0])

        result = steihaug_cg(g, H, 1e-10, 2.0)

        np.testing.assert_allclose(result.step, [-2.0, 0.0], atol=1e-12)
        assert int(result.status) == SteihaugStatus.BOUNDARY

    def test_zero_curvature_goes_to_boundary(self):
        H = jnp.array([[0.0, 0.0], [0.0, 1.0]])
        g = jnp.array([1.0, 0.0])

        result = steihaug_cg(g, H, 1e-10, 0.5)

        np.testing.assert_allclose(result.step, [-0.5, 0.0], atol=1e-12)
        assert int(result.status) == SteihaugStatus.BOUNDARY

    @pytest.mark.parametrize("definite", [True, False])
    @pytest.mark.parametrize("delta", [0.1, 0.5, 2.0])
    def test_step_stays_inside_trust_region(self, definite, delta):
        rng = np.random.default_rng(0)
        for _ in range(5):
            H = _random_symmetric(rng, 4, definite=definite)
            g = jnp.asarray(rng.standard_normal(4))

            result = steihaug_cg(g, H, 1e-10, delta)

            assert int(result.status) != SteihaugStatus.FAILED
            assert float(jnp.linalg.norm(result.step)) <= delta * (1.0 + 1e-10)

    def test_step_is_descent_direction_of_model(self):
        rng = np.random.default_rng(1)
        H = _random_symmetric(rng, 5, definite=False)
        g = jnp.asarray(rng.standard_normal(5))

        result = steihaug_cg(g, H, 1e-10, 1.0)

        p = result.step
        model = jnp.dot(g, p) + 0.5 * jnp.dot(p, H @ p)
        assert float(model) < 0.0

    def test_max_iterations_still_returns_step(self):
        """One CG iteration on a 3x3 SPD system cannot converge, but it is usable."""
        H = jnp.diag(jnp.array([1.0, 10.0, 100.0]))
        g = jnp.array([1.0, 1.0, 1.0])

        result = steihaug_cg(g, H, 1e-12, 1e6, max_iter=1)

        assert int(result.status) == SteihaugStatus.MAX_ITERATIONS
        assert int(result.iterations) == 1
        assert float(jnp.dot(g, result.step)) < 0.0

    def test_overflowing_gradient_fails(self):
        """The boundary root is NaN when the products overflow."""
        H = jnp.eye(2)
        g = jnp.array([1e200, 1e200])

        result = steihaug_cg(g, H, 1e-8, 1.0)

        assert int(result.status) == SteihaugStatus.FAILED
        assert bool(jnp.all(jnp.isfinite(result.step)))

    def test_jit_compatible(self):
        H = jnp.array([[2.0, 0.0], [0.0, 4.0]])
        g = jnp.array([2.0, 4.0])

        @jax.jit
        def solve(g, H, delta):
            return steihaug_cg(g, H, 1e-12, delta)

        result = solve(g, H, jnp.asarray(10.0))

        np.testing.assert_allclose(result.step, [-1.0, -1.0], rtol=1e-10)


class TestBoundaryStepLength:
    def test_from_origin(self):
        tau = boundary_step_length(jnp.zeros(2), jnp.array([3.0, 4.0]), 10.0)
        np.testing.assert_allclose(tau, 2.0, rtol=1e-12)

    def test_from_interior_point(self):
        z = jnp.array([0.5, 0.0])
        d = jnp.array([1.0, 0.0])
        tau = boundary_step_length(z, d, 2.0)
        np.testing.assert_allclose(tau, 1.5, rtol=1e-12)

    def test_zero_direction_is_not_finite(self):
        tau = boundary_step_length(jnp.zeros(2), jnp.zeros(2), 1.0)
        assert not bool(jnp.isfinite(tau))


class TestSteihaugSolver:
    """Tests for the stateful ``Steihaug`` wrapper."""

    def test_iterate_stores_step(self):
        solver = Steihaug(size=2, max_calls=10)
        state = solver.init()
        H = jnp.array([[2.0, 0.0], [0.0, 4.0]])
        g = jnp.array([2.0, 4.0])

        state, success = solver.iterate(state, g, H, 1e-12, 10.0)

        assert bool(success)
        assert int(state.num_calls) == 1
        np.testing.assert_allclose(solver.get_result(state), [-1.0, -1.0], rtol=1e-10)

    def test_get_result_is_copy_of_view(self):
        solver = Steihaug(size=2, max_calls=10)
        state, _ = solver.iterate(
            solver.init(), jnp.array([1.0, 0.0]), jnp.eye(2), 1e-12, 10.0
        )

        np.testing.assert_array_equal(
            Steihaug.get_result(state), Steihaug.result_view(state)
        )
        assert Steihaug.result_view(state) is state.z

    def test_call_limit(self):
        solver = Steihaug(size=2, max_calls=1)
        H = jnp.eye(2)
        g = jnp.array([0.5, 0.0])

        state, first = solver.iterate(solver.init(), g, H, 1e-12, 10.0)
        step = solver.get_result(state)
        state, second = solver.iterate(state, g, H, 1e-12, 10.0)

        assert bool(first)
        assert not bool(second)
        assert int(state.status) == SteihaugStatus.CALL_LIMIT
        assert int(state.num_calls) == 1
        np.testing.assert_array_equal(state.z, step)

    def test_zero_call_limit_always_fails(self):
        solver = Steihaug(size=2, max_calls=0)

        state, success = solver.iterate(
            solver.init(), jnp.array([1.0, 0.0]), jnp.eye(2), 1e-12, 1.0
        )

        assert not bool(success)
        assert int(state.status) == SteihaugStatus.CALL_LIMIT

    def test_kernel_failure_is_reported(self):
        solver = Steihaug(size=2, max_calls=5)

        state, success = solver.iterate(
            solver.init(), jnp.array([1e200, 1e200]), jnp.eye(2), 1e-8, 1.0
        )

        assert not bool(success)
        assert int(state.status) == SteihaugStatus.FAILED
        assert int(state.num_calls) == 1

    def test_shape_mismatch_raises(self):
        solver = Steihaug(size=3, max_calls=5)
        state = solver.init()

        with pytest.raises(ValueError, match="Gradient"):
            solver.iterate(state, jnp.zeros(2), jnp.eye(3), 1e-8, 1.0)
        with pytest.raises(ValueError, match="Hessian"):
            solver.iterate(state, jnp.zeros(3), jnp.eye(2), 1e-8, 1.0)
