"""Steihaug truncated conjugate gradient for the trust-region subproblem.

This module solves, approximately, the trust-region subproblem that arises
at every outer Newton iteration:

    minimize    g^T p + (1/2) p^T H p
    subject to  ||p|| <= delta

with the Steihaug-Toint method: plain CG on H p = -g, started from p = 0,
which stops as soon as

- the residual is below the requested tolerance (interior solution),
- the next CG iterate would leave the trust region, or the search direction
  has non-positive curvature; the current iterate is then extended along the
  search direction up to the boundary (boundary solution),
- M iterations have been taken (exact CG would have converged by then for a
  positive definite H).

The CG iterates grow monotonically in norm, so the returned step always lies
inside the ball up to round-off.

``steihaug_cg`` is the pure kernel. ``Steihaug`` wraps it with an explicit
state holding the last iterate, residual and direction, plus a lifetime call
counter: once ``max_calls`` calls have been made every further call fails.
"""

from typing import NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from coffee_jax.types import ScalarLike, SteihaugStatus
from coffee_jax.utils import two_norm

STATUS_DTYPE = jnp.int32


def _status(code: int) -> Int[Array, ""]:
    return jnp.array(code, dtype=STATUS_DTYPE)


class SteihaugResult(NamedTuple):
    """Result from the Steihaug kernel."""

    step: Float[Array, " m"]
    residual: Float[Array, " m"]
    direction: Float[Array, " m"]
    status: Int[Array, ""]
    iterations: Int[Array, ""]


class _CGState(NamedTuple):
    """Internal state for the truncated conjugate gradient loop."""

    z: Float[Array, " m"]
    r: Float[Array, " m"]
    d: Float[Array, " m"]
    iteration: Int[Array, ""]
    status: Int[Array, ""]


def boundary_step_length(
    z: Float[Array, " m"],
    d: Float[Array, " m"],
    delta: ScalarLike,
) -> Float[Array, ""]:
    """Non-negative root tau of ||z + tau d|| = delta.

    Expands to a (d.d) tau^2 + 2 (z.d) tau + (z.z - delta^2) = 0. With z
    strictly inside the ball c < 0, so the "+" root is the non-negative one.
    The result is non-finite when d is zero or the products overflow; callers
    must treat that as a failure.
    """
    a = jnp.dot(d, d)
    b = 2.0 * jnp.dot(z, d)
    c = jnp.dot(z, z) - delta * delta
    return (-b + jnp.sqrt(b * b - 4.0 * a * c)) / (2.0 * a)


@jaxtyped(typechecker=beartype)
def steihaug_cg(
    gradient: Float[Array, " m"],
    hessian: Float[Array, "m m"],
    tolerance: ScalarLike,
    delta: ScalarLike,
    max_iter: Optional[int] = None,
) -> SteihaugResult:
    """Approximately minimize the quadratic model inside the trust region.

    Uses the sign convention r = H z + g (r_0 = g) and d_0 = -g, so that
    the CG directions are descent directions of the model.

    Args:
        gradient: Gradient g of the objective at the current point.
        hessian: Dense Hessian H, shape (m, m).
        tolerance: Stop once ||r|| < tolerance.
        delta: Trust-region radius.
        max_iter: Maximum number of CG iterations, defaults to m.

    Returns:
        SteihaugResult with the step, last residual and direction, the
        termination status and the number of CG iterations taken.
    """
    n = gradient.shape[0]
    if max_iter is None:
        max_iter = n

    # A zero gradient is already optimal, even for a zero tolerance
    grad_norm = two_norm(gradient)
    initial_status = jnp.where(
        (grad_norm < tolerance) | (grad_norm == 0.0),
        _status(SteihaugStatus.CONVERGED),
        _status(SteihaugStatus.RUNNING),
    )
    init_cg = _CGState(
        z=jnp.zeros_like(gradient),
        r=gradient,
        d=-gradient,
        iteration=jnp.array(0, dtype=STATUS_DTYPE),
        status=initial_status,
    )

    def cond_fn(state: _CGState) -> Bool[Array, ""]:
        return (state.status == SteihaugStatus.RUNNING) & (state.iteration < max_iter)

    def body_fn(state: _CGState) -> _CGState:
        Hd = hessian @ state.d
        curvature = jnp.dot(state.d, Hd)
        r_norm_sq = jnp.dot(state.r, state.r)
        alpha = r_norm_sq / curvature

        # Candidate full CG step; NaN norms count as leaving the region
        z_new = state.z + alpha * state.d
        leaves_region = (curvature <= 0.0) | ~(two_norm(z_new) < delta)

        tau = boundary_step_length(state.z, state.d, delta)
        tau_ok = jnp.isfinite(tau)
        z_boundary = jnp.where(tau_ok, state.z + tau * state.d, state.z)
        boundary_status = jnp.where(
            tau_ok,
            _status(SteihaugStatus.BOUNDARY),
            _status(SteihaugStatus.FAILED),
        )

        r_new = state.r + alpha * Hd
        r_new_norm = two_norm(r_new)
        converged = (r_new_norm < tolerance) | (r_new_norm == 0.0)

        beta = jnp.dot(r_new, r_new) / r_norm_sq
        d_new = beta * state.d - r_new

        status = jnp.where(
            leaves_region,
            boundary_status,
            jnp.where(
                converged,
                _status(SteihaugStatus.CONVERGED),
                _status(SteihaugStatus.RUNNING),
            ),
        )

        return _CGState(
            z=jnp.where(leaves_region, z_boundary, z_new),
            r=jnp.where(leaves_region, state.r, r_new),
            d=jnp.where(leaves_region | converged, state.d, d_new),
            iteration=state.iteration + 1,
            status=status,
        )

    final_cg = jax.lax.while_loop(cond_fn, body_fn, init_cg)

    # Running out of iterations still leaves a usable (descent) step
    status = jnp.where(
        final_cg.status == SteihaugStatus.RUNNING,
        _status(SteihaugStatus.MAX_ITERATIONS),
        final_cg.status,
    )

    return SteihaugResult(
        step=final_cg.z,
        residual=final_cg.r,
        direction=final_cg.d,
        status=status,
        iterations=final_cg.iteration,
    )


class SteihaugState(eqx.Module):
    """Buffers of the Steihaug solver.

    Attributes:
        z: Latest CG iterate, i.e. the step returned by the last call.
        r: Latest residual.
        d: Latest search direction.
        status: Status of the last call (see ``SteihaugStatus``).
        num_calls: Number of calls that ran the kernel so far.
    """

    z: Float[Array, " m"]
    r: Float[Array, " m"]
    d: Float[Array, " m"]
    status: Int[Array, ""]
    num_calls: Int[Array, ""]


class Steihaug(eqx.Module):
    """Trust-region subproblem solver with a lifetime call limit.

    The solver itself is immutable; its buffers live in a ``SteihaugState``
    that is threaded through ``iterate``, so that it can be carried inside
    a jitted optimization loop.

    Attributes:
        size: Problem dimension M.
        max_calls: Number of ``iterate`` calls allowed over the lifetime of
            a state. Reaching it makes every later call fail immediately.

    Example:
        >>> solver = Steihaug(size=2, max_calls=10)
        >>> state = solver.init()
        >>> state, ok = solver.iterate(state, g, H, 1e-8, 1.0)
        >>> step = solver.get_result(state)
    """

    size: int = eqx.field(static=True)
    max_calls: int = eqx.field(static=True)

    def init(self) -> SteihaugState:
        zeros = jnp.zeros((self.size,))
        return SteihaugState(
            z=zeros,
            r=zeros,
            d=zeros,
            status=_status(SteihaugStatus.RUNNING),
            num_calls=jnp.array(0, dtype=STATUS_DTYPE),
        )

    def iterate(
        self,
        state: SteihaugState,
        gradient: Float[Array, " m"],
        hessian: Float[Array, "m m"],
        tolerance: ScalarLike,
        delta: ScalarLike,
    ) -> tuple[SteihaugState, Bool[Array, ""]]:
        """Solve one trust-region subproblem.

        Returns:
            Tuple of (new_state, success). On success ``new_state.z`` is the
            step. Failure means the call limit was reached or the boundary
            step could not be computed.

        Raises:
            ValueError: If the gradient or Hessian does not match ``size``.
        """
        if gradient.shape != (self.size,):
            raise ValueError(
                f"Gradient has shape {gradient.shape}, expected ({self.size},)."
            )
        if hessian.shape != (self.size, self.size):
            raise ValueError(
                f"Hessian has shape {hessian.shape}, "
                f"expected ({self.size}, {self.size})."
            )

        exhausted = state.num_calls >= self.max_calls

        def run(state: SteihaugState) -> SteihaugState:
            result = steihaug_cg(gradient, hessian, tolerance, delta)
            return SteihaugState(
                z=result.step,
                r=result.residual,
                d=result.direction,
                status=result.status,
                num_calls=state.num_calls + 1,
            )

        def refuse(state: SteihaugState) -> SteihaugState:
            return SteihaugState(
                z=state.z,
                r=state.r,
                d=state.d,
                status=_status(SteihaugStatus.CALL_LIMIT),
                num_calls=state.num_calls,
            )

        new_state = jax.lax.cond(exhausted, refuse, run, state)
        success = (new_state.status != SteihaugStatus.FAILED) & (
            new_state.status != SteihaugStatus.CALL_LIMIT
        )
        return new_state, success

    @staticmethod
    def get_result(state: SteihaugState) -> Float[Array, " m"]:
        """Owned copy of the latest step."""
        return jnp.array(state.z, copy=True)

    @staticmethod
    def result_view(state: SteihaugState) -> Float[Array, " m"]:
        """The latest step itself, for callers that only read it."""
        return state.z
