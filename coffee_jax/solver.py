"""Trust-region Newton minimiser using Optimistix.

This module contains the outer optimization loop as an
``optimistix.AbstractMinimiser``. Each step:

1. Evaluates the gradient and the dense Hessian of the objective at the
   current point (user-supplied functions, or ``jax.grad``/``jax.hessian``).
2. Solves the trust-region subproblem with Steihaug CG, using the
   superlinear tolerance ``min(||g||, 0.5) * ||g||``.
3. Compares the actual reduction of the objective with the reduction
   predicted by the quadratic model, ``rho = actual / predicted``.
4. Adapts the radius: shrink when ``rho`` is below ``rho_thresholds[0]``;
   grow (up to ``max_delta``) when ``rho`` exceeds ``rho_thresholds[1]`` and
   the step used at least ``norm_ratio_threshold`` of the radius.
5. Accepts the step if ``rho > eta``; otherwise the iterate is rolled back.
   The radius change of step 4 is kept either way.

The loop stops when a step does not change the objective at all, when the
subproblem solver fails, or after ``max_steps`` iterations. The minimiser
keeps a per-step history so that callers can report progress after the
jitted loop has finished.
"""

from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import optimistix as optx
from jaxtyping import Array, Bool, Float, Int

from coffee_jax.steihaug import Steihaug, SteihaugState
from coffee_jax.types import GradFn, HessianFn
from coffee_jax.utils import bind_args, two_norm


class TrustRegionState(eqx.Module):
    """State for the trust-region Newton minimiser.

    Attributes:
        step_count: Number of outer iterations performed.
        f_val: Objective value at the current iterate.
        grad: Gradient at the current iterate.
        delta: Current trust-region radius.
        rho: Reduction ratio of the last step.
        accepted: Whether the last step was kept.
        stalled: The last step left the objective exactly unchanged.
        failed: The subproblem solver failed on the last step.
        subproblem: Buffers and call counter of the Steihaug solver.
        history_f: Objective value after each step.
        history_y: Iterate after each step.
        history_reported: Steps that completed normally (neither stalled
            nor failed) and should be reported as progress.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, " m"]
    delta: Float[Array, ""]
    rho: Float[Array, ""]
    accepted: Bool[Array, ""]
    stalled: Bool[Array, ""]
    failed: Bool[Array, ""]
    subproblem: SteihaugState
    history_f: Float[Array, " max_steps"]
    history_y: Float[Array, "max_steps m"]
    history_reported: Bool[Array, " max_steps"]


class TrustRegionNewton(optx.AbstractMinimiser):
    """Trust-region Newton minimiser with a Steihaug CG subproblem solver.

    Designed for the small, dense, possibly indefinite Hessians of the
    polymer equilibrium dual, but works for any twice differentiable scalar
    objective ``fn(y, args)``.

    Attributes:
        rtol: Relative gradient tolerance, ``||g|| < atol + rtol * |f|``
            stops the loop. Zero (the default) disables the test.
        atol: Absolute gradient tolerance, see ``rtol``.
        max_steps: Maximum number of outer iterations; also sizes the
            progress history.
        initial_delta: Starting trust-region radius.
        max_delta: Ceiling of the trust-region radius.
        eta: Steps with ``rho <= eta`` are rejected.
        norm_ratio_threshold: The radius only grows when the step length is
            at least this fraction of the radius.
        rho_thresholds: ``(shrink_below, grow_above)`` for ``rho``.
        scale_factors: ``(shrink_factor, grow_factor)`` for the radius.
        max_subproblem_calls: Lifetime call limit of the Steihaug solver,
            defaults to ``max_steps``.
        grad_fn: Optional gradient ``grad_fn(y, args)`` (else ``jax.grad``).
        hess_fn: Optional dense Hessian ``hess_fn(y, args)``
            (else ``jax.hessian``).

    Example:
        >>> import jax.numpy as jnp
        >>> import optimistix as optx
        >>> from coffee_jax import TrustRegionNewton
        >>>
        >>> def objective(y, args):
        ...     return jnp.sum((y - 1.0) ** 2)
        >>>
        >>> solver = TrustRegionNewton(max_steps=50)
        >>> sol = optx.minimise(objective, solver, jnp.zeros(3), max_steps=50, throw=False)
    """

    # Gradient tolerances (required by AbstractMinimiser)
    rtol: float = 0.0
    atol: float = 0.0

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx.max_norm)

    # Maximum iterations
    max_steps: int = eqx.field(static=True, default=250)

    # Trust-region policy
    initial_delta: float = 1.0
    max_delta: float = 1000.0
    eta: float = 0.15
    norm_ratio_threshold: float = 0.95
    rho_thresholds: tuple[float, float] = (0.25, 0.75)
    scale_factors: tuple[float, float] = (0.25, 2.0)

    # Subproblem solver
    max_subproblem_calls: Optional[int] = eqx.field(static=True, default=None)

    # Optional user-supplied derivative functions
    grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    hess_fn: Optional[HessianFn] = eqx.field(static=True, default=None)

    def _subproblem_solver(self, n: int) -> Steihaug:
        max_calls = self.max_subproblem_calls
        if max_calls is None:
            max_calls = self.max_steps
        return Steihaug(size=n, max_calls=max_calls)

    def _compute_grad(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        args: Any,
    ) -> Float[Array, " m"]:
        """Compute gradient of objective using user-supplied fn or AD."""
        if self.grad_fn is not None:
            return self.grad_fn(y, args)
        grad, _ = jax.grad(bind_args(fn, args), has_aux=True)(y)
        return grad

    def _compute_hessian(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        args: Any,
    ) -> Float[Array, "m m"]:
        """Compute the dense Hessian using user-supplied fn or AD."""
        if self.hess_fn is not None:
            return self.hess_fn(y, args)
        hessian, _ = jax.hessian(bind_args(fn, args), has_aux=True)(y)
        return hessian

    def init(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> TrustRegionState:
        """Initialize the trust-region state at ``y``.

        Evaluates the objective and gradient, sets the radius to
        ``initial_delta`` and starts a fresh subproblem solver, so repeated
        runs never share state.
        """
        n = y.shape[0]
        f_val, _aux = fn(y, args)
        grad = self._compute_grad(fn, y, args)

        return TrustRegionState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            delta=jnp.asarray(self.initial_delta, dtype=f_val.dtype),
            rho=jnp.zeros((), dtype=f_val.dtype),
            accepted=jnp.array(False),
            stalled=jnp.array(False),
            failed=jnp.array(False),
            subproblem=self._subproblem_solver(n).init(),
            history_f=jnp.zeros((self.max_steps,), dtype=f_val.dtype),
            history_y=jnp.zeros((self.max_steps, n), dtype=y.dtype),
            history_reported=jnp.zeros((self.max_steps,), dtype=bool),
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        args: Any,
        options: dict[str, Any],
        state: TrustRegionState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " m"], TrustRegionState, Any]:
        """Perform one trust-region Newton iteration.

        Args:
            fn: Objective function.
            y: Current iterate.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        grad = state.grad
        hessian = self._compute_hessian(fn, y, args)

        # Inner precision follows outer progress
        grad_norm = two_norm(grad)
        tolerance = jnp.minimum(grad_norm, 0.5) * grad_norm

        subproblem, success = self._subproblem_solver(y.shape[0]).iterate(
            state.subproblem, grad, hessian, tolerance, state.delta
        )
        step = jnp.where(success, Steihaug.result_view(subproblem), jnp.zeros_like(y))

        y_trial = y + step
        f_trial, _ = fn(y_trial, args)

        pred_reduction = -(jnp.dot(grad, step) + 0.5 * jnp.dot(step, hessian @ step))
        actual_reduction = state.f_val - f_trial

        stalled = success & (actual_reduction == 0.0)
        rho = jnp.where(pred_reduction != 0.0, actual_reduction / pred_reduction, 0.0)

        shrink_below, grow_above = self.rho_thresholds
        shrink_factor, grow_factor = self.scale_factors
        shrink = rho < shrink_below
        grow = (rho > grow_above) & (
            two_norm(step) >= self.norm_ratio_threshold * state.delta
        )
        adapted_delta = jnp.where(
            shrink,
            shrink_factor * state.delta,
            jnp.where(
                grow,
                jnp.minimum(self.max_delta, grow_factor * state.delta),
                state.delta,
            ),
        )

        # Radius adaptation happens before, and independently of, acceptance
        completed = success & ~stalled
        delta_new = jnp.where(completed, adapted_delta, state.delta)
        accepted = completed & (rho > self.eta)

        # A stalled step stays applied; a rejected one is rolled back exactly
        keep_trial = stalled | accepted
        y_new = jnp.where(keep_trial, y_trial, y)
        f_new = jnp.where(keep_trial, f_trial, state.f_val)
        grad_new = jax.lax.cond(
            keep_trial,
            lambda: self._compute_grad(fn, y_trial, args),
            lambda: grad,
        )

        index = state.step_count
        new_state = TrustRegionState(
            step_count=state.step_count + 1,
            f_val=f_new,
            grad=grad_new,
            delta=delta_new,
            rho=jnp.where(completed, rho, state.rho),
            accepted=accepted,
            stalled=stalled,
            failed=~success,
            subproblem=subproblem,
            history_f=state.history_f.at[index].set(f_new),
            history_y=state.history_y.at[index].set(y_new),
            history_reported=state.history_reported.at[index].set(completed),
        )

        _, aux = fn(y_new, args)
        return y_new, new_state, aux

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        args: Any,
        options: dict[str, Any],
        state: TrustRegionState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Stops on a stalled step, a subproblem failure, a small gradient
        (only with non-zero tolerances) or the iteration limit. Only the
        latter is reported as ``max_steps_reached``; a failure is reported
        through ``state.failed`` so that callers can tell it apart.
        """
        grad_small = self.norm(state.grad) < self.atol + self.rtol * jnp.abs(
            state.f_val
        )
        max_iters_reached = state.step_count >= self.max_steps

        done = state.stalled | state.failed | grad_small | max_iters_reached
        stopped_early = state.stalled | state.failed | grad_small

        result = jax.lax.cond(
            max_iters_reached & ~stopped_early,
            lambda: optx.RESULTS.max_steps_reached,
            lambda: optx.RESULTS.successful,
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " m"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: TrustRegionState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " m"], Any, dict[str, Any]]:
        """Post-process the optimization result.

        Returns:
            Tuple of (y, aux, stats) where stats is a dictionary
            containing solver statistics.
        """
        stats = {
            "num_steps": state.step_count,
            "final_objective": state.f_val,
            "final_grad_norm": two_norm(state.grad),
            "final_delta": state.delta,
            "subproblem_calls": state.subproblem.num_calls,
            "failed": state.failed,
        }

        return y, aux, stats
