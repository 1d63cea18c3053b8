"""Equilibrium optimizer for polymerizing mixtures.

``Optimizer`` owns the problem data of one mixture (monomer totals, polymer
stoichiometry and Boltzmann-weighted polymer energies) and computes the
equilibrium polymer concentrations by minimizing the dual Lagrangian with
``TrustRegionNewton``.

Example:
    >>> import numpy as np
    >>> from coffee_jax import Optimizer, OptimizerArgs
    >>>
    >>> monomers = np.array([1.0, 1.0])
    >>> polymers = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    >>> energies = np.array([0.0, 0.0, 0.0])
    >>> optimizer = Optimizer(monomers, polymers, energies, OptimizerArgs(use_scaling=False))
    >>> outcome = optimizer.optimize(1.0)
    >>> results = optimizer.get_results()
"""

import logging
import math
import time
from typing import NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
from jaxtyping import ArrayLike

from coffee_jax.format import conclude_message, process_message, start_message
from coffee_jax.lagrangian import (
    Problem,
    concentration_error,
    concentrations,
    lagrangian,
    lagrangian_gradient,
    lagrangian_hessian,
)
from coffee_jax.solver import TrustRegionNewton, TrustRegionState
from coffee_jax.thermo import boltzmann_factors, thermal_energy, water_molarity
from coffee_jax.types import (
    ProgressSink,
    SolverFailureError,
    SteihaugStatus,
    ValidationError,
)

logger = logging.getLogger(__name__)


class OptimizerArgs(eqx.Module):
    """Optional parameters of the optimizer.

    Attributes:
        max_iterations: Cap on outer iterations. Also the lifetime call
            limit of the subproblem solver.
        max_delta: Ceiling of the trust-region radius.
        eta: Steps with a reduction ratio at or below ``eta`` are rejected.
        norm_ratio_threshold: The radius only grows when the step length is
            at least this fraction of the radius.
        rho_thresholds: ``(shrink_below, grow_above)`` for the reduction
            ratio.
        scale_factors: ``(shrink_factor, grow_factor)`` for the radius.
        use_scaling: Express concentrations relative to water molarity and
            energies in units of kT at ``temperature_celsius``. Without
            scaling, energies are used as given (kT = 1).
        temperature_celsius: Temperature used for scaling.
        use_terminal: Print messages to stdout instead of accumulating them
            (only when no sink is given to the optimizer).
        verbose: Include the elapsed time in the concluding message.
    """

    max_iterations: int = 250
    max_delta: float = 1000.0
    eta: float = 0.15
    norm_ratio_threshold: float = 0.95
    rho_thresholds: tuple[float, float] = (0.25, 0.75)
    scale_factors: tuple[float, float] = (0.25, 2.0)
    use_scaling: bool = True
    temperature_celsius: float = 37.0
    use_terminal: bool = False
    verbose: bool = False

    def __check_init__(self):
        if self.max_iterations < 1:
            raise ValidationError("Maximum number of iterations must be positive.")
        if not (self.max_delta > 0.0 and math.isfinite(self.max_delta)):
            raise ValidationError("Maximum delta value is not valid.")
        if len(self.rho_thresholds) != 2 or len(self.scale_factors) != 2:
            raise ValidationError("Thresholds and scale factors must be pairs.")
        if self.rho_thresholds[0] > self.rho_thresholds[1]:
            raise ValidationError("Rho thresholds must be ordered (shrink, grow).")
        if not all(factor > 0.0 for factor in self.scale_factors):
            raise ValidationError("Scale factors must be positive.")


class OptimizerResults(NamedTuple):
    """Snapshot of the optimizer results.

    All arrays are copies; the snapshot stays valid after further calls to
    the optimizer.
    """

    optimal_x: np.ndarray
    optimal_lagrangian: float
    optimal_lambda: np.ndarray
    concentration_error: float
    log_messages: list[str]
    elapsed_time_us: int


class OptimizeOutcome(NamedTuple):
    """Return value of ``Optimizer.optimize``."""

    final_iteration: int
    success: bool


class Optimizer:
    """Trust-region Newton optimizer for polymer equilibria.

    Args:
        monomers: Total concentration of each monomer, length M >= 1.
        polymers: Stoichiometry matrix, shape (N, M) with N >= M.
        polymer_energies: Free energy of each polymer (kcal/mol when scaling
            is enabled), length N.
        args: Optional parameters, ``OptimizerArgs()`` by default.
        sink: Optional callable receiving every message. Without one,
            messages are accumulated in ``log_messages`` (or printed if
            ``args.use_terminal`` is set). The optimization loop runs
            jitted, so the per-iteration progress lines of a run are
            delivered together once the loop has finished, in iteration
            order and before the summary.

    Raises:
        ValidationError: If the inputs are empty or their sizes disagree.
    """

    def __init__(
        self,
        monomers: ArrayLike,
        polymers: ArrayLike,
        polymer_energies: ArrayLike,
        args: Optional[OptimizerArgs] = None,
        sink: Optional[ProgressSink] = None,
    ):
        self.args = OptimizerArgs() if args is None else args

        monomers = np.asarray(monomers, dtype=np.float64)
        polymers = np.asarray(polymers, dtype=np.float64)
        polymer_energies = np.asarray(polymer_energies, dtype=np.float64)

        if monomers.size == 0:
            raise ValidationError("Monomers array is empty.")
        if polymers.size == 0:
            raise ValidationError("Polymers array is empty.")
        if monomers.ndim != 1:
            raise ValidationError("Monomers must be a one-dimensional array.")
        if polymers.ndim != 2:
            raise ValidationError("Polymers must be a two-dimensional array.")
        if polymer_energies.ndim != 1:
            raise ValidationError("Polymer energies must be a one-dimensional array.")

        num_monomers = monomers.shape[0]
        num_polymers = polymers.shape[0]

        if num_polymers < num_monomers:
            raise ValidationError("Number of polymers is less than number of monomers.")
        if polymers.shape[1] != num_monomers:
            raise ValidationError("Monomers and polymer compositions inconsistent.")
        if polymer_energies.shape[0] != num_polymers:
            raise ValidationError(
                "Polymers and polymer quantities have different sizes."
            )

        # Scale for water molecule volume size if necessary
        if self.args.use_scaling:
            kT = thermal_energy(self.args.temperature_celsius)
            scaling = water_molarity(self.args.temperature_celsius)
        else:
            kT = 1.0
            scaling = 1.0

        self._problem = Problem(
            monomers=jnp.asarray(monomers / scaling),
            polymers=jnp.asarray(polymers),
            polymers_q=boltzmann_factors(polymer_energies, kT),
            scaling=scaling,
        )
        self._sink = sink

        self._optimal_lambda = np.zeros(num_monomers)
        self._optimal_x = np.zeros(num_polymers)
        self._optimal_lagrangian = 0.0
        self._log_msgs: list[str] = []
        self._time_us = 0

        logger.debug(
            "Created optimizer with %d monomers and %d polymers (scaling=%s).",
            num_monomers,
            num_polymers,
            self.args.use_scaling,
        )

    @property
    def problem(self) -> Problem:
        """Scaled problem data handed to the minimiser."""
        return self._problem

    @property
    def log_messages(self) -> list[str]:
        return list(self._log_msgs)

    def _print(self, msg: str) -> None:
        if self._sink is not None:
            self._sink(msg)
        elif self.args.use_terminal:
            print(msg)
        else:
            self._log_msgs.append(msg)

    def _build_solver(self, initial_delta: float) -> TrustRegionNewton:
        return TrustRegionNewton(
            max_steps=self.args.max_iterations,
            initial_delta=initial_delta,
            max_delta=self.args.max_delta,
            eta=self.args.eta,
            norm_ratio_threshold=self.args.norm_ratio_threshold,
            rho_thresholds=tuple(self.args.rho_thresholds),
            scale_factors=tuple(self.args.scale_factors),
            grad_fn=lagrangian_gradient,
            hess_fn=lagrangian_hessian,
        )

    def _report_progress(self, state: TrustRegionState, num_steps: int) -> None:
        """Emit one progress line per completed iteration of the last run."""
        if num_steps == 0:
            return
        lambdas = state.history_y[:num_steps]
        xs = jax.vmap(concentrations, in_axes=(0, None))(lambdas, self._problem)
        errors = jax.vmap(concentration_error, in_axes=(0, None))(xs, self._problem)

        reported = np.asarray(state.history_reported[:num_steps])
        values = np.asarray(state.history_f[:num_steps])
        errors = np.asarray(errors)
        for it in np.flatnonzero(reported):
            self._print(process_message(int(it), float(values[it]), float(errors[it])))

    def optimize(self, initial_delta: float = 1.0) -> OptimizeOutcome:
        """Run the trust-region Newton optimization from lambda = 0.

        Args:
            initial_delta: Starting trust-region radius, finite and positive.

        Returns:
            OptimizeOutcome with the number of iterations run. Reaching the
            iteration limit is not an error; the last iterate is kept.

        Raises:
            ValidationError: If ``initial_delta`` is not valid.
            SolverFailureError: If the subproblem solver fails. The last
                consistent iterate remains available through
                ``get_results``.
        """
        if not (math.isfinite(initial_delta) and initial_delta > 0.0):
            raise ValidationError("Initial delta value is not valid.")

        # Initialization and resetting from previous optimizations
        self.reset()
        self._print(start_message())
        solver = self._build_solver(float(initial_delta))
        y0 = jnp.zeros((self._problem.num_monomers,))

        logger.debug("Starting optimization with initial delta %g.", initial_delta)
        start_time = time.perf_counter()
        solution = optx.minimise(
            lagrangian,
            solver,
            y0,
            args=self._problem,
            max_steps=self.args.max_iterations,
            throw=False,
        )
        state: TrustRegionState = solution.state
        num_steps = int(state.step_count)

        self._optimal_lambda = np.array(solution.value, dtype=np.float64)
        self._optimal_lagrangian = float(state.f_val)
        self._report_progress(state, num_steps)
        self.update_x()
        self._time_us = int((time.perf_counter() - start_time) * 1e6)

        if bool(state.failed):
            if int(state.subproblem.status) == SteihaugStatus.CALL_LIMIT:
                cause = "the subproblem call limit was reached"
            else:
                cause = "no finite step to the trust-region boundary exists"
            logger.warning(
                "Steihaug subproblem failed at iteration %d: %s.", num_steps - 1, cause
            )
            # Conclude the optimization prematurely as it failed
            self._print(
                conclude_message(num_steps - 1, False, self._time_us, self.args.verbose)
            )
            raise SolverFailureError(
                f"The Steihaug optimization did not succeed at iteration "
                f"{num_steps - 1}: {cause}."
            )

        if not math.isfinite(self._optimal_lagrangian):
            logger.warning(
                "Optimization ended with a non-finite Lagrangian; the input "
                "concentrations and energies may be degenerate."
            )

        logger.debug(
            "Optimization finished after %d iterations (%s).",
            num_steps,
            solution.result,
        )
        self._print(
            conclude_message(
                num_steps, True, self._time_us, self.args.verbose, self.get_results()
            )
        )
        return OptimizeOutcome(final_iteration=num_steps, success=True)

    def reset(self) -> None:
        """Reset lambda, x, the Lagrangian and the timer to their initial state.

        Messages accumulated by a previous run are discarded as well.
        """
        self._optimal_lambda = np.zeros_like(self._optimal_lambda)
        self._optimal_x = np.zeros_like(self._optimal_x)
        self._optimal_lagrangian = 0.0
        self._time_us = 0
        self._log_msgs = []

    def update_x(self) -> None:
        """Recompute the polymer concentrations from the current lambda."""
        x = concentrations(jnp.asarray(self._optimal_lambda), self._problem)
        self._optimal_x = np.array(x, dtype=np.float64)

    def error(self) -> float:
        """Maximum absolute mass-conservation error of the current x."""
        return float(concentration_error(jnp.asarray(self._optimal_x), self._problem))

    def benchmark(self) -> int:
        """Time taken by the last optimization, in microseconds."""
        return self._time_us

    def get_results(self) -> OptimizerResults:
        """Owned snapshot of the current results."""
        return OptimizerResults(
            optimal_x=self._optimal_x.copy(),
            optimal_lagrangian=self._optimal_lagrangian,
            optimal_lambda=self._optimal_lambda.copy(),
            concentration_error=self.error(),
            log_messages=list(self._log_msgs),
            elapsed_time_us=self._time_us,
        )
