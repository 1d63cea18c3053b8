"""Human-readable messages emitted while optimizing.

The optimizer emits three kinds of messages through its progress sink: a
start marker, one progress line per completed iteration and a concluding
summary. ``results_message`` renders the final polymer concentrations.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from coffee_jax.optimizer import OptimizerResults


def start_message() -> str:
    return "Starting COFFEE optimization..."


def process_message(iteration: int, lagrangian: float, error: float) -> str:
    return f"Iteration {iteration}: f = {lagrangian:.12f}, error = {error:.6e}"


def _format_elapsed(time_us: int) -> str:
    elapsed_ms = time_us / 1000.0
    if elapsed_ms < 1000.0:
        return f"Elapsed time: {elapsed_ms:.2f} ms"
    return f"Elapsed time: {elapsed_ms / 1000.0:.2f} s"


def conclude_message(
    iteration: int,
    success: bool,
    time_us: int,
    display_time: bool,
    results: Optional["OptimizerResults"] = None,
) -> str:
    """Summary of a finished (or failed) optimization.

    Args:
        iteration: Number of outer iterations that were run, e.g. 250 when
            the default iteration limit is reached (not the 0-based index
            of the last iteration). For a failed run, the 0-based index of
            the iteration that failed.
        success: Whether the optimization completed.
        time_us: Elapsed time in microseconds.
        display_time: Append the elapsed time.
        results: Optional snapshot; when given, the monomer and polymer
            counts, Lagrangian, lambdas and constraint error are included.

    Returns:
        The multi-line summary.
    """
    status = "complete" if success else "failed"
    lines = [f"Optimization {status} after {iteration} iterations.", ""]

    if results is not None:
        lambdas = " ".join(f"{value:.6e}" for value in results.optimal_lambda)
        lines += [
            f"Number of monomers: {len(results.optimal_lambda)}",
            f"Number of polymers: {len(results.optimal_x)}",
            "",
            f"Optimal Lagrangian: {results.optimal_lagrangian:.6e}",
            "",
            "Optimal Lambdas:",
            lambdas,
            "",
            f"Concentration Constraint Error: {results.concentration_error:.6e}",
        ]

    if display_time:
        lines += ["", _format_elapsed(time_us)]

    return "\n".join(lines)


def results_message(results: "OptimizerResults") -> str:
    """Space separated polymer concentrations of ``results``."""
    return " ".join(f"{value:.2e}" for value in results.optimal_x)
