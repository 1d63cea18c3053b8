from typing import Callable, TypeVar

import jax
import jax.numpy as jnp

T = TypeVar("T")


def bind_args(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    """Fix ``args`` so that ``fn`` can be handed to ``jax.grad``/``jax.hessian``."""

    def bound(y: jax.Array) -> jax.Array:
        return fn(y, args)

    return bound


def two_norm(v: jax.Array) -> jax.Array:
    # Plain sqrt(sum(v^2)): overflow must surface as inf, not be rescaled away.
    return jnp.sqrt(jnp.dot(v, v))
