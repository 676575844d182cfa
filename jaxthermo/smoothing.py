"""Smoothstep blend functions shared by recombination and reionization.

f1 rises from 0 to 1 on [-1, 1], f2 rises from 0 to 1 on [0, 1]; both have
zero slope at the ends of their interval. Callers clip the argument, so the
functions themselves are plain polynomials.

cf. CLASS thermodynamics.h, macros f1(x) and f2(x)
"""

import jax.numpy as jnp


def f1(x):
    """Smoothstep on [-1, 1]: -0.75 x (x^2/3 - 1) + 0.5."""
    return -0.75 * x * (x * x / 3.0 - 1.0) + 0.5


def df1(x):
    return 0.75 * (1.0 - x * x)


def d2f1(x):
    return -1.5 * x


def f2(x):
    """Smoothstep on [0, 1]: 6 x^2 (0.5 - x/3)."""
    return x * x * (0.5 - x / 3.0) * 6.0


def smoothstep_symmetric(x):
    """f1 with its argument clipped to [-1, 1]; returns (value, slope, curvature).

    The slope and curvature vanish outside the interval.
    """
    inside = jnp.abs(x) < 1.0
    xc = jnp.clip(x, -1.0, 1.0)
    return f1(xc), jnp.where(inside, df1(xc), 0.0), jnp.where(inside, d2f1(xc), 0.0)


def smoothstep_unit(x):
    """f2 with its argument clipped to [0, 1]."""
    return f2(jnp.clip(x, 0.0, 1.0))
