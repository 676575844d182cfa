"""Differentiable cubic spline interpolation for jaxthermo.

Provides a natural cubic spline class registered as a JAX pytree, so it can
live inside other pytrees (e.g., BackgroundResult) and flow through jit/grad/vmap,
plus column-wise spline tables used for the thermodynamics table.

The implementation follows DISCO-EB's approach: Thomas algorithm for the
tridiagonal system via jax.lax.fori_loop, jnp.searchsorted for interval lookup.

Key properties:
- Differentiable w.r.t. knot values y (for AD through the pipeline).
- jnp.searchsorted is not differentiated (integer output), but the polynomial
  evaluation IS differentiable w.r.t. both x_eval and the spline coefficients.

References:
    DISCO-EB: src/discoeb/spline_interpolation.py
    CLASS: tools/arrays.c (array_spline_table_columns, array_integrate_spline_table_line_to_line)
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from jaxthermo.errors import MonotonicityViolation


@jax.tree_util.register_pytree_node_class
class CubicSpline:
    """Natural cubic spline interpolation, registered as a JAX pytree.

    Constructed from knot positions x and values y. Supports evaluation,
    first/second derivatives, and interval integrals.

    The spline satisfies: S''(x[0]) = S''(x[-1]) = 0 (natural boundary conditions).

    Attributes:
        x: knot positions, shape (N,), strictly increasing
        y: knot values, shape (N,)
        d2y: second derivatives at knots, shape (N,), from tridiagonal solve
    """

    def __init__(self, x: Float[Array, "N"], y: Float[Array, "N"]):
        self.x = jnp.asarray(x)
        self.y = jnp.asarray(y)
        self.d2y = _compute_natural_spline_coeffs(self.x, self.y)

    def _locate(self, x_eval):
        x_eval = jnp.asarray(x_eval)
        x_clamped = jnp.clip(x_eval, self.x[0], self.x[-1])
        idx = jnp.searchsorted(self.x, x_clamped, side="right") - 1
        idx = jnp.clip(idx, 0, len(self.x) - 2)
        h = self.x[idx + 1] - self.x[idx]
        A = (self.x[idx + 1] - x_clamped) / h
        B = (x_clamped - self.x[idx]) / h
        return idx, h, A, B

    def evaluate(self, x_eval: Float[Array, "..."]) -> Float[Array, "..."]:
        """Evaluate the spline at given points (clamped to the knot range).

            S(x) = A*y_i + B*y_{i+1} + (A^3 - A)*d2y_i*h^2/6 + (B^3 - B)*d2y_{i+1}*h^2/6
        where A = (x_{i+1} - x) / h, B = (x - x_i) / h, h = x_{i+1} - x_i.
        """
        idx, h, A, B = self._locate(x_eval)
        return _spline_value(self.y[idx], self.y[idx + 1], self.d2y[idx], self.d2y[idx + 1], h, A, B)

    def derivative(self, x_eval: Float[Array, "..."]) -> Float[Array, "..."]:
        """Evaluate the first derivative of the spline.

        S'(x) = (y_{i+1} - y_i)/h - (3A^2 - 1)*d2y_i*h/6 + (3B^2 - 1)*d2y_{i+1}*h/6
        """
        idx, h, A, B = self._locate(x_eval)
        return _spline_slope(self.y[idx], self.y[idx + 1], self.d2y[idx], self.d2y[idx + 1], h, A, B)

    def derivative2(self, x_eval: Float[Array, "..."]) -> Float[Array, "..."]:
        """Evaluate the second derivative of the spline.

        S''(x) = A * d2y_i + B * d2y_{i+1}
        """
        idx, h, A, B = self._locate(x_eval)
        return A * self.d2y[idx] + B * self.d2y[idx + 1]

    def segment_integrals(self) -> Float[Array, "N-1"]:
        """Exact integral of the spline over each knot interval.

        int_{x_i}^{x_{i+1}} S dx = h (y_i + y_{i+1}) / 2 - h^3 (d2y_i + d2y_{i+1}) / 24
        """
        return spline_segment_integrals(self.x, self.y, self.d2y)

    # --- JAX pytree registration ---

    def tree_flatten(self):
        children = (self.x, self.y, self.d2y)
        aux_data = None
        return children, aux_data

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        obj = object.__new__(cls)
        obj.x, obj.y, obj.d2y = children
        return obj


def _spline_value(y_lo, y_hi, d2_lo, d2_hi, h, A, B):
    # cf. CLASS arrays.h, array_spline_eval macro
    return A * y_lo + B * y_hi + ((A**3 - A) * d2_lo + (B**3 - B) * d2_hi) * h**2 / 6.0


def _spline_slope(y_lo, y_hi, d2_lo, d2_hi, h, A, B):
    return (
        (y_hi - y_lo) / h
        - (3.0 * A**2 - 1.0) * d2_lo * h / 6.0
        + (3.0 * B**2 - 1.0) * d2_hi * h / 6.0
    )


def spline_segment_integrals(x, y, d2y):
    """Per-interval integrals of a natural spline given its knot data.

    Works column-wise when y and d2y are 2-D with rows along x.
    """
    h = jnp.diff(x)
    if y.ndim == 2:
        h = h[:, None]
    return 0.5 * h * (y[:-1] + y[1:]) - h**3 / 24.0 * (d2y[:-1] + d2y[1:])


def _compute_natural_spline_coeffs(
    x: Float[Array, "N"], y: Float[Array, "N"]
) -> Float[Array, "N"]:
    """Compute second derivatives for natural cubic spline via Thomas algorithm.

    Natural boundary conditions: d2y[0] = d2y[-1] = 0.

    The tridiagonal system is:
        h_{i-1} * d2y_{i-1} + 2(h_{i-1} + h_i) * d2y_i + h_i * d2y_{i+1} = rhs_i
    where h_i = x_{i+1} - x_i and rhs_i = 6 * [(y_{i+1}-y_i)/h_i - (y_i-y_{i-1})/h_{i-1}]

    Uses jax.lax.fori_loop for JIT compatibility.
    """
    n = x.shape[0]
    h = x[1:] - x[:-1]  # (N-1,)

    # RHS of the tridiagonal system (for interior points 1..N-2)
    rhs = 6.0 * ((y[2:] - y[1:-1]) / h[1:] - (y[1:-1] - y[:-2]) / h[:-1])  # (N-2,)

    diag = 2.0 * (h[:-1] + h[1:])  # (N-2,) main diagonal
    lower = h[:-1]                   # (N-2,) sub-diagonal
    upper = h[1:]                    # (N-2,) super-diagonal

    # Forward sweep
    def forward_step(i, carry):
        d, r = carry
        w = lower[i] / d[i - 1]
        d = d.at[i].set(d[i] - w * upper[i - 1])
        r = r.at[i].set(r[i] - w * r[i - 1])
        return (d, r)

    diag_mod, rhs_mod = jax.lax.fori_loop(1, n - 2, forward_step, (diag, rhs))

    # Back substitution
    d2y_interior = jnp.zeros(n - 2)
    d2y_interior = d2y_interior.at[-1].set(rhs_mod[-1] / diag_mod[-1])

    def backward_step(i, d2y):
        j = n - 4 - i  # counts down from n-4 to 0
        d2y = d2y.at[j].set((rhs_mod[j] - upper[j] * d2y[j + 1]) / diag_mod[j])
        return d2y

    d2y_interior = jax.lax.fori_loop(0, n - 3, backward_step, d2y_interior)

    return jnp.concatenate([jnp.array([0.0]), d2y_interior, jnp.array([0.0])])


# ---------------------------------------------------------------------------
# Column-wise spline tables
# ---------------------------------------------------------------------------

def check_strictly_increasing(x, name: str = "x") -> None:
    """Raise MonotonicityViolation unless x is strictly increasing."""
    x_host = np.asarray(x)
    steps = np.diff(x_host)
    bad = np.nonzero(~(steps > 0.0))[0]
    if bad.size:
        i = int(bad[0])
        raise MonotonicityViolation(
            f"{name} is not strictly increasing at rows {i}, {i + 1}: "
            f"{x_host[i]!r} -> {x_host[i + 1]!r}"
        )


def spline_table(
    x: Float[Array, "N"], table: Float[Array, "N C"]
) -> Float[Array, "N C"]:
    """Natural-spline second derivatives for every column of a table.

    cf. CLASS arrays.c: array_spline_table_columns()

    Raises:
        MonotonicityViolation: if x is not strictly increasing
    """
    check_strictly_increasing(x)
    return jax.vmap(_compute_natural_spline_coeffs, in_axes=(None, 1), out_axes=1)(
        jnp.asarray(x), jnp.asarray(table)
    )


def spline_table_row(
    x: Float[Array, "N"],
    table: Float[Array, "N C"],
    d2_table: Float[Array, "N C"],
    idx: int,
    x_eval: float,
) -> Float[Array, "C"]:
    """Evaluate every column of a spline table inside the interval [x[idx], x[idx+1]]."""
    h = x[idx + 1] - x[idx]
    A = (x[idx + 1] - x_eval) / h
    B = (x_eval - x[idx]) / h
    return _spline_value(table[idx], table[idx + 1], d2_table[idx], d2_table[idx + 1], h, A, B)


def spline_table_slope(
    x: Float[Array, "N"],
    table: Float[Array, "N C"],
    d2_table: Float[Array, "N C"],
    idx: int,
    x_eval: float,
) -> Float[Array, "C"]:
    """First derivative of every column inside the interval [x[idx], x[idx+1]]."""
    h = x[idx + 1] - x[idx]
    A = (x[idx + 1] - x_eval) / h
    B = (x_eval - x[idx]) / h
    return _spline_slope(table[idx], table[idx + 1], d2_table[idx], d2_table[idx + 1], h, A, B)
