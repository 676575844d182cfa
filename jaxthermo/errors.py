"""Exceptions raised by the thermodynamics pipeline.

Every failure is fatal to the run: nothing is retried and no partial table
is returned. Configuration problems subclass ValueError so that callers
treating bad input generically keep working.
"""

from __future__ import annotations

from typing import Optional


class ThermodynamicsError(Exception):
    """Base class for all thermodynamics failures."""


class ConfigurationError(ThermodynamicsError, ValueError):
    """Invalid input: out-of-bounds parameter, unknown name or impossible target."""


class NumericalDivergence(ThermodynamicsError, RuntimeError):
    """An iterative procedure failed to produce a finite, converged result.

    Attributes:
        z: last redshift at which the state was still finite, if known
        step_size: last attempted step size, if known
        iterations: number of steps or iterations performed
    """

    def __init__(
        self,
        message: str,
        z: Optional[float] = None,
        step_size: Optional[float] = None,
        iterations: Optional[int] = None,
    ):
        details = []
        if z is not None:
            details.append(f"z={z:.6g}")
        if step_size is not None:
            details.append(f"step={step_size:.3g}")
        if iterations is not None:
            details.append(f"iterations={iterations}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)
        self.z = z
        self.step_size = step_size
        self.iterations = iterations


class MonotonicityViolation(ThermodynamicsError, ValueError):
    """Table rows are not strictly ordered in the spline abscissa."""


class OutOfRangeQuery(ThermodynamicsError, ValueError):
    """Redshift requested outside the tabulated interval."""

    def __init__(self, z: float, z_min: float, z_max: float):
        super().__init__(
            f"z={z} is outside the thermodynamics table range [{z_min}, {z_max}]"
        )
        self.z = z
        self.z_min = z_min
        self.z_max = z_max
