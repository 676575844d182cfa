"""jaxthermo: thermal and ionization history of the universe in JAX.

Usage:
    import jaxthermo

    # Define parameters
    params = jaxthermo.CosmoParams(h=0.6736, omega_b=0.02237, omega_cdm=0.1200,
                                   reio_z_or_tau="tau", tau_reio=0.0544)

    # Compute background and thermodynamics
    result = jaxthermo.compute(params)
    print(result.th.z_visibility_max)  # redshift of the visibility peak

    # Query the table
    row, idx = jaxthermo.thermodynamics_at_z(result.th, 1100.0)
    print(row["xe"], row["g"])
"""

import jax
jax.config.update("jax_enable_x64", True)

from jaxthermo.constants import *  # noqa: F401,F403
from jaxthermo.errors import (  # noqa: F401
    ConfigurationError,
    MonotonicityViolation,
    NumericalDivergence,
    OutOfRangeQuery,
    ThermodynamicsError,
)
from jaxthermo.params import CosmoParams, PrecisionParams  # noqa: F401
from jaxthermo.background import background_solve, background_at_z, BackgroundResult, H_of_z  # noqa: F401
from jaxthermo.thermodynamics import (  # noqa: F401
    ThermoResult,
    optical_depth_of_z,
    thermodynamics_at_z,
    thermodynamics_free,
    thermodynamics_solve,
    xe_of_z,
)

from dataclasses import dataclass


@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True)
class ComputeResult:
    """Result of the background + thermodynamics pipeline."""
    bg: BackgroundResult
    th: ThermoResult

    def tree_flatten(self):
        return [self.bg, self.th], None

    @classmethod
    def tree_unflatten(cls, aux, fields):
        return cls(*fields)


def compute(
    params: CosmoParams = CosmoParams(),
    prec: PrecisionParams = PrecisionParams(),
) -> ComputeResult:
    """Run the pipeline: background cosmology, then thermodynamics.

    Args:
        params: cosmological parameters
        prec: precision parameters (static)

    Returns:
        ComputeResult with background and thermodynamics results
    """
    bg = background_solve(params, prec)
    th = thermodynamics_solve(params, prec, bg)
    return ComputeResult(bg=bg, th=th)
