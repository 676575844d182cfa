"""Parameter containers for jaxthermo.

CosmoParams: physical inputs, JAX-traced floats plus static string options.
PrecisionParams: numerical precision settings, static (not traced).

References:
    CLASS source: include/thermodynamics.h (struct thermo, reionization enums)
    CLASS source: include/precision.h (recfast_* and reionization_* knobs)
"""

from __future__ import annotations

from dataclasses import dataclass, fields

import jax

from jaxthermo import constants as const
from jaxthermo.errors import ConfigurationError


REIO_PARAMETRIZATIONS = ("none", "camb")
REIO_Z_OR_TAU = ("z", "tau")

_STATIC_FIELDS = ("reio_parametrization", "reio_z_or_tau")


# ---------------------------------------------------------------------------
# CosmoParams: traced by JAX for autodiff
# ---------------------------------------------------------------------------

@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True)
class CosmoParams:
    """Cosmological and reionization inputs. Float fields are JAX-traceable.

    The two string fields select code paths and are kept as static pytree
    metadata.

    Units follow CLASS conventions:
        - omega_b, omega_cdm: physical density parameters Omega_x h^2
        - h: dimensionless Hubble parameter H0/(100 km/s/Mpc)
        - T_cmb: CMB temperature in Kelvin
        - Y_He: primordial helium mass fraction
    """

    # Hubble
    h: float = 0.6736

    # Densities
    omega_b: float = 0.02237      # Omega_b h^2
    omega_cdm: float = 0.1200     # Omega_cdm h^2

    # CMB
    T_cmb: float = const.T_cmb_default  # Kelvin

    # Massless neutrinos
    N_ur: float = 3.046

    # Helium
    Y_He: float = const.Y_He_default

    # Reionization
    reio_parametrization: str = "camb"   # "none" or "camb" (STATIC)
    reio_z_or_tau: str = "tau"           # which of z_reio / tau_reio is input (STATIC)
    z_reio: float = 11.0
    tau_reio: float = 0.0544

    # --- PyTree registration ---
    def tree_flatten(self):
        children = []
        child_names = []
        for f in fields(self):
            if f.name in _STATIC_FIELDS:
                continue
            children.append(getattr(self, f.name))
            child_names.append(f.name)
        aux_data = {
            "reio_parametrization": self.reio_parametrization,
            "reio_z_or_tau": self.reio_z_or_tau,
            "child_names": tuple(child_names),
        }
        return children, aux_data

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        kwargs = dict(zip(aux_data["child_names"], children))
        kwargs["reio_parametrization"] = aux_data["reio_parametrization"]
        kwargs["reio_z_or_tau"] = aux_data["reio_z_or_tau"]
        return cls(**kwargs)

    def replace(self, **kwargs) -> CosmoParams:
        """Return a new CosmoParams with specified fields replaced."""
        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update(kwargs)
        return CosmoParams(**current)


# ---------------------------------------------------------------------------
# PrecisionParams: NOT traced by JAX (static, controls array shapes)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrecisionParams:
    """Numerical precision parameters. These are NOT JAX-traced.

    Grid sizes change array shapes, so they must be compile-time constants.
    Names and defaults of the recfast_* and reionization_* entries follow
    CLASS precision.h.
    """

    # Background
    bg_n_points: int = 800          # number of log(a) grid points
    bg_a_ini_default: float = 1e-7  # initial scale factor
    bg_tol: float = 1e-10           # ODE tolerance

    # Recombination (RECFAST)
    recfast_z_initial: float = 1e4
    recfast_Nz0: int = 10000        # number of redshift steps down to z=0
    recfast_rtol: float = 1e-6
    recfast_atol: float = 1e-10
    recfast_max_steps: int = 65536
    recfast_H_frac: float = 1e-3    # Compton-to-Hubble time ratio for leaving tight coupling
    recfast_fudge_H: float = 1.14
    recfast_fudge_He: float = 0.86
    recfast_Heswitch: int = 6

    recfast_z_He_1: float = 8000.0  # HeIII -> HeII Saha switch on
    recfast_delta_z_He_1: float = 50.0
    recfast_z_He_2: float = 5000.0  # HeII complete
    recfast_delta_z_He_2: float = 100.0
    recfast_z_He_3: float = 3500.0  # HeII -> HeI Saha switch on
    recfast_delta_z_He_3: float = 50.0
    recfast_x_He0_trigger: float = 0.995   # leave HeI Saha below this x_He
    recfast_x_He0_trigger2: float = 0.995  # helium ODE corrections active below this x_He
    recfast_x_H0_trigger: float = 0.995    # leave hydrogen Saha below this x_H
    recfast_delta_z_H: float = 50.0        # width of the Saha -> Peebles blend

    # Reionization
    reionization_z_start_max: float = 50.0
    reionization_sampling: float = 0.05    # max redshift step of the reionization table
    reionization_optical_depth_tol: float = 1e-4  # relative
    reionization_start_factor: float = 8.0
    reionization_max_iter: int = 100
    reionization_exponent: float = 1.5
    reionization_width: float = 0.5
    helium_fullreio_redshift: float = 3.5
    helium_fullreio_width: float = 0.5

    # Visibility
    visibility_threshold_free_streaming: float = 1e-3

    # ODE solver settings
    ode_adjoint: str = "recursive_checkpoint"  # or "direct"

    @staticmethod
    def fast():
        """Coarse preset for quick runs and tests.

        A 5x coarser recombination grid still resolves the visibility peak
        (width ~ 80 in z) with several hundred rows.
        """
        return PrecisionParams(
            bg_n_points=500,
            recfast_Nz0=2000,
            recfast_rtol=1e-5,
            reionization_sampling=0.1,
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def check_params(params: CosmoParams, prec: PrecisionParams) -> None:
    """Reject inputs the thermodynamics pipeline cannot handle.

    Raises:
        ConfigurationError: on out-of-bounds or unknown inputs
    """
    if params.reio_parametrization not in REIO_PARAMETRIZATIONS:
        raise ConfigurationError(
            f"Unknown reionization parametrization: {params.reio_parametrization!r}"
        )
    if params.reio_z_or_tau not in REIO_Z_OR_TAU:
        raise ConfigurationError(
            f"reio_z_or_tau must be 'z' or 'tau', got {params.reio_z_or_tau!r}"
        )

    T_cmb = float(params.T_cmb)
    if not const.TCMB_SMALL <= T_cmb <= const.TCMB_BIG:
        raise ConfigurationError(
            f"T_cmb={T_cmb} out of bounds [{const.TCMB_SMALL}, {const.TCMB_BIG}]"
        )
    Y_He = float(params.Y_He)
    if not const.YHE_SMALL <= Y_He <= const.YHE_BIG:
        raise ConfigurationError(
            f"Y_He={Y_He} out of bounds [{const.YHE_SMALL}, {const.YHE_BIG}]"
        )
    if float(params.omega_b) <= 0.0 or float(params.h) <= 0.0:
        raise ConfigurationError(
            f"omega_b and h must be positive, got omega_b={params.omega_b}, h={params.h}"
        )

    if params.reio_parametrization == "camb":
        if prec.reionization_exponent == 0.0:
            raise ConfigurationError("reionization_exponent must be non-zero")
        if prec.reionization_width <= 0.0 or prec.helium_fullreio_width <= 0.0:
            raise ConfigurationError(
                "reionization_width and helium_fullreio_width must be positive"
            )
        if params.reio_z_or_tau == "z" and float(params.z_reio) < 0.0:
            raise ConfigurationError(f"z_reio={params.z_reio} must be non-negative")
        if params.reio_z_or_tau == "tau" and float(params.tau_reio) <= 0.0:
            raise ConfigurationError(f"tau_reio={params.tau_reio} must be positive")

    if prec.recfast_Nz0 < 10:
        raise ConfigurationError(f"recfast_Nz0={prec.recfast_Nz0} is too small")
    if prec.reionization_sampling <= 0.0:
        raise ConfigurationError("reionization_sampling must be positive")
