"""Reionization history for jaxthermo.

Parametric x_e(z) below z = reio_start, with the optical depth to
reionization either derived from an input z_reio or matched to an input
tau_reio by bisection. Each parametrization is a pure function mapping the
parameter vector to (x_e, dx_e/dz, d^2x_e/dz^2); "none" disables the stage.

The CAMB-like profile replaces (1 + tanh)/2 by the f1 smoothstep with its
argument stretched by 1.5, which has the same central slope and exactly
reaches its asymptotes, so the profile has compact support.

References:
    CLASS source: source/thermodynamics.c
        - thermodynamics_reionization()
        - thermodynamics_reionization_sample()
        - thermodynamics_get_xe_before_reionization()
    Lewis (2008), PRD 78, 023002
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Optional

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from jaxthermo import constants as const
from jaxthermo.background import BackgroundResult, background_at_z, hubble_derivatives_of_z
from jaxthermo.errors import ConfigurationError, NumericalDivergence
from jaxthermo.indices import ThermoIndices
from jaxthermo.params import CosmoParams, PrecisionParams
from jaxthermo.recombination import (
    RecombinationTable,
    baryon_sound_speed_squared,
    thomson_rate,
)
from jaxthermo.smoothing import smoothstep_symmetric

logger = logging.getLogger(__name__)

# f1 spans [-1, 1]; stretching by 1.5 gives it the central slope 1/2 of (1 + tanh)/2
_SMOOTHSTEP_STRETCH = 1.5


# ---------------------------------------------------------------------------
# Output container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReionizationTable:
    """Reionization rows, ascending in z from 0 to reio_start."""

    indices: ThermoIndices
    table: Float[Array, "N C"]
    parameters: Float[Array, "P"]
    optical_depth: float
    z_reio: float

    def column(self, name: str) -> Float[Array, "N"]:
        return self.table[:, self.indices.reionization[name]]

    def parameter(self, name: str) -> float:
        return self.parameters[self.indices.reio_parameters[name]]

    @property
    def z_start(self) -> float:
        return float(self.parameter("reio_start"))


class _ReioSample(NamedTuple):
    """Profile and scattering-rate derivatives on a descending redshift grid."""

    parameters: dict
    z: Float[Array, "N"]
    xe: Float[Array, "N"]
    dkappadz: Float[Array, "N"]
    d2kappadz2: Float[Array, "N"]
    d3kappadz3: Float[Array, "N"]
    optical_depth: float


# ---------------------------------------------------------------------------
# Parametrizations
# ---------------------------------------------------------------------------

def _camb_parameters(z_reio, xe_before, fHe, prec: PrecisionParams) -> dict:
    """Parameter vector of the CAMB-like scheme.

    cf. thermodynamics.c: reio_camb branch of thermodynamics_reionization()
    """
    return {
        "reio_redshift": z_reio,
        "reio_start": z_reio + prec.reionization_start_factor * prec.reionization_width,
        "reio_xe_before": xe_before,
        "reio_xe_after": 1.0 + fHe,
        "reio_exponent": prec.reionization_exponent,
        "reio_width": prec.reionization_width,
        "helium_fullreio_fraction": fHe,
        "helium_fullreio_redshift": prec.helium_fullreio_redshift,
        "helium_fullreio_width": prec.helium_fullreio_width,
    }


def camb_profile(z, p: dict):
    """x_e(z) and its first two redshift derivatives for the CAMB-like scheme.

    Hydrogen (and first helium ionization) follows a smoothstep in (1+z)^exponent
    centred on reio_redshift; second helium ionization a smoothstep in z centred
    on helium_fullreio_redshift. Above reio_start x_e = reio_xe_before.
    """
    e = p["reio_exponent"]
    zr = p["reio_redshift"]
    width = p["reio_width"]
    norm = e * (1.0 + zr) ** (e - 1.0) * width

    # Hydrogen
    arg = ((1.0 + zr) ** e - (1.0 + z) ** e) / norm
    darg = -(1.0 + z) ** (e - 1.0) / ((1.0 + zr) ** (e - 1.0) * width)
    d2arg = -(e - 1.0) * (1.0 + z) ** (e - 2.0) / ((1.0 + zr) ** (e - 1.0) * width)
    s, ds_f, d2s_f = smoothstep_symmetric(arg / _SMOOTHSTEP_STRETCH)
    s_z = darg / _SMOOTHSTEP_STRETCH
    s_zz = d2arg / _SMOOTHSTEP_STRETCH
    jump = p["reio_xe_after"] - p["reio_xe_before"]

    # Helium full reionization
    t = (p["helium_fullreio_redshift"] - z) / p["helium_fullreio_width"]
    h, dh_f, d2h_f = smoothstep_symmetric(t / _SMOOTHSTEP_STRETCH)
    h_z = -1.0 / (p["helium_fullreio_width"] * _SMOOTHSTEP_STRETCH)
    amp_He = p["helium_fullreio_fraction"]

    xe = p["reio_xe_before"] + jump * s + amp_He * h
    dxe = jump * ds_f * s_z + amp_He * dh_f * h_z
    d2xe = jump * (d2s_f * s_z**2 + ds_f * s_zz) + amp_He * d2h_f * h_z**2

    above = z > p["reio_start"]
    return (
        jnp.where(above, p["reio_xe_before"], xe),
        jnp.where(above, 0.0, dxe),
        jnp.where(above, 0.0, d2xe),
    )


_PROFILES = {"camb": (_camb_parameters, camb_profile)}


# ---------------------------------------------------------------------------
# Optical depth
# ---------------------------------------------------------------------------

def _kappa_z_derivatives(z, xe, dxe, d2xe, bg: BackgroundResult, n_e):
    """dkappa/dz = A x_e (1+z)^2 / H and its first two z-derivatives."""
    A = thomson_rate(0.0, 1.0, n_e)
    H, dH, d2H = hubble_derivatives_of_z(bg, z)
    v = (1.0 + z) ** 2
    dv = 2.0 * (1.0 + z)
    d2v = 2.0
    w = 1.0 / H
    dw = -dH / H**2
    d2w = -d2H / H**2 + 2.0 * dH**2 / H**3

    f = A * xe * v * w
    df = A * (dxe * v * w + xe * dv * w + xe * v * dw)
    d2f = A * (
        d2xe * v * w + xe * d2v * w + xe * v * d2w
        + 2.0 * (dxe * dv * w + dxe * v * dw + xe * dv * dw)
    )
    return f, df, d2f


def _optical_depth(z_desc, f, df) -> float:
    """Trapezoid rule with Euler-Maclaurin end correction on a uniform grid.

    int_0^{z_max} f dz ~ h [sum f - (f_0 + f_N)/2] - h^2/12 [f'(z_max) - f'(0)]
    """
    h = z_desc[0] - z_desc[1]
    trapezoid = h * (jnp.sum(f) - 0.5 * (f[0] + f[-1]))
    return trapezoid - h**2 / 12.0 * (df[0] - df[-1])


def _sampling_grid(z_start, sampling: float):
    """Uniform grid from z_start down to 0 with spacing at most `sampling`."""
    n = max(int(math.ceil(float(z_start) / sampling)), 1) + 1
    return jnp.linspace(z_start, 0.0, n)


def _sample(
    z_reio,
    reco: RecombinationTable,
    bg: BackgroundResult,
    prec: PrecisionParams,
    reio_parametrization: str,
) -> _ReioSample:
    """Profile, dkappa/dz derivatives and optical depth for one z_reio."""
    make_parameters, profile = _PROFILES[reio_parametrization]

    z_start = z_reio + prec.reionization_start_factor * prec.reionization_width
    if z_start > prec.reionization_z_start_max:
        raise ConfigurationError(
            f"reionization starts at z={z_start:.3f}, above "
            f"reionization_z_start_max={prec.reionization_z_start_max}"
        )
    xe_before = jnp.interp(z_start, reco.column("z"), reco.column("xe"))
    p = make_parameters(z_reio, xe_before, reco.fHe, prec)

    z = _sampling_grid(p["reio_start"], prec.reionization_sampling)
    xe, dxe, d2xe = profile(z, p)
    f, df, d2f = _kappa_z_derivatives(z, xe, dxe, d2xe, bg, reco.n_e)
    return _ReioSample(
        parameters=p,
        z=z,
        xe=xe,
        dkappadz=f,
        d2kappadz2=df,
        d3kappadz3=d2f,
        optical_depth=_optical_depth(z, f, df),
    )


def _bisect_z_reio(
    tau_target: float,
    reco: RecombinationTable,
    bg: BackgroundResult,
    prec: PrecisionParams,
    reio_parametrization: str,
) -> float:
    """Find the z_reio whose optical depth matches tau_target.

    cf. thermodynamics.c: reio_tau branch of thermodynamics_reionization()

    Raises:
        ConfigurationError: if tau_target is unreachable within the search bracket
        NumericalDivergence: if the bracket does not close in reionization_max_iter steps
    """
    def tau_of(z_reio):
        return float(_sample(z_reio, reco, bg, prec, reio_parametrization).optical_depth)

    z_inf = 0.0
    z_sup = prec.reionization_z_start_max - prec.reionization_start_factor * prec.reionization_width
    tau_inf = tau_of(z_inf)
    tau_sup = tau_of(z_sup)
    if not tau_inf <= tau_target <= tau_sup:
        raise ConfigurationError(
            f"tau_reio={tau_target} cannot be reached: reionization between "
            f"z=0 and z={z_sup} gives tau in [{tau_inf:.5g}, {tau_sup:.5g}]"
        )

    tol = tau_target * prec.reionization_optical_depth_tol
    iterations = 0
    while tau_sup - tau_inf > tol:
        if iterations >= prec.reionization_max_iter:
            raise NumericalDivergence(
                f"optical depth bisection did not reach tolerance {tol:.3g}",
                z=0.5 * (z_inf + z_sup),
                step_size=z_sup - z_inf,
                iterations=iterations,
            )
        z_mid = 0.5 * (z_inf + z_sup)
        tau_mid = tau_of(z_mid)
        if tau_mid > tau_target:
            z_sup, tau_sup = z_mid, tau_mid
        else:
            z_inf, tau_inf = z_mid, tau_mid
        iterations += 1
        logger.debug("bisection %d: z in [%.5f, %.5f], tau in [%.6f, %.6f]",
                     iterations, z_inf, z_sup, tau_inf, tau_sup)

    return 0.5 * (z_inf + z_sup)


# ---------------------------------------------------------------------------
# Baryon temperature
# ---------------------------------------------------------------------------

def _reionization_temperature(z_desc, xe, dkappadeta, Tb_start, params: CosmoParams, bg):
    """Explicit Euler march of T_b from reio_start down to z = 0.

    dT/dz = 2T/(1+z) - 2 (mu/m_e) (4 rho_g / 3 rho_b) (dkappa/dtau / H) (T_cmb (1+z) - T)

    Returns (T_b, dT_b/dz) on the grid; the first entry of dT_b/dz is a
    placeholder, the caller takes the starting row from recombination.
    """
    point = background_at_z(bg, z_desc)
    mu = const.m_H / (1.0 + (1.0 / const.not4 - 1.0) * params.Y_He + xe * (1.0 - params.Y_He))
    coupling = 2.0 * (mu / const.m_e) * (4.0 * point.rho_g / (3.0 * point.rho_b)) * dkappadeta / point.H
    Trad = params.T_cmb * (1.0 + z_desc)
    dz = z_desc[:-1] - z_desc[1:]

    def step(Tb, xs):
        z_j, dz_j, coupling_j, Trad_j = xs
        dTdz = 2.0 * Tb / (1.0 + z_j) - coupling_j * (Trad_j - Tb)
        Tb_new = Tb - dTdz * dz_j
        return Tb_new, (Tb_new, dTdz)

    _, (Tb_rest, dTdz_rest) = jax.lax.scan(
        step, Tb_start, (z_desc[1:], dz, coupling[1:], Trad[1:])
    )
    Tb = jnp.concatenate([jnp.atleast_1d(Tb_start), Tb_rest])
    dTdz = jnp.concatenate([jnp.zeros(1), dTdz_rest])
    return Tb, dTdz


# ---------------------------------------------------------------------------
# Main solver
# ---------------------------------------------------------------------------

def reionization_solve(
    params: CosmoParams,
    prec: PrecisionParams,
    bg: BackgroundResult,
    reco: RecombinationTable,
    indices: ThermoIndices,
) -> Optional[ReionizationTable]:
    """Tabulate the reionization history.

    Args:
        params: cosmological parameters (reionization choice, z_reio or tau_reio)
        prec: precision parameters (reionization_* entries)
        bg: background result
        reco: recombination table (normalization n_e, x_e and T_b before reionization)
        indices: column layouts

    Returns:
        ReionizationTable ascending in z, or None without reionization

    Raises:
        ConfigurationError: invalid parameters or unreachable tau_reio
        NumericalDivergence: bisection failed to converge
    """
    if params.reio_parametrization == "none":
        return None
    if params.reio_parametrization not in _PROFILES:
        raise ConfigurationError(
            f"Unknown reionization parametrization: {params.reio_parametrization!r}"
        )

    if params.reio_z_or_tau == "z":
        z_reio = float(params.z_reio)
    elif params.reio_z_or_tau == "tau":
        z_reio = _bisect_z_reio(
            float(params.tau_reio), reco, bg, prec, params.reio_parametrization
        )
    else:
        raise ConfigurationError(
            f"reio_z_or_tau must be 'z' or 'tau', got {params.reio_z_or_tau!r}"
        )

    sample = _sample(z_reio, reco, bg, prec, params.reio_parametrization)
    z = sample.z
    dkappadeta = thomson_rate(z, sample.xe, reco.n_e)

    # Temperature and sound speed, starting from the recombination values at reio_start
    z_reco = reco.column("z")
    Tb_start = jnp.interp(z[0], z_reco, reco.column("Tb"))
    cb2_start = jnp.interp(z[0], z_reco, reco.column("cb2"))
    Tb, dTb_dz = _reionization_temperature(z, sample.xe, dkappadeta, Tb_start, params, bg)
    cb2 = baryon_sound_speed_squared(z, Tb, dTb_dz, sample.xe, params.Y_He)
    cb2 = cb2.at[0].set(cb2_start)

    columns = {
        "z": z,
        "xe": sample.xe,
        "Tb": Tb,
        "cb2": cb2,
        "dkappadeta": dkappadeta,
        "dkappadz": sample.dkappadz,
        "d2kappadz2": sample.d2kappadz2,
        "d3kappadz3": sample.d3kappadz3,
    }
    table = jnp.stack([columns[name] for name in indices.reionization.names], axis=1)[::-1]
    parameters = jnp.array(
        [sample.parameters[name] for name in indices.reio_parameters.names]
    )

    logger.info(
        "Reionization: z_reio=%.4f, tau_reio=%.5f (%d rows)",
        z_reio, float(sample.optical_depth), table.shape[0],
    )

    return ReionizationTable(
        indices=indices,
        table=table,
        parameters=parameters,
        optical_depth=sample.optical_depth,
        z_reio=z_reio,
    )
