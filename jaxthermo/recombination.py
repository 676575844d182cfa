"""Recombination history (RECFAST 1.4) for jaxthermo.

Produces the ionization fraction x_e(z), baryon temperature T_b(z), baryon
sound speed c_b^2(z) and Thomson rate dkappa/dtau(z) from z = recfast_z_initial
down to z = 0.

Regimes, from early to late:
    1. fully ionized:           x_e = 1 + 2 fHe
    2. HeIII -> HeII Saha:      blended in around z_He_1
    3. HeII complete:           x_e = 1 + fHe, blended in around z_He_2
    4. HeII -> HeI Saha:        blended in around z_He_3
    5. stiff ODE for (x_H, x_He, T_m) once x_He drops below x_He0_trigger

RECFAST switches regimes abruptly. Here every switch is a smoothstep blend
(jaxthermo.smoothing), including the hydrogen Saha -> Peebles transition and
the tightly coupled -> free matter temperature transition inside the ODE,
so the right-hand side stays differentiable for the implicit solver.

References:
    CLASS source: source/thermodynamics.c
        - thermodynamics_recombination_with_recfast()
        - thermodynamics_derivs_with_recfast()
    Seager, Sasselov & Scott (1999), ApJS 128, 407
    Wong, Moss & Scott (2008), MNRAS 386, 1023
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple

import diffrax
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from jaxthermo import constants as const
from jaxthermo.background import BackgroundResult, hubble_derivatives_of_z
from jaxthermo.errors import ConfigurationError
from jaxthermo.indices import IndexMap
from jaxthermo.ode import check_solution, solve_stiff
from jaxthermo.params import CosmoParams, PrecisionParams
from jaxthermo.smoothing import smoothstep_symmetric, smoothstep_unit

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Derived RECFAST coefficients (temperatures in K, lengths in m)
# cf. thermodynamics.c, thermodynamics_recombination_with_recfast()
# ---------------------------------------------------------------------------

_hc_over_kB = const.h_P_SI * const.c_SI / const.k_B_SI

_CDB = _hc_over_kB * (const.L_H_ion - const.L_H_alpha)
_CDB_He = _hc_over_kB * (const.L_He1_ion - const.L_He_2s)
_CB1 = _hc_over_kB * const.L_H_ion
_CB1_He1 = _hc_over_kB * const.L_He1_ion
_CB1_He2 = _hc_over_kB * const.L_He2_ion
_CR = 2.0 * math.pi * (const.m_e / const.h_P_SI) * (const.k_B_SI / const.h_P_SI)
_CK = 1.0 / (8.0 * math.pi * const.L_H_alpha**3)
_CK_He = 1.0 / (8.0 * math.pi * const.L_He_2p**3)
_CL = _hc_over_kB * const.L_H_alpha
_CL_He = _hc_over_kB * const.L_He_2s
_CT = (8.0 / 3.0) * (const.sigma_T / (const.m_e * const.c_SI)) * const.a_rad
_BFACT = _hc_over_kB * (const.L_He_2p - const.L_He_2s)
_CL_PSt = _hc_over_kB * (const.L_He_2Pt - const.L_He_2St)
_CB_He2St = _hc_over_kB * const.L_He2St_ion
_CB_He_2St = _hc_over_kB * const.L_He_2St


# ---------------------------------------------------------------------------
# Output container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecombinationTable:
    """Recombination rows, ascending in z from 0 to recfast_z_initial."""

    indices: IndexMap
    table: Float[Array, "N C"]
    n_e: float            # hydrogen number density today [m^-3]
    fHe: float            # helium-to-hydrogen number ratio
    z_ode_start: float    # first redshift integrated by the ODE
    z_H_switch: float     # hydrogen starts leaving Saha equilibrium

    def column(self, name: str) -> Float[Array, "N"]:
        return self.table[:, self.indices[name]]


class RecfastContext(NamedTuple):
    """Everything the RECFAST right-hand side needs, passed as ODE args."""

    bg: BackgroundResult
    Tcmb: float
    fHe: float
    Nnow: float           # m^-3
    H0: float             # s^-1
    fudge_H: float
    fudge_He: float
    H_frac: float
    heswitch: float
    x_He0_trigger2: float
    z_H_switch: float
    delta_z_H: float


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def helium_fraction(Y_He):
    """Helium-to-hydrogen number ratio fHe = Y_He / (not4 (1 - Y_He))."""
    return Y_He / (const.not4 * (1.0 - Y_He))


def hydrogen_density_today(bg: BackgroundResult, Y_He) -> float:
    """Hydrogen number density today in m^-3.

    cf. thermodynamics.c: Nnow = 3 H0^2 Omega_b / (8 pi G mu_H m_H), mu_H = 1/(1 - Y_He)
    """
    H0_SI = bg.H0 * const.c_SI / const.Mpc_over_m
    return 3.0 * H0_SI**2 * bg.Omega_b * (1.0 - Y_He) / (8.0 * math.pi * const.G_SI * const.m_H)


def thomson_rate(z, xe, n_e):
    """Scattering rate dkappa/dtau = (1+z)^2 n_e x_e sigma_T in Mpc^-1."""
    return (1.0 + z) ** 2 * n_e * xe * const.sigma_T * const.Mpc_over_m


def baryon_sound_speed_squared(z, Tb, dTb_dz, xe, Y_He):
    """Adiabatic baryon sound speed squared (c=1).

    c_b^2 = k_B T_b / (mu c^2) (1 + (1+z)/(3 T_b) dT_b/dz),
    mu = m_H / (1 + (1/not4 - 1) Y_He + x_e (1 - Y_He))
    """
    mu = const.m_H / (1.0 + (1.0 / const.not4 - 1.0) * Y_He + xe * (1.0 - Y_He))
    return const.k_B_SI / (const.c_SI**2 * mu) * Tb * (1.0 + (1.0 + z) / (3.0 * Tb) * dTb_dz)


def _hubble_SI(bg, z):
    """H [s^-1] and dH/dz [s^-1] at redshift z."""
    H, dH, _ = hubble_derivatives_of_z(bg, z)
    conv = const.c_SI / const.Mpc_over_m
    return H * conv, dH * conv


# ---------------------------------------------------------------------------
# Saha equilibria
# ---------------------------------------------------------------------------

def _saha_prefactor(z, Tcmb, Nnow, binding_temperature):
    """(CR T_rad)^{3/2} exp(-B/k T_rad) / n_H for a radiation-temperature plasma."""
    Trad = Tcmb * (1.0 + z)
    return jnp.exp(1.5 * jnp.log(_CR * Tcmb / (1.0 + z)) - binding_temperature / Trad) / Nnow


def hydrogen_saha(z, Tcmb, Nnow):
    """Saha ionized hydrogen fraction and its redshift derivative.

    Solves x^2 / (1 - x) = r in the cancellation-free form x = 2 / (1 + sqrt(1 + 4/r)).
    """
    r = jnp.maximum(_saha_prefactor(z, Tcmb, Nnow, _CB1), 1e-30)
    q = jnp.sqrt(1.0 + 4.0 / r)
    x_H = 2.0 / (1.0 + q)
    dlnr_dz = -1.5 / (1.0 + z) + _CB1 / (Tcmb * (1.0 + z) ** 2)
    dx_dz = 4.0 / ((1.0 + q) ** 2 * q * r) * dlnr_dz
    return x_H, dx_dz


def _helium_saha_history(z, Tcmb, Nnow, fHe, prec: PrecisionParams):
    """x_e - 1 during the three algebraic helium stages (x_H = 1 assumed).

    cf. thermodynamics.c, regimes "first approximation" to "fourth approximation"
    """
    # HeIII <-> HeII
    rhs2 = _saha_prefactor(z, Tcmb, Nnow, _CB1_He2)
    saha2 = 0.5 * (
        jnp.sqrt((rhs2 - 1.0 - fHe) ** 2 + 4.0 * (1.0 + 2.0 * fHe) * rhs2)
        - (rhs2 - 1.0 - fHe)
    )
    # HeII <-> HeI
    rhs1 = 4.0 * _saha_prefactor(z, Tcmb, Nnow, _CB1_He1)
    saha1 = 0.5 * (jnp.sqrt((rhs1 - 1.0) ** 2 + 4.0 * (1.0 + fHe) * rhs1) - (rhs1 - 1.0))

    w1, _, _ = smoothstep_symmetric((prec.recfast_z_He_1 - z) / prec.recfast_delta_z_He_1)
    w2, _, _ = smoothstep_symmetric((prec.recfast_z_He_2 - z) / prec.recfast_delta_z_He_2)
    w3, _, _ = smoothstep_symmetric((prec.recfast_z_He_3 - z) / prec.recfast_delta_z_He_3)

    stage2 = (1.0 + 2.0 * fHe) + (saha2 - (1.0 + 2.0 * fHe)) * w1
    stage3 = saha2 + (1.0 + fHe - saha2) * w2
    stage4 = (1.0 + fHe) + (saha1 - (1.0 + fHe)) * w3

    x0 = jnp.where(
        z > prec.recfast_z_He_2 + prec.recfast_delta_z_He_2,
        stage2,
        jnp.where(z > prec.recfast_z_He_3 + prec.recfast_delta_z_He_3, stage3, stage4),
    )
    return x0 - 1.0


# ---------------------------------------------------------------------------
# RECFAST right-hand side
# ---------------------------------------------------------------------------

def _escape_probability(tau):
    """Sobolev escape probability (1 - e^-tau) / tau, finite as tau -> 0."""
    tau_safe = jnp.maximum(tau, 1e-7)
    return jnp.where(tau > 1e-7, -jnp.expm1(-tau_safe) / tau_safe, 1.0 - 0.5 * tau)


def _recfast_dydz(z, y, ctx: RecfastContext):
    """d(x_H, x_He, T_m)/dz.

    cf. thermodynamics.c: thermodynamics_derivs_with_recfast()
    """
    x_H = y[0]
    x_He = y[1]
    Tmat = y[2]
    fHe = ctx.fHe

    x = x_H + fHe * x_He
    n = ctx.Nnow * (1.0 + z) ** 3
    n_He = fHe * n
    Trad = ctx.Tcmb * (1.0 + z)
    Hz, dHdz = _hubble_SI(ctx.bg, z)

    one_m_xH = jnp.maximum(1.0 - x_H, 1e-30)
    one_m_xHe = jnp.maximum(1.0 - x_He, 1e-30)
    CR_T_32 = (_CR * Tmat) ** 1.5

    # --- Hydrogen: case-B recombination (Pequignot, Petitjean & Boisson) ---
    t4 = Tmat / 1e4
    Rdown = 1e-19 * const.a_PPB * t4**const.b_PPB / (1.0 + const.c_PPB * t4**const.d_PPB)
    Rup = Rdown * CR_T_32 * jnp.exp(-_CDB / Tmat)
    K = _CK / Hz

    # --- Helium singlet (Verner & Ferland) and triplet ---
    sq_0 = jnp.sqrt(Tmat / const.T_0)
    sq_1 = jnp.sqrt(Tmat / const.T_1)
    Rdown_He = const.a_VF / (sq_0 * (1.0 + sq_0) ** (1.0 - const.b_VF) * (1.0 + sq_1) ** (1.0 + const.b_VF))
    Rup_He = 4.0 * Rdown_He * CR_T_32 * jnp.exp(-_CDB_He / Tmat)
    Rdown_trip = const.a_trip / (sq_0 * (1.0 + sq_0) ** (1.0 - const.b_trip) * (1.0 + sq_1) ** (1.0 + const.b_trip))
    Rup_trip = Rdown_trip * jnp.exp(-_CB_He2St / Tmat) * CR_T_32 * 4.0 / 3.0

    # Helium corrections only while x_He is neither negligible nor saturated
    he_active = (x_He >= 5e-9) & (x_He <= ctx.x_He0_trigger2)
    heflag = jnp.where(he_active, ctx.heswitch, 0.0)
    hydrogen_opaque = x_H < 0.99999

    # Singlet: Sobolev escape plus continuum opacity of neutral hydrogen
    tauHe_s = const.A2P_s * _CK_He * 3.0 * n_He * one_m_xHe / Hz
    pHe_s = _escape_probability(tauHe_s)
    doppler_s = const.c_SI * const.L_He_2p * jnp.sqrt(
        2.0 * const.k_B_SI * Tmat / (const.m_H * const.not4 * const.c_SI**2)
    )
    gamma_2Ps = (
        3.0 * const.A2P_s * fHe * one_m_xHe * const.c_SI**2
        / (jnp.sqrt(math.pi) * const.sigma_He_2Ps * 8.0 * math.pi * doppler_s * one_m_xH)
        / (const.c_SI * const.L_He_2p) ** 2
    )
    AHcon_s = const.A2P_s / (1.0 + 0.36 * gamma_2Ps**ctx.fudge_He)
    K_He_escape = 1.0 / (const.A2P_s * pHe_s * 3.0 * n_He * one_m_xHe)
    K_He_hcon = 1.0 / ((const.A2P_s * pHe_s + AHcon_s) * 3.0 * n_He * one_m_xHe)
    use_hcon_s = ((heflag == 2.0) | (heflag >= 5.0)) & hydrogen_opaque
    K_He = jnp.where(
        heflag == 0.0,
        _CK_He / Hz,
        jnp.where(use_hcon_s, K_He_hcon, K_He_escape),
    )

    # Triplet channel
    tauHe_t = const.A2P_t * n_He * one_m_xHe * 3.0 / (8.0 * math.pi * Hz * const.L_He_2Pt**3)
    pHe_t = _escape_probability(tauHe_t)
    doppler_t = const.c_SI * const.L_He_2Pt * jnp.sqrt(
        2.0 * const.k_B_SI * Tmat / (const.m_H * const.not4 * const.c_SI**2)
    )
    gamma_2Pt = (
        3.0 * const.A2P_t * fHe * one_m_xHe * const.c_SI**2
        / (jnp.sqrt(math.pi) * const.sigma_He_2Pt * 8.0 * math.pi * doppler_t * one_m_xH)
        / (const.c_SI * const.L_He_2Pt) ** 2
    )
    AHcon_t = const.A2P_t / (1.0 + 0.66 * gamma_2Pt**0.9) / 3.0
    use_hcon_t = ((heflag == 4.0) | (heflag == 6.0)) & hydrogen_opaque
    CfHe_t = jnp.where(use_hcon_t, const.A2P_t * pHe_t + AHcon_t, const.A2P_t * pHe_t)
    CfHe_t = CfHe_t * jnp.exp(-_CL_PSt / Tmat)
    CfHe_t = CfHe_t / (Rup_trip + CfHe_t)

    # --- Hydrogen: Saha slope blended into the Peebles equation ---
    dxH_peebles = (
        (x * x_H * n * Rdown - Rup * (1.0 - x_H) * jnp.exp(-_CL / Tmat))
        * (1.0 + K * const.Lambda * n * (1.0 - x_H))
        / (
            Hz * (1.0 + z)
            * (1.0 / ctx.fudge_H + K * const.Lambda * n * (1.0 - x_H) / ctx.fudge_H
               + K * Rup * n * (1.0 - x_H))
        )
    )
    _, dxH_saha = hydrogen_saha(z, ctx.Tcmb, ctx.Nnow)
    w_H = smoothstep_unit((ctx.z_H_switch - z) / ctx.delta_z_H)
    dxH = (1.0 - w_H) * dxH_saha + w_H * dxH_peebles

    # --- Helium ---
    He_Boltz = jnp.exp(jnp.minimum(_BFACT / Tmat, 680.0))
    dxHe_singlet = (
        (x * x_He * n * Rdown_He - Rup_He * (1.0 - x_He) * jnp.exp(-_CL_He / Tmat))
        * (1.0 + K_He * const.Lambda_He * n_He * (1.0 - x_He) * He_Boltz)
        / (Hz * (1.0 + z)
           * (1.0 + K_He * (const.Lambda_He + Rup_He) * n_He * (1.0 - x_He) * He_Boltz))
    )
    dxHe_triplet = (
        (x * x_He * n * Rdown_trip
         - (1.0 - x_He) * 3.0 * Rup_trip * jnp.exp(-_CB_He_2St / Tmat))
        * CfHe_t / (Hz * (1.0 + z))
    )
    dxHe = dxHe_singlet + jnp.where(heflag >= 3.0, dxHe_triplet, 0.0)
    dxHe = jnp.where(x_He < 1e-15, 0.0, dxHe)

    # --- Matter temperature: tightly coupled form blended into the Compton equation ---
    timeTh = (1.0 / (_CT * Trad**4)) * (1.0 + x + fHe) / x
    timeH = 2.0 / (3.0 * ctx.H0 * (1.0 + z) ** 1.5)
    epsilon = Hz * (1.0 + x + fHe) / (_CT * Trad**3 * x)
    dT_tight = (
        ctx.Tcmb
        + epsilon * ((1.0 + fHe) / (1.0 + fHe + x)) * ((dxH + fHe * dxHe) / x)
        - epsilon * dHdz / Hz
        + 3.0 * epsilon / (1.0 + z)
    )
    dT_free = (
        _CT * Trad**4 * x / (1.0 + x + fHe) * (Tmat - Trad) / (Hz * (1.0 + z))
        + 2.0 * Tmat / (1.0 + z)
    )
    w_T = smoothstep_unit(timeTh / (ctx.H_frac * timeH) - 1.0)
    dT = (1.0 - w_T) * dT_tight + w_T * dT_free

    return jnp.array([dxH, dxHe, dT])


def _recfast_rhs(loga, y, ctx: RecfastContext):
    """RECFAST system in log(a): dy/dloga = -(1+z) dy/dz."""
    z = jnp.expm1(-loga)
    return -(1.0 + z) * _recfast_dydz(z, y, ctx)


# ---------------------------------------------------------------------------
# Main solver
# ---------------------------------------------------------------------------

def recombination_solve(
    params: CosmoParams,
    prec: PrecisionParams,
    bg: BackgroundResult,
    indices: IndexMap,
) -> RecombinationTable:
    """Tabulate the recombination history on a uniform redshift grid.

    Args:
        params: cosmological parameters (T_cmb, Y_He)
        prec: precision parameters (recfast_* entries)
        bg: background result providing H(z) and Omega_b
        indices: column layout of the recombination table

    Returns:
        RecombinationTable with rows ascending in z

    Raises:
        ConfigurationError: if T_cmb or Y_He are outside the RECFAST bounds
        NumericalDivergence: if the stiff integration fails
    """
    Tcmb = params.T_cmb
    Y_He = params.Y_He
    if not const.TCMB_SMALL <= float(Tcmb) <= const.TCMB_BIG:
        raise ConfigurationError(
            f"T_cmb={float(Tcmb)} out of bounds [{const.TCMB_SMALL}, {const.TCMB_BIG}]"
        )
    if not const.YHE_SMALL <= float(Y_He) <= const.YHE_BIG:
        raise ConfigurationError(
            f"Y_He={float(Y_He)} out of bounds [{const.YHE_SMALL}, {const.YHE_BIG}]"
        )

    fHe = helium_fraction(Y_He)
    Nnow = hydrogen_density_today(bg, Y_He)
    H0_SI = bg.H0 * const.c_SI / const.Mpc_over_m

    # Uniform grid from z_initial down to 0
    z = jnp.linspace(prec.recfast_z_initial, 0.0, prec.recfast_Nz0 + 1)
    x_H_saha, _ = hydrogen_saha(z, Tcmb, Nnow)
    x_He_alg = _helium_saha_history(z, Tcmb, Nnow, fHe, prec) / fHe

    # --- Regime switches (host side, they fix array shapes) ---
    z_host = np.asarray(z)
    in_heI_ode = (z_host <= prec.recfast_z_He_3 + prec.recfast_delta_z_He_3) & (
        np.asarray(x_He_alg) < prec.recfast_x_He0_trigger
    )
    if not in_heI_ode.any():
        raise ConfigurationError(
            "helium never leaves Saha equilibrium above z=0; "
            f"check recfast_x_He0_trigger={prec.recfast_x_He0_trigger}"
        )
    i0 = max(int(np.argmax(in_heI_ode)) - 1, 0)

    leaving_saha = (np.arange(z_host.size) >= i0) & (
        np.asarray(x_H_saha) < prec.recfast_x_H0_trigger
    )
    if not leaving_saha.any():
        raise ConfigurationError(
            f"hydrogen never drops below recfast_x_H0_trigger={prec.recfast_x_H0_trigger}"
        )
    z_H_switch = float(z_host[int(np.argmax(leaving_saha))])
    logger.debug(
        "RECFAST: helium ODE from z=%.1f, hydrogen leaves Saha at z=%.1f",
        z_host[i0], z_H_switch,
    )

    ctx = RecfastContext(
        bg=bg,
        Tcmb=Tcmb,
        fHe=fHe,
        Nnow=Nnow,
        H0=H0_SI,
        fudge_H=prec.recfast_fudge_H,
        fudge_He=prec.recfast_fudge_He,
        H_frac=prec.recfast_H_frac,
        heswitch=float(prec.recfast_Heswitch),
        x_He0_trigger2=prec.recfast_x_He0_trigger2,
        z_H_switch=z_H_switch,
        delta_z_H=prec.recfast_delta_z_H,
    )

    # --- Stiff integration over the remaining grid ---
    z_ode = z[i0:]
    loga_ode = -jnp.log1p(z_ode)
    y0 = jnp.array([x_H_saha[i0], x_He_alg[i0], Tcmb * (1.0 + z_ode[0])])

    sol = solve_stiff(
        rhs_fn=_recfast_rhs,
        t0=loga_ode[0],
        t1=loga_ode[-1],
        y0=y0,
        saveat=diffrax.SaveAt(ts=loga_ode),
        args=ctx,
        rtol=prec.recfast_rtol,
        atol=prec.recfast_atol,
        max_steps=prec.recfast_max_steps,
        adjoint=prec.ode_adjoint,
        throw=False,
    )
    check_solution(sol, "recombination", z_of_t=lambda t: math.expm1(-t))
    ys = sol.ys
    dydz = jax.vmap(_recfast_dydz, in_axes=(0, 0, None))(z_ode, ys, ctx)

    # --- Assemble columns (descending z) ---
    z_alg = z[:i0]
    xe = jnp.concatenate([x_H_saha[:i0] + fHe * x_He_alg[:i0], ys[:, 0] + fHe * ys[:, 1]])
    Tb = jnp.concatenate([Tcmb * (1.0 + z_alg), ys[:, 2]])
    dTb_dz = jnp.concatenate([Tcmb * jnp.ones_like(z_alg), dydz[:, 2]])
    cb2 = baryon_sound_speed_squared(z, Tb, dTb_dz, xe, Y_He)
    dkappa = thomson_rate(z, xe, Nnow)

    columns = {"z": z, "xe": xe, "Tb": Tb, "cb2": cb2, "dkappadeta": dkappa}
    table = jnp.stack([columns[name] for name in indices.names], axis=1)[::-1]

    logger.info(
        "Recombination: %d rows, ODE regime from z=%.1f", table.shape[0], z_host[i0]
    )

    return RecombinationTable(
        indices=indices,
        table=table,
        n_e=Nnow,
        fHe=fHe,
        z_ode_start=float(z_host[i0]),
        z_H_switch=z_H_switch,
    )
