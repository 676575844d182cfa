"""Background cosmology for jaxthermo.

Flat LCDM with photons, baryons, cold dark matter, massless neutrinos and a
cosmological constant. The thermodynamics pipeline only reads it through the
point queries at the bottom of this module (expansion rate and its redshift
derivatives, densities, conformal time, sound horizon).

The background ODE is integrated in log(a) from a_ini ~ 1e-7 to a = 1,
following CLASS's approach (background.c:background_solve).

Key functions:
    background_solve(params, prec) -> BackgroundResult
    background_at_z(bg, z) -> BackgroundPoint

Mirrors CLASS source: source/background.c
    - background_functions()
    - background_derivs()
    - background_initial_conditions()
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import NamedTuple

import diffrax
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from jaxthermo import constants as const
from jaxthermo.interpolation import CubicSpline
from jaxthermo.ode import solve_nonstiff
from jaxthermo.params import CosmoParams, PrecisionParams


# ---------------------------------------------------------------------------
# BackgroundResult
# ---------------------------------------------------------------------------

@jax.tree_util.register_pytree_node_class
@dataclass(frozen=True)
class BackgroundResult:
    """Output of the background module.

    Contains spline interpolation tables for all background quantities
    as functions of log(a), plus derived scalar quantities.
    """

    # Grid
    loga_table: Float[Array, "N"]     # log(a) grid
    tau_table: Float[Array, "N"]      # conformal time at each grid point

    # Splines (functions of log(a))
    tau_of_loga: CubicSpline          # conformal time tau(log a)
    loga_of_tau: CubicSpline          # inverse: log(a)(tau)
    H_of_loga: CubicSpline            # Hubble rate H(log a) [Mpc^-1]
    rho_g_of_loga: CubicSpline        # photon density
    rho_b_of_loga: CubicSpline        # baryon density
    rho_cdm_of_loga: CubicSpline      # CDM density
    rho_ur_of_loga: CubicSpline       # ultra-relativistic density
    rho_lambda_of_loga: CubicSpline   # cosmological constant density
    rs_of_loga: CubicSpline           # comoving sound horizon

    # Derived scalars
    conformal_age: float              # tau_0 = tau(a=1) [Mpc]
    age_Gyr: float                    # proper age [Gyr]
    z_eq: float                       # matter-radiation equality redshift
    tau_eq: float                     # conformal time at equality [Mpc]
    H0: float                         # H0 in Mpc^-1 (= h * 100 km/s/Mpc / c)
    Omega_g: float                    # photon density fraction today
    Omega_b: float                    # baryon density fraction today
    Omega_cdm: float                  # CDM density fraction today
    Omega_ur: float                   # ultra-relativistic density fraction today
    Omega_lambda: float               # cosmological constant density fraction today

    def tree_flatten(self):
        fields = [
            self.loga_table, self.tau_table,
            self.tau_of_loga, self.loga_of_tau,
            self.H_of_loga, self.rho_g_of_loga, self.rho_b_of_loga,
            self.rho_cdm_of_loga, self.rho_ur_of_loga,
            self.rho_lambda_of_loga, self.rs_of_loga,
            self.conformal_age, self.age_Gyr, self.z_eq, self.tau_eq,
            self.H0, self.Omega_g, self.Omega_b, self.Omega_cdm,
            self.Omega_ur, self.Omega_lambda,
        ]
        return fields, None

    @classmethod
    def tree_unflatten(cls, aux, fields):
        return cls(*fields)


class BackgroundPoint(NamedTuple):
    """Background quantities at a single redshift (CLASS units, Mpc based)."""

    a: float
    H: float
    rho_g: float
    rho_b: float
    tau: float
    rs: float


# ---------------------------------------------------------------------------
# Internal helper: density computations
# ---------------------------------------------------------------------------

def _H0_from_h(h: float) -> float:
    """Convert dimensionless h to H0 in CLASS units [Mpc^-1].

    With time measured in Mpc (c=1), H0 [1/Mpc] = h * 100 [km/s/Mpc] * 1e3 / c_SI.
    cf. CLASS input.c: pba->H0 = pba->h * 1.e5 / _c_
    """
    return h * 1e5 / const.c_SI


def _compute_omega_g(T_cmb: float, H0: float) -> float:
    """Compute photon density parameter Omega_g from T_cmb.

    Omega_g * H0^2 [Mpc^-2] = (8piG/3) * rho_g_phys [J/m^3] * Mpc_over_m^2 / c^4
    with rho_g_phys = (4 sigma_B / c) * T_cmb^4.
    """
    rho_g_phys = 4.0 * const.sigma_B / const.c_SI * T_cmb**4  # J/m^3
    rho_g_class = (
        8.0 * math.pi * const.G_SI / 3.0
        * rho_g_phys
        * const.Mpc_over_m**2
        / const.c_SI**4
    )
    return rho_g_class / H0**2


def _compute_omega_ur(N_ur: float, Omega_g: float) -> float:
    """Omega_ur = N_ur * (7/8) * (4/11)^(4/3) * Omega_g."""
    return N_ur * (7.0 / 8.0) * (4.0 / 11.0) ** (4.0 / 3.0) * Omega_g


def _background_functions(a, H0, Omega_g, Omega_b, Omega_cdm, Omega_ur, Omega_lambda):
    """Densities [Mpc^-2] and H [Mpc^-1] at scale factor a.

    cf. CLASS background.c, background_functions()
    """
    H0_sq = H0**2
    rho_g = Omega_g * H0_sq / a**4
    rho_b = Omega_b * H0_sq / a**3
    rho_cdm = Omega_cdm * H0_sq / a**3
    rho_ur = Omega_ur * H0_sq / a**4
    rho_lambda = Omega_lambda * H0_sq * jnp.ones_like(a)
    H = jnp.sqrt(rho_g + rho_b + rho_cdm + rho_ur + rho_lambda)
    return H, rho_g, rho_b, rho_cdm, rho_ur, rho_lambda


# ---------------------------------------------------------------------------
# Background ODE right-hand side
# ---------------------------------------------------------------------------

def _background_rhs(loga, y, args):
    """Background ODE right-hand side, integrated in log(a).

    cf. CLASS background.c, background_derivs()

    State vector y = [tau, t, rs]

    Derivatives:
        d(tau)/d(loga) = 1/(a*H)         [conformal time]
        d(t)/d(loga)   = 1/H             [proper time]
        d(rs)/d(loga)  = c_s/(a*H)       [sound horizon]
    """
    H0, Omega_g, Omega_b, Omega_cdm, Omega_ur, Omega_lambda = args
    a = jnp.exp(loga)
    H, rho_g, rho_b, _, _, _ = _background_functions(
        a, H0, Omega_g, Omega_b, Omega_cdm, Omega_ur, Omega_lambda
    )

    # c_s = 1/sqrt(3*(1 + 3*rho_b/(4*rho_g)))
    R = 3.0 * rho_b / (4.0 * rho_g)
    cs = 1.0 / jnp.sqrt(3.0 * (1.0 + R))

    return jnp.array([1.0 / (a * H), 1.0 / H, cs / (a * H)])


# ---------------------------------------------------------------------------
# Main solver
# ---------------------------------------------------------------------------

def background_solve(
    params: CosmoParams,
    prec: PrecisionParams = PrecisionParams(),
) -> BackgroundResult:
    """Solve the background cosmology.

    Integrates conformal time, proper time and sound horizon from a_ini to
    a=1, building interpolation tables for all background quantities.

    Args:
        params: cosmological parameters (JAX-traced)
        prec: precision parameters (static)

    Returns:
        BackgroundResult with all background spline tables
    """
    H0 = _H0_from_h(params.h)
    Omega_g = _compute_omega_g(params.T_cmb, H0)
    Omega_b = params.omega_b / params.h**2
    Omega_cdm = params.omega_cdm / params.h**2
    Omega_ur = _compute_omega_ur(params.N_ur, Omega_g)
    Omega_lambda = 1.0 - Omega_g - Omega_b - Omega_cdm - Omega_ur

    loga_min = math.log(prec.bg_a_ini_default)
    loga_max = 0.0
    loga_grid = jnp.linspace(loga_min, loga_max, prec.bg_n_points)
    a_ini = prec.bg_a_ini_default

    # Initial conditions deep in radiation domination
    # cf. CLASS background.c, background_initial_conditions()
    H_ini = jnp.sqrt((Omega_g + Omega_ur) * H0**2 / a_ini**4)
    tau_ini = 1.0 / (a_ini * H_ini)
    t_ini = 1.0 / (2.0 * H_ini)
    rs_ini = tau_ini / jnp.sqrt(3.0)
    y0 = jnp.array([tau_ini, t_ini, rs_ini])

    ode_args = (H0, Omega_g, Omega_b, Omega_cdm, Omega_ur, Omega_lambda)

    sol = solve_nonstiff(
        rhs_fn=_background_rhs,
        t0=loga_min,
        t1=loga_max,
        y0=y0,
        saveat=diffrax.SaveAt(ts=loga_grid),
        args=ode_args,
        rtol=prec.bg_tol,
        atol=prec.bg_tol * 1e-3,
        max_steps=65536,
        adjoint=prec.ode_adjoint,
        dt0=(loga_max - loga_min) / prec.bg_n_points,
    )

    tau_grid = sol.ys[:, 0]
    t_grid = sol.ys[:, 1]
    rs_grid = sol.ys[:, 2]

    a_grid = jnp.exp(loga_grid)
    H_grid, rho_g_grid, rho_b_grid, rho_cdm_grid, rho_ur_grid, rho_lambda_grid = (
        _background_functions(a_grid, H0, Omega_g, Omega_b, Omega_cdm, Omega_ur, Omega_lambda)
    )

    tau_of_loga = CubicSpline(loga_grid, tau_grid)

    # Matter-radiation equality (exact for this matter content)
    z_eq = (Omega_b + Omega_cdm) / (Omega_g + Omega_ur) - 1.0
    tau_eq = tau_of_loga.evaluate(-jnp.log1p(z_eq))

    return BackgroundResult(
        loga_table=loga_grid,
        tau_table=tau_grid,
        tau_of_loga=tau_of_loga,
        loga_of_tau=CubicSpline(tau_grid, loga_grid),
        H_of_loga=CubicSpline(loga_grid, H_grid),
        rho_g_of_loga=CubicSpline(loga_grid, rho_g_grid),
        rho_b_of_loga=CubicSpline(loga_grid, rho_b_grid),
        rho_cdm_of_loga=CubicSpline(loga_grid, rho_cdm_grid),
        rho_ur_of_loga=CubicSpline(loga_grid, rho_ur_grid),
        rho_lambda_of_loga=CubicSpline(loga_grid, rho_lambda_grid),
        rs_of_loga=CubicSpline(loga_grid, rs_grid),
        conformal_age=tau_grid[-1],
        age_Gyr=t_grid[-1] / const.Gyr_over_Mpc,
        z_eq=z_eq,
        tau_eq=tau_eq,
        H0=H0,
        Omega_g=Omega_g,
        Omega_b=Omega_b,
        Omega_cdm=Omega_cdm,
        Omega_ur=Omega_ur,
        Omega_lambda=Omega_lambda,
    )


# ---------------------------------------------------------------------------
# Point queries
# ---------------------------------------------------------------------------

def H_of_z(bg: BackgroundResult, z: float) -> float:
    """Hubble rate at redshift z in Mpc^-1."""
    return bg.H_of_loga.evaluate(-jnp.log1p(z))


def tau_of_z(bg: BackgroundResult, z: float) -> float:
    """Conformal time at redshift z in Mpc."""
    return bg.tau_of_loga.evaluate(-jnp.log1p(z))


def rs_of_z(bg: BackgroundResult, z: float) -> float:
    """Comoving sound horizon at redshift z in Mpc."""
    return bg.rs_of_loga.evaluate(-jnp.log1p(z))


def hubble_derivatives_of_z(bg: BackgroundResult, z):
    """H(z), dH/dz and d^2H/dz^2 in Mpc^-1.

    Uses the closed form of the flat LCDM Friedmann equation,
        H^2 = H0^2 [Omega_r (1+z)^4 + Omega_m (1+z)^3 + Omega_lambda],
    which the H_of_loga spline interpolates, so the derivatives carry no
    spline boundary error at z = 0.
    """
    x = 1.0 + jnp.asarray(z)
    Omega_r = bg.Omega_g + bg.Omega_ur
    Omega_m = bg.Omega_b + bg.Omega_cdm
    H0_sq = bg.H0**2

    E2 = H0_sq * (Omega_r * x**4 + Omega_m * x**3 + bg.Omega_lambda)
    dE2 = H0_sq * (4.0 * Omega_r * x**3 + 3.0 * Omega_m * x**2)
    d2E2 = H0_sq * (12.0 * Omega_r * x**2 + 6.0 * Omega_m * x)

    H = jnp.sqrt(E2)
    dH = 0.5 * dE2 / H
    d2H = 0.5 * d2E2 / H - 0.25 * dE2**2 / H**3
    return H, dH, d2H


def background_at_z(bg: BackgroundResult, z: float) -> BackgroundPoint:
    """Scale factor, expansion rate, photon and baryon densities, tau and r_s at z."""
    loga = -jnp.log1p(z)
    return BackgroundPoint(
        a=jnp.exp(loga),
        H=bg.H_of_loga.evaluate(loga),
        rho_g=bg.rho_g_of_loga.evaluate(loga),
        rho_b=bg.rho_b_of_loga.evaluate(loga),
        tau=bg.tau_of_loga.evaluate(loga),
        rs=bg.rs_of_loga.evaluate(loga),
    )


def comoving_distance(bg: BackgroundResult, z: float) -> float:
    """Comoving distance to redshift z in Mpc.

    chi(z) = tau_0 - tau(z)  (for flat universe)
    """
    return bg.conformal_age - tau_of_z(bg, z)


def angular_diameter_distance(bg: BackgroundResult, z: float) -> float:
    """Angular diameter distance D_A(z) = chi(z) / (1 + z) in Mpc."""
    return comoving_distance(bg, z) / (1.0 + z)
