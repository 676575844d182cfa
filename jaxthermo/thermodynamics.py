"""Thermodynamics module for jaxthermo.

Merges the recombination and reionization histories into one table ascending
in redshift, derives the scattering-rate derivatives, optical depth and
visibility function, builds the spline derivative table and answers point
queries.

Key functions:
    thermodynamics_solve(params, prec, bg) -> ThermoResult
    thermodynamics_at_z(th, z, intermode, last_index) -> (row, index)
    thermodynamics_free(th)

Column meanings (tau is conformal time):
    xe           free electron fraction n_e / n_H
    dkappa       dkappa/dtau, Thomson scattering rate [Mpc^-1]
    ddkappa      d^2kappa/dtau^2 (time derivative of the rate)
    dddkappa     d^3kappa/dtau^3
    exp_m_kappa  exp(-kappa), kappa the optical depth from today
    g            visibility function g = dkappa e^{-kappa}
    dg, ddg      dg/dtau, d^2g/dtau^2
    Tb           baryon temperature [K]
    cb2          baryon sound speed squared
    dacb2        d[cb2 / (1+z)]/dtau
    rate         sqrt(dkappa^2 + (ddkappa/dkappa)^2 + (dddkappa/dkappa)^2)

Mirrors CLASS source: source/thermodynamics.c
    - thermodynamics_init()
    - thermodynamics_merge_reco_and_reio()
    - thermodynamics_at_z()
    - thermodynamics_free()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from jaxthermo.background import (
    BackgroundResult,
    hubble_derivatives_of_z,
    rs_of_z,
    tau_of_z,
)
from jaxthermo.errors import ConfigurationError, OutOfRangeQuery, ThermodynamicsError
from jaxthermo.indices import ThermoIndices, thermodynamics_indices
from jaxthermo.interpolation import (
    CubicSpline,
    check_strictly_increasing,
    spline_segment_integrals,
    spline_table,
    spline_table_row,
    spline_table_slope,
)
from jaxthermo.params import CosmoParams, PrecisionParams, check_params
from jaxthermo.recombination import RecombinationTable, recombination_solve
from jaxthermo.reionization import ReionizationTable, reionization_solve

logger = logging.getLogger(__name__)

INTERPOLATION_MODES = ("normal", "closeby")

# Rows walked from the cached index before falling back to binary search
_CLOSEBY_MAX_STEPS = 8


# ---------------------------------------------------------------------------
# ThermoResult
# ---------------------------------------------------------------------------

@jax.tree_util.register_pytree_node_class
@dataclass(eq=False)
class ThermoResult:
    """Output of the thermodynamics module.

    Rows of the tables are ascending in redshift, row 0 is today. The spline
    table holds d^2(column)/dz^2 with natural boundary conditions. Tables are
    read-only; thermodynamics_free() releases them.
    """

    indices: ThermoIndices

    # Tables
    z_table: Float[Array, "N"]                     # redshift of each row
    tau_table: Float[Array, "N"]                   # conformal time of each row [Mpc]
    kappa_table: Float[Array, "N"]                 # optical depth from today to each row
    d2_kappa_table: Float[Array, "N"]              # d^2kappa/dz^2 of the kappa column
    thermodynamics_table: Float[Array, "N C"]      # columns per indices.thermo
    d2_table: Float[Array, "N C"]                  # d^2/dz^2 of each column

    # Derived scalars
    z_visibility_max: float            # redshift of the visibility peak
    z_visibility_free_streaming: float # g < threshold * g_max below this redshift
    tau_rec: float                     # conformal time at the visibility peak [Mpc]
    rs_rec: float                      # comoving sound horizon at the visibility peak [Mpc]
    tau_ini: float                     # conformal time of the earliest row [Mpc]
    n_e: float                         # hydrogen number density today [m^-3]
    fHe: float                         # helium-to-hydrogen number ratio
    z_reio: float                      # reionization redshift (nan without reionization)
    tau_reio: float                    # optical depth to reionization

    index_reio_junction: Optional[int] = None  # first recombination row after the splice
    released: bool = False

    def tree_flatten(self):
        children = (
            self.z_table, self.tau_table, self.kappa_table, self.d2_kappa_table,
            self.thermodynamics_table, self.d2_table,
            self.z_visibility_max, self.z_visibility_free_streaming,
            self.tau_rec, self.rs_rec, self.tau_ini,
            self.n_e, self.fHe, self.z_reio, self.tau_reio,
        )
        aux_data = (self.indices, self.index_reio_junction, self.released)
        return children, aux_data

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        indices, junction, released = aux_data
        return cls(indices, *children, index_reio_junction=junction, released=released)

    def column(self, name: str) -> Float[Array, "N"]:
        """Full column of the thermodynamics table by name."""
        self._check_alive()
        return self.thermodynamics_table[:, self.indices.thermo[name]]

    @property
    def z_min(self) -> float:
        self._check_alive()
        return float(self.z_table[0])

    @property
    def z_max(self) -> float:
        self._check_alive()
        return float(self.z_table[-1])

    def _check_alive(self):
        if self.released:
            raise ThermodynamicsError("thermodynamics tables have been released")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        thermodynamics_free(self)
        return False


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _merge_reco_and_reio(
    reco: RecombinationTable, reio: Optional[ReionizationTable]
):
    """Splice reionization rows (z <= reio_start) onto the recombination rows above.

    cf. thermodynamics.c: thermodynamics_merge_reco_and_reio()

    Returns:
        dict with z, xe, dkappa, Tb, cb2 columns, and the junction row index
    """
    names = ("z", "xe", "Tb", "cb2")
    if reio is None:
        merged = {name: reco.column(name) for name in names}
        merged["dkappa"] = reco.column("dkappadeta")
        return merged, None

    z_start = reio.column("z")[-1]
    keep = np.asarray(reco.column("z")) > float(z_start)
    if not keep.any():
        raise ConfigurationError(
            f"reionization starts at z={float(z_start)}, above the recombination table"
        )
    first = int(np.argmax(keep))
    merged = {
        name: jnp.concatenate([reio.column(name), reco.column(name)[first:]])
        for name in names
    }
    merged["dkappa"] = jnp.concatenate(
        [reio.column("dkappadeta"), reco.column("dkappadeta")[first:]]
    )
    return merged, reio.table.shape[0]


# ---------------------------------------------------------------------------
# Derived columns
# ---------------------------------------------------------------------------

def _scattering_rate_derivatives(tau, dkappa, reio, bg):
    """d(dkappa)/dtau and d^2(dkappa)/dtau^2 on every row.

    A natural spline of dkappa over conformal time covers the whole table;
    reionization rows take the closed-form chain-rule values instead:
        dK/dtau = -H dK/dz,  d^2K/dtau^2 = H (dH/dz dK/dz + H d^2K/dz^2),
    with K = H dkappa/dz.
    """
    tau_up = tau[::-1]
    check_strictly_increasing(tau_up, "conformal time")
    spline = CubicSpline(tau_up, dkappa[::-1])
    ddkappa = spline.derivative(tau_up)[::-1]
    dddkappa = spline.derivative2(tau_up)[::-1]

    if reio is not None:
        n_reio = reio.table.shape[0]
        z_r = reio.column("z")
        f = reio.column("dkappadz")
        df = reio.column("d2kappadz2")
        d2f = reio.column("d3kappadz3")
        H, dH, d2H = hubble_derivatives_of_z(bg, z_r)
        K_z = dH * f + H * df
        K_zz = d2H * f + 2.0 * dH * df + H * d2f
        ddkappa = ddkappa.at[:n_reio].set(-H * K_z)
        dddkappa = dddkappa.at[:n_reio].set(H * (dH * K_z + H * K_zz))

    # Running optical depth from today (row 0) backwards in time
    segments = spline_segment_integrals(spline.x, spline.y, spline.d2y)
    kappa = jnp.concatenate([jnp.zeros(1), jnp.cumsum(segments[::-1])])
    return ddkappa, dddkappa, kappa


def _visibility_peak(z_host, g_host, d2g_host) -> float:
    """Redshift of max g, refined by bisection on the spline slope."""
    i = int(np.argmax(g_host))
    if i == 0 or i == z_host.size - 1:
        return float(z_host[i])

    def slope(zq):
        idx = i - 1 if zq < z_host[i] else i
        return spline_table_slope(z_host, g_host, d2g_host, idx, zq)

    lo, hi = float(z_host[i - 1]), float(z_host[i + 1])
    s_lo, s_hi = slope(lo), slope(hi)
    if s_lo * s_hi > 0.0:
        return float(z_host[i])
    for _ in range(60):
        mid = 0.5 * (lo + hi)
        s_mid = slope(mid)
        if s_mid * s_lo > 0.0:
            lo, s_lo = mid, s_mid
        else:
            hi = mid
    return 0.5 * (lo + hi)


def _free_streaming_redshift(z_host, g_host, threshold: float) -> float:
    """First redshift below the visibility peak where g < threshold * g_max."""
    i = int(np.argmax(g_host))
    below = np.nonzero(g_host[: i + 1] < threshold * g_host[i])[0]
    return float(z_host[below[-1]]) if below.size else 0.0


# ---------------------------------------------------------------------------
# Main solver
# ---------------------------------------------------------------------------

def thermodynamics_solve(
    params: CosmoParams,
    prec: PrecisionParams,
    bg: BackgroundResult,
) -> ThermoResult:
    """Compute the thermal and ionization history.

    Runs the recombination and reionization stages, merges them, derives the
    visibility function and builds the spline table.

    Args:
        params: cosmological parameters
        prec: precision parameters
        bg: background result

    Returns:
        ThermoResult

    Raises:
        ConfigurationError: invalid parameters or unreachable tau_reio
        NumericalDivergence: recombination ODE or optical-depth bisection failed
        MonotonicityViolation: merged rows not strictly ordered
    """
    check_params(params, prec)
    indices = thermodynamics_indices(params.reio_parametrization)

    reco = recombination_solve(params, prec, bg, indices.recombination)
    reio = reionization_solve(params, prec, bg, reco, indices)
    merged, junction = _merge_reco_and_reio(reco, reio)

    z = merged["z"]
    K = merged["dkappa"]
    check_strictly_increasing(z, "merged redshift")
    tau = tau_of_z(bg, z)

    dK, d2K, kappa = _scattering_rate_derivatives(tau, K, reio, bg)
    exp_m_kappa = jnp.exp(-kappa)
    g = K * exp_m_kappa
    dg = (dK + K**2) * exp_m_kappa
    ddg = (d2K + 3.0 * K * dK + K**3) * exp_m_kappa

    tau_up = tau[::-1]
    acb2 = CubicSpline(tau_up, (merged["cb2"] / (1.0 + z))[::-1])
    dacb2 = acb2.derivative(tau_up)[::-1]
    rate = jnp.sqrt(K**2 + (dK / K) ** 2 + (d2K / K) ** 2)

    columns = {
        "xe": merged["xe"],
        "dkappa": K,
        "ddkappa": dK,
        "dddkappa": d2K,
        "exp_m_kappa": exp_m_kappa,
        "g": g,
        "dg": dg,
        "ddg": ddg,
        "Tb": merged["Tb"],
        "cb2": merged["cb2"],
        "dacb2": dacb2,
        "rate": rate,
    }
    table = jnp.stack([columns[name] for name in indices.thermo.names], axis=1)
    d2_table = spline_table(z, table)
    d2_kappa = spline_table(z, kappa[:, None])[:, 0]

    # --- Derived scalars ---
    z_host = np.asarray(z)
    i_g = indices.thermo["g"]
    g_host = np.asarray(table[:, i_g])
    z_vis = _visibility_peak(z_host, g_host, np.asarray(d2_table[:, i_g]))
    z_fs = _free_streaming_redshift(
        z_host, g_host, prec.visibility_threshold_free_streaming
    )

    if reio is not None:
        z_reio = reio.z_reio
        tau_reio = float(reio.optical_depth)
    else:
        z_reio = float("nan")
        tau_reio = float(jnp.interp(prec.reionization_z_start_max, z, kappa))

    tau_rec = float(tau_of_z(bg, z_vis))
    rs_rec = float(rs_of_z(bg, z_vis))
    logger.info(
        "Visibility peak at z=%.2f: tau_rec=%.3f Mpc, rs_rec=%.3f Mpc; free streaming below z=%.2f",
        z_vis, tau_rec, rs_rec, z_fs,
    )

    return ThermoResult(
        indices=indices,
        z_table=z,
        tau_table=tau,
        kappa_table=kappa,
        d2_kappa_table=d2_kappa,
        thermodynamics_table=table,
        d2_table=d2_table,
        z_visibility_max=z_vis,
        z_visibility_free_streaming=z_fs,
        tau_rec=tau_rec,
        rs_rec=rs_rec,
        tau_ini=tau[-1],
        n_e=reco.n_e,
        fHe=reco.fHe,
        z_reio=z_reio,
        tau_reio=tau_reio,
        index_reio_junction=junction,
    )


# ---------------------------------------------------------------------------
# Query API
# ---------------------------------------------------------------------------

def _host_redshift(th: ThermoResult, z: float):
    th._check_alive()
    z_host = np.asarray(th.z_table)
    z = float(z)
    if not z_host[0] <= z <= z_host[-1]:
        raise OutOfRangeQuery(z, float(z_host[0]), float(z_host[-1]))
    return z_host, z


def _bracket_binary(z_host, z: float) -> int:
    idx = int(np.searchsorted(z_host, z, side="right")) - 1
    return min(max(idx, 0), z_host.size - 2)


def _bracket_closeby(z_host, z: float, last_index: Optional[int]) -> int:
    """Walk from the cached bracket; binary search if it is missing or too far."""
    n = z_host.size
    if last_index is None or not 0 <= last_index <= n - 2:
        return _bracket_binary(z_host, z)
    idx = last_index
    for _ in range(_CLOSEBY_MAX_STEPS):
        if z < z_host[idx] and idx > 0:
            idx -= 1
        elif z >= z_host[idx + 1] and idx < n - 2:
            idx += 1
        else:
            return idx
    return _bracket_binary(z_host, z)


def thermodynamics_at_z(
    th: ThermoResult,
    z: float,
    intermode: str = "normal",
    last_index: Optional[int] = None,
):
    """All thermodynamics columns at redshift z.

    Args:
        th: result of thermodynamics_solve
        z: redshift within [th.z_min, th.z_max]
        intermode: "normal" (binary search) or "closeby" (walk from last_index)
        last_index: bracket index returned by the previous query, for "closeby"

    Returns:
        (row, index): dict column name -> value, and the bracket index to pass
        back as last_index

    Raises:
        OutOfRangeQuery: z outside the table
        ConfigurationError: unknown intermode
        ThermodynamicsError: th has been released
    """
    z_host, z = _host_redshift(th, z)

    if intermode == "normal":
        idx = _bracket_binary(z_host, z)
    elif intermode == "closeby":
        idx = _bracket_closeby(z_host, z, last_index)
    else:
        raise ConfigurationError(
            f"Unknown interpolation mode {intermode!r}, expected one of {INTERPOLATION_MODES}"
        )

    row = spline_table_row(
        z_host,
        np.asarray(th.thermodynamics_table),
        np.asarray(th.d2_table),
        idx,
        z,
    )
    return {name: float(row[i]) for i, name in enumerate(th.indices.thermo.names)}, idx


def xe_of_z(th: ThermoResult, z: float) -> float:
    """Free electron fraction at redshift z."""
    row, _ = thermodynamics_at_z(th, z)
    return row["xe"]


def optical_depth_of_z(th: ThermoResult, z: float) -> float:
    """Thomson optical depth kappa between today and redshift z."""
    z_host, z = _host_redshift(th, z)
    idx = _bracket_binary(z_host, z)
    kappa = spline_table_row(
        z_host,
        np.asarray(th.kappa_table)[:, None],
        np.asarray(th.d2_kappa_table)[:, None],
        idx,
        z,
    )
    return float(kappa[0])


def thermodynamics_free(th: ThermoResult) -> None:
    """Release the tables of a ThermoResult; later queries raise."""
    th.z_table = None
    th.tau_table = None
    th.kappa_table = None
    th.d2_kappa_table = None
    th.thermodynamics_table = None
    th.d2_table = None
    th.released = True
