"""Test the merged thermodynamics table, derived scalars and query API.

Reference scenario: Y_He = 0.25, T_cmb = 2.7255 K, CAMB-like reionization
at z_reio = 11, on the coarse grid of PrecisionParams.fast().
"""

import copy

import numpy as np
import pytest

import jaxthermo
from jaxthermo.errors import ConfigurationError, OutOfRangeQuery, ThermodynamicsError
from jaxthermo.thermodynamics import (
    optical_depth_of_z,
    thermodynamics_at_z,
    thermodynamics_free,
    thermodynamics_solve,
    xe_of_z,
)


@pytest.fixture(scope="module")
def th_none(scenario, prec):
    """Same cosmology without reionization, through the top-level pipeline."""
    result = jaxthermo.compute(scenario.replace(reio_parametrization="none"), prec)
    return result.th


class TestTable:

    def test_redshift_strictly_increasing(self, th):
        z = np.asarray(th.z_table)
        assert z[0] == pytest.approx(0.0, abs=1e-12)
        assert z[-1] == pytest.approx(1e4)
        assert np.all(np.diff(z) > 0)

    def test_conformal_time_decreasing(self, th):
        assert np.all(np.diff(np.asarray(th.tau_table)) < 0)
        assert float(th.tau_ini) == pytest.approx(float(th.tau_table[-1]))

    def test_finite(self, th):
        assert np.all(np.isfinite(np.asarray(th.thermodynamics_table)))
        assert np.all(np.isfinite(np.asarray(th.d2_table)))

    def test_ionization_bounds(self, th):
        xe = np.asarray(th.column("xe"))
        assert np.all(xe >= 0.0)
        assert np.all(xe <= 1.0 + 2.0 * float(th.fHe) + 1e-9)

    def test_junction(self, th):
        j = th.index_reio_junction
        z = np.asarray(th.z_table)
        assert z[j - 1] == pytest.approx(15.0)
        assert z[j] > 15.0

    def test_exp_m_kappa(self, th):
        e = np.asarray(th.column("exp_m_kappa"))
        assert e[0] == 1.0
        assert np.all((e >= 0.0) & (e <= 1.0))
        # underflows to exactly zero deep in the tightly coupled era
        assert np.all(np.diff(e[e > 0.0]) < 0)

    def test_rate_bounds_scattering_rate(self, th):
        rate = np.asarray(th.column("rate"))
        dkappa = np.asarray(th.column("dkappa"))
        assert np.all(rate >= dkappa * (1.0 - 1e-12))


class TestVisibility:

    def test_normalized(self, th):
        """int g dtau = 1 - exp(-kappa(z_max)), which is 1 here."""
        g = np.asarray(th.column("g"))
        tau = np.asarray(th.tau_table)
        integral = float(np.sum(0.5 * (g[1:] + g[:-1]) * np.abs(np.diff(tau))))
        assert abs(integral - 1.0) < 5e-3, f"int g dtau = {integral:.5f}"

    def test_peak(self, th):
        z_vis = float(th.z_visibility_max)
        assert abs(z_vis - 1090.0) < 30.0, f"z_visibility_max = {z_vis:.2f}"
        assert z_vis == pytest.approx(
            float(np.asarray(th.z_table)[np.argmax(np.asarray(th.column("g")))]), abs=5.0
        )

    def test_free_streaming_below_peak(self, th):
        z_fs = float(th.z_visibility_free_streaming)
        assert 200.0 < z_fs < float(th.z_visibility_max)
        row, _ = thermodynamics_at_z(th, z_fs)
        g_max = float(np.max(np.asarray(th.column("g"))))
        assert row["g"] < 1e-3 * g_max

    def test_recombination_scalars(self, th):
        assert isinstance(th.tau_rec, float) and isinstance(th.rs_rec, float)
        assert 250.0 < float(th.tau_rec) < 320.0, f"tau_rec = {float(th.tau_rec):.2f}"
        assert 135.0 < float(th.rs_rec) < 155.0, f"rs_rec = {float(th.rs_rec):.2f}"

    def test_dg_matches_finite_difference(self, th):
        z = np.asarray(th.z_table)
        tau = np.asarray(th.tau_table)
        g = np.asarray(th.column("g"))
        dg = np.asarray(th.column("dg"))
        rows = np.nonzero((z > 950.0) & (z < 1250.0))[0]
        numeric = (g[rows + 1] - g[rows - 1]) / (tau[rows + 1] - tau[rows - 1])
        err = np.max(np.abs(numeric - dg[rows])) / np.max(np.abs(dg[rows]))
        assert err < 2e-2, f"dg/dtau vs finite difference: {err:.3e}"


class TestOpticalDepth:

    def test_reionization_optical_depth(self, th):
        tau_reio = float(th.tau_reio)
        assert 0.05 < tau_reio < 0.1, f"tau_reio = {tau_reio:.4f}"
        assert float(th.z_reio) == 11.0

    def test_table_agrees_with_reionization_quadrature(self, th):
        kappa = optical_depth_of_z(th, 15.0)
        assert kappa == pytest.approx(float(th.tau_reio), rel=1e-3)

    def test_zero_today(self, th):
        assert optical_depth_of_z(th, 0.0) == pytest.approx(0.0, abs=1e-14)

    def test_finite_where_transmission_underflows(self, th):
        """Deep in the radiation era exp(-kappa) is 0.0 but kappa stays finite."""
        assert float(np.asarray(th.column("exp_m_kappa"))[-1]) == 0.0
        z = [2000.0, 4000.0, 6000.0, 8000.0, 9500.0]
        kappa = np.array([optical_depth_of_z(th, zz) for zz in z])
        assert np.all(np.isfinite(kappa))
        assert np.all(np.diff(kappa) > 0.0)
        assert kappa[3] > 700.0, f"kappa(8000) = {kappa[3]:.1f}"

    @pytest.mark.parametrize("i", [0, 150, 900, -1])
    def test_exact_at_knots(self, th, i):
        z = float(np.asarray(th.z_table)[i])
        expected = float(np.asarray(th.kappa_table)[i])
        assert optical_depth_of_z(th, z) == pytest.approx(expected, rel=1e-12, abs=1e-14)


class TestQueries:

    @pytest.mark.parametrize("i", [0, 5, 150, 151, 900, -1])
    def test_exact_at_knots(self, th, i):
        table = np.asarray(th.thermodynamics_table)
        z = float(np.asarray(th.z_table)[i])
        row, _ = thermodynamics_at_z(th, z)
        for name in th.indices.thermo:
            expected = table[i, th.indices.thermo[name]]
            assert row[name] == pytest.approx(expected, rel=1e-12, abs=1e-300), name

    def test_exp_m_kappa_between_neighbours(self, th):
        z_table = np.asarray(th.z_table)
        e = np.asarray(th.column("exp_m_kappa"))
        rng = np.random.default_rng(7)
        for z in rng.uniform(200.0, 3000.0, size=50):
            row, idx = thermodynamics_at_z(th, z)
            assert z_table[idx] <= z <= z_table[idx + 1]
            lo, hi = e[idx + 1], e[idx]
            assert lo - 1e-10 <= row["exp_m_kappa"] <= hi + 1e-10, f"z={z:.3f}"

    def test_xe_accessor(self, th):
        row, _ = thermodynamics_at_z(th, 1090.0)
        assert xe_of_z(th, 1090.0) == row["xe"]

    def test_closeby_matches_normal(self, th):
        last = None
        for z in 0.0137 * 1.1 ** np.arange(100):
            normal, idx_normal = thermodynamics_at_z(th, z)
            closeby, last = thermodynamics_at_z(th, z, intermode="closeby", last_index=last)
            assert last == idx_normal
            for name, value in normal.items():
                assert closeby[name] == pytest.approx(value, rel=1e-12, abs=1e-300), name

    @pytest.mark.parametrize("k", [3, 151, 700])
    def test_closeby_on_knot(self, th, k):
        z = float(np.asarray(th.z_table)[k + 1])
        _, idx_normal = thermodynamics_at_z(th, z)
        _, idx_closeby = thermodynamics_at_z(th, z, intermode="closeby", last_index=k)
        assert idx_closeby == idx_normal == k + 1

    @pytest.mark.parametrize("last_index", [-5, 10**9, 3])
    def test_closeby_recovers_from_bad_cache(self, th, last_index):
        normal, idx = thermodynamics_at_z(th, 1500.0)
        closeby, idx_c = thermodynamics_at_z(th, 1500.0, intermode="closeby", last_index=last_index)
        assert idx_c == idx
        assert closeby["g"] == normal["g"]

    @pytest.mark.parametrize("z", [-0.1, 1e4 + 1.0])
    def test_out_of_range(self, th, z):
        with pytest.raises(OutOfRangeQuery) as info:
            thermodynamics_at_z(th, z)
        assert info.value.z == z
        assert info.value.z_max == pytest.approx(th.z_max)

    def test_unknown_mode(self, th):
        with pytest.raises(ConfigurationError, match="interpolation mode"):
            thermodynamics_at_z(th, 10.0, intermode="nearest")


class TestRelease:

    def test_free(self, th):
        th_copy = copy.copy(th)
        thermodynamics_free(th_copy)
        assert th_copy.released
        with pytest.raises(ThermodynamicsError):
            thermodynamics_at_z(th_copy, 100.0)
        with pytest.raises(ThermodynamicsError):
            th_copy.column("xe")
        # the original is untouched
        assert thermodynamics_at_z(th, 100.0)[0]["xe"] > 0.0

    def test_context_manager(self, th):
        with copy.copy(th) as th_copy:
            xe = xe_of_z(th_copy, 500.0)
        assert xe > 0.0
        assert th_copy.released
        with pytest.raises(ThermodynamicsError):
            th_copy.z_min


class TestNoReionization:

    def test_no_junction(self, th_none):
        assert th_none.index_reio_junction is None
        assert np.isnan(float(th_none.z_reio))

    def test_residual_optical_depth(self, th_none):
        assert 0.0 < float(th_none.tau_reio) < 1e-2

    def test_neutral_today(self, th_none):
        assert xe_of_z(th_none, 0.0) < 1e-3

    def test_same_recombination_peak(self, th, th_none):
        assert float(th_none.z_visibility_max) == pytest.approx(float(th.z_visibility_max), abs=1.0)


@pytest.mark.parametrize("seed", [1, 2])
def test_random_configurations(bg, prec, scenario, seed):
    """Valid inputs always give a strictly increasing, bounded table."""
    rng = np.random.default_rng(seed)
    params = scenario.replace(
        Y_He=float(rng.uniform(0.2, 0.3)),
        T_cmb=float(rng.uniform(2.70, 2.80)),
        z_reio=float(rng.uniform(6.0, 14.0)),
    )
    result = thermodynamics_solve(params, prec, bg)
    z = np.asarray(result.z_table)
    xe = np.asarray(result.column("xe"))
    assert np.all(np.diff(z) > 0)
    assert np.all(xe >= 0.0)
    assert np.all(xe <= 1.0 + 2.0 * float(result.fHe) + 1e-9)
