"""Test the RECFAST recombination table.

The reference scenario is Y_He = 0.25, T_cmb = 2.7255 K on the coarse
(dz = 5) grid of PrecisionParams.fast().
"""

import dataclasses

import numpy as np
import pytest

from jaxthermo.errors import ConfigurationError, NumericalDivergence
from jaxthermo.indices import thermodynamics_indices
from jaxthermo.recombination import (
    baryon_sound_speed_squared,
    helium_fraction,
    hydrogen_saha,
    recombination_solve,
    thomson_rate,
)


def _row(reco, z):
    z_col = np.asarray(reco.column("z"))
    i = int(np.argmin(np.abs(z_col - z)))
    assert abs(z_col[i] - z) < 1e-8, f"z={z} is not a grid point"
    return i


class TestGrid:

    def test_ascending_from_zero(self, reco, prec):
        z = np.asarray(reco.column("z"))
        assert z.shape == (prec.recfast_Nz0 + 1,)
        assert z[0] == 0.0
        assert z[-1] == pytest.approx(prec.recfast_z_initial)
        assert np.all(np.diff(z) > 0)

    def test_finite(self, reco):
        assert np.all(np.isfinite(np.asarray(reco.table)))

    def test_switch_order(self, reco, prec):
        assert prec.recfast_z_initial > reco.z_ode_start > reco.z_H_switch > 500.0


class TestIonizationHistory:

    def test_fully_ionized_start(self, reco):
        xe = float(reco.column("xe")[_row(reco, 1e4)])
        assert xe == pytest.approx(1.0 + 2.0 * float(reco.fHe), abs=1e-6)

    def test_heII_plateau(self, reco):
        xe = float(reco.column("xe")[_row(reco, 4500.0)])
        assert xe == pytest.approx(1.0 + float(reco.fHe), abs=1e-6)

    def test_bounds(self, reco):
        xe = np.asarray(reco.column("xe"))
        assert np.all(xe >= 0.0)
        assert np.all(xe <= 1.0 + 2.0 * float(reco.fHe) + 1e-9)

    def test_last_scattering(self, reco):
        xe = float(reco.column("xe")[_row(reco, 1090.0)])
        assert 0.05 < xe < 0.3, f"x_e(1090) = {xe:.4f}"

    def test_freeze_out(self, reco):
        xe = float(reco.column("xe")[_row(reco, 200.0)])
        assert 1e-4 < xe < 1e-3, f"x_e(200) = {xe:.3e}"

    def test_continuous_at_ode_start(self, reco):
        i = _row(reco, reco.z_ode_start)
        xe = np.asarray(reco.column("xe"))
        jumps = np.abs(np.diff(xe[i - 3:i + 4]))
        assert np.max(jumps) < 5e-3, f"x_e jumps near z={reco.z_ode_start}: {jumps}"

    def test_saha_regime_matches_saha(self, reco, scenario):
        """Above the helium ODE start, hydrogen is in Saha equilibrium."""
        z = 3500.0
        x_H, _ = hydrogen_saha(z, scenario.T_cmb, reco.n_e)
        xe = float(reco.column("xe")[_row(reco, z)])
        # HeII -> HeI Saha has barely started at z=3500
        assert xe - float(x_H) == pytest.approx(float(reco.fHe), rel=2e-2)


class TestTemperature:

    def test_tightly_coupled(self, reco, scenario):
        Tb = float(reco.column("Tb")[_row(reco, 2000.0)])
        assert Tb == pytest.approx(scenario.T_cmb * 2001.0, rel=1e-3)

    def test_decoupled_today(self, reco, scenario):
        Tb = float(reco.column("Tb")[0])
        assert 0.0 < Tb < 0.1 * scenario.T_cmb, f"T_b(0) = {Tb:.4g} K"

    def test_sound_speed_positive(self, reco):
        assert np.all(np.asarray(reco.column("cb2")) > 0.0)

    def test_sound_speed_tightly_coupled(self, reco, scenario):
        """With T_b = T_cmb (1+z) the sound speed is (4/3) k_B T_b / mu."""
        i = _row(reco, 8000.0)
        z = 8000.0
        Tb = float(reco.column("Tb")[i])
        xe = float(reco.column("xe")[i])
        expected = baryon_sound_speed_squared(z, Tb, scenario.T_cmb, xe, scenario.Y_He)
        assert float(reco.column("cb2")[i]) == pytest.approx(float(expected), rel=1e-10)


class TestScatteringRate:

    def test_thomson_rate_column(self, reco):
        z = reco.column("z")
        expected = thomson_rate(z, reco.column("xe"), reco.n_e)
        np.testing.assert_allclose(
            np.asarray(reco.column("dkappadeta")), np.asarray(expected), rtol=1e-12
        )

    def test_helium_fraction(self, reco):
        assert float(reco.fHe) == pytest.approx(float(helium_fraction(0.25)), rel=1e-14)
        assert float(helium_fraction(0.25)) == pytest.approx(0.25 / (3.9715 * 0.75), rel=1e-14)


class TestFailures:

    def test_helium_out_of_bounds(self, bg, scenario, prec):
        indices = thermodynamics_indices("camb").recombination
        with pytest.raises(ConfigurationError, match="Y_He"):
            recombination_solve(scenario.replace(Y_He=0.6), prec, bg, indices)

    def test_temperature_out_of_bounds(self, bg, scenario, prec):
        indices = thermodynamics_indices("camb").recombination
        with pytest.raises(ConfigurationError, match="T_cmb"):
            recombination_solve(scenario.replace(T_cmb=3.0), prec, bg, indices)

    def test_step_limit_exhausted(self, bg, scenario, prec):
        indices = thermodynamics_indices("camb").recombination
        starved = dataclasses.replace(prec, recfast_max_steps=5)
        with pytest.raises(NumericalDivergence, match="recombination") as info:
            recombination_solve(scenario, starved, bg, indices)
        assert info.value.z is not None
        assert info.value.iterations is not None
