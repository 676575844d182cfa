"""Test the CAMB-like reionization stage.

Covers the profile and its derivatives, the optical depth quadrature,
both input modes (z_reio and tau_reio) and the failure paths.
"""

import dataclasses

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from jaxthermo.errors import ConfigurationError, NumericalDivergence
from jaxthermo.indices import thermodynamics_indices
from jaxthermo.reionization import (
    _camb_parameters,
    _kappa_z_derivatives,
    _sample,
    camb_profile,
    reionization_solve,
)

INDICES = thermodynamics_indices("camb")


@pytest.fixture(scope="module")
def profile_params(prec):
    return _camb_parameters(11.0, 2e-4, 0.08, prec)


@pytest.fixture(scope="module")
def reio(scenario, prec, bg, reco):
    return reionization_solve(scenario, prec, bg, reco, INDICES)


class TestProfile:

    def test_fully_ionized_today(self, profile_params):
        xe, dxe, _ = camb_profile(0.0, profile_params)
        assert float(xe) == pytest.approx(1.0 + 2.0 * 0.08, rel=1e-14)
        assert float(dxe) == 0.0

    def test_continuous_at_start(self, profile_params):
        z_start = profile_params["reio_start"]
        assert z_start == pytest.approx(15.0)
        xe, dxe, d2xe = camb_profile(z_start, profile_params)
        assert float(xe) == pytest.approx(2e-4, abs=1e-15)
        assert float(dxe) == 0.0
        assert float(d2xe) == 0.0
        xe_above, _, _ = camb_profile(z_start + 1.0, profile_params)
        assert float(xe_above) == 2e-4

    def test_half_ionized_at_z_reio(self, profile_params):
        xe, _, _ = camb_profile(11.0, profile_params)
        expected = 2e-4 + 0.5 * (1.08 - 2e-4)
        assert float(xe) == pytest.approx(expected, rel=1e-12)

    def test_monotone_in_z(self, profile_params):
        z = jnp.linspace(0.0, 16.0, 1601)
        xe, _, _ = camb_profile(z, profile_params)
        assert np.all(np.diff(np.asarray(xe)) <= 0.0)

    @pytest.mark.parametrize("z", [10.3, 11.0, 11.6, 3.2, 3.5, 3.9])
    def test_derivatives_match_autodiff(self, profile_params, z):
        _, dxe, d2xe = camb_profile(z, profile_params)
        dxe_ad = jax.grad(lambda zz: camb_profile(zz, profile_params)[0])(z)
        d2xe_ad = jax.grad(lambda zz: camb_profile(zz, profile_params)[1])(z)
        assert float(dxe) == pytest.approx(float(dxe_ad), rel=1e-10, abs=1e-14)
        assert float(d2xe) == pytest.approx(float(d2xe_ad), rel=1e-10, abs=1e-14)


class TestScatteringDerivatives:

    @pytest.mark.parametrize("z", [2.0, 10.6, 12.5])
    def test_match_autodiff(self, bg, reco, profile_params, z):
        def kappa_derivs(zz):
            xe, dxe, d2xe = camb_profile(zz, profile_params)
            return _kappa_z_derivatives(zz, xe, dxe, d2xe, bg, reco.n_e)

        _, df, d2f = kappa_derivs(z)
        df_ad = jax.grad(lambda zz: kappa_derivs(zz)[0])(z)
        d2f_ad = jax.grad(lambda zz: kappa_derivs(zz)[1])(z)
        assert float(df) == pytest.approx(float(df_ad), rel=1e-10)
        assert float(d2f) == pytest.approx(float(d2f_ad), rel=1e-10)

    def test_optical_depth_quadrature(self, bg, reco, prec):
        sample = _sample(11.0, reco, bg, prec, "camb")
        z_dense = jnp.linspace(0.0, sample.parameters["reio_start"], 150001)
        xe, dxe, d2xe = camb_profile(z_dense, sample.parameters)
        f, _, _ = _kappa_z_derivatives(z_dense, xe, dxe, d2xe, bg, reco.n_e)
        f = np.asarray(f)
        dense = float(np.sum(0.5 * (f[1:] + f[:-1]) * np.diff(np.asarray(z_dense))))
        assert float(sample.optical_depth) == pytest.approx(dense, rel=1e-4)


class TestRedshiftInput:

    def test_optical_depth_range(self, reio):
        tau = float(reio.optical_depth)
        assert 0.05 < tau < 0.1, f"tau_reio(z_reio=11) = {tau:.4f}"

    def test_rows_ascending_to_start(self, reio):
        z = np.asarray(reio.column("z"))
        assert z[0] == pytest.approx(0.0, abs=1e-12)
        assert z[-1] == pytest.approx(reio.z_start)
        assert np.all(np.diff(z) > 0)
        assert np.max(np.diff(z)) <= 0.1 + 1e-12

    def test_parameter_vector(self, reio, reco):
        assert float(reio.parameter("reio_redshift")) == 11.0
        assert reio.z_start == pytest.approx(15.0)
        xe_before = float(np.interp(15.0, np.asarray(reco.column("z")), np.asarray(reco.column("xe"))))
        assert float(reio.parameter("reio_xe_before")) == pytest.approx(xe_before, rel=1e-12)
        assert float(reio.parameter("reio_xe_after")) == pytest.approx(1.0 + float(reco.fHe))

    def test_joins_recombination(self, reio, reco):
        z_reco = np.asarray(reco.column("z"))
        for name in ("xe", "Tb", "cb2"):
            expected = np.interp(15.0, z_reco, np.asarray(reco.column(name)))
            assert float(reio.column(name)[-1]) == pytest.approx(expected, rel=1e-10), name

    def test_temperature_finite_and_positive(self, reio):
        Tb = np.asarray(reio.column("Tb"))
        assert np.all(np.isfinite(Tb))
        assert np.all(Tb > 0.0)

    def test_no_reionization(self, scenario, prec, bg, reco):
        params = scenario.replace(reio_parametrization="none")
        assert reionization_solve(params, prec, bg, reco, thermodynamics_indices("none")) is None


class TestOpticalDepthInput:

    def test_bisection_hits_target(self, scenario, prec, bg, reco):
        params = scenario.replace(reio_z_or_tau="tau", tau_reio=0.066)
        reio = reionization_solve(params, prec, bg, reco, INDICES)
        assert 8.0 < reio.z_reio < 10.0, f"z_reio = {reio.z_reio:.3f}"
        assert float(reio.optical_depth) == pytest.approx(0.066, rel=2e-4)

    def test_unreachable_target(self, scenario, prec, bg, reco):
        params = scenario.replace(reio_z_or_tau="tau", tau_reio=5.0)
        with pytest.raises(ConfigurationError, match="cannot be reached"):
            reionization_solve(params, prec, bg, reco, INDICES)

    def test_iteration_limit(self, scenario, prec, bg, reco):
        params = scenario.replace(reio_z_or_tau="tau", tau_reio=0.066)
        starved = dataclasses.replace(prec, reionization_max_iter=2)
        with pytest.raises(NumericalDivergence, match="bisection") as info:
            reionization_solve(params, starved, bg, reco, INDICES)
        assert info.value.iterations == 2


def test_start_above_maximum(scenario, prec, bg, reco):
    params = scenario.replace(z_reio=48.0)
    with pytest.raises(ConfigurationError, match="reionization_z_start_max"):
        reionization_solve(params, prec, bg, reco, INDICES)
