"""Test parameter containers and input validation."""

import jax
import pytest

from jaxthermo.errors import ConfigurationError
from jaxthermo.params import CosmoParams, PrecisionParams, check_params


PREC = PrecisionParams()


def test_static_fields_kept_out_of_leaves():
    params = CosmoParams(reio_parametrization="none", reio_z_or_tau="z")
    leaves, treedef = jax.tree_util.tree_flatten(params)
    assert all(not isinstance(leaf, str) for leaf in leaves)
    params2 = jax.tree_util.tree_unflatten(treedef, leaves)
    assert params2 == params


def test_replace():
    params = CosmoParams().replace(z_reio=8.0, reio_z_or_tau="z")
    assert params.z_reio == 8.0
    assert params.reio_z_or_tau == "z"
    assert params.h == CosmoParams().h


def test_fast_preset_is_coarser():
    fast = PrecisionParams.fast()
    assert fast.recfast_Nz0 < PREC.recfast_Nz0
    assert fast.recfast_Heswitch == PREC.recfast_Heswitch


def test_defaults_accepted():
    check_params(CosmoParams(), PREC)
    check_params(CosmoParams(reio_parametrization="none"), PREC)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"reio_parametrization": "many_tanh"},
        {"reio_z_or_tau": "both"},
        {"T_cmb": 2.9},
        {"T_cmb": 2.6},
        {"Y_He": 0.6},
        {"Y_He": 0.0},
        {"omega_b": 0.0},
        {"reio_z_or_tau": "z", "z_reio": -1.0},
        {"reio_z_or_tau": "tau", "tau_reio": 0.0},
    ],
)
def test_invalid_inputs_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        check_params(CosmoParams(**kwargs), PREC)


def test_invalid_precision_rejected():
    with pytest.raises(ConfigurationError, match="reionization_exponent"):
        check_params(CosmoParams(), PrecisionParams(reionization_exponent=0.0))
    with pytest.raises(ConfigurationError, match="recfast_Nz0"):
        check_params(CosmoParams(), PrecisionParams(recfast_Nz0=5))


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        check_params(CosmoParams(Y_He=0.9), PREC)
