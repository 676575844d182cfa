"""Test fixtures for the jaxthermo test suite.

Provides:
- The reference scenario (Y_He = 0.25, T_cmb = 2.7255 K, CAMB-like
  reionization at z_reio = 11) solved once per session on a coarse grid
- Error helpers with concise messages
"""

# Enable 64-bit JAX (required for recombination numerics)
import jax
jax.config.update("jax_enable_x64", True)

import numpy as np
import pytest

from jaxthermo.background import background_solve
from jaxthermo.indices import thermodynamics_indices
from jaxthermo.params import CosmoParams, PrecisionParams
from jaxthermo.recombination import recombination_solve
from jaxthermo.thermodynamics import thermodynamics_solve

PREC = PrecisionParams.fast()

SCENARIO = CosmoParams(
    Y_He=0.25,
    T_cmb=2.7255,
    reio_parametrization="camb",
    reio_z_or_tau="z",
    z_reio=11.0,
)


@pytest.fixture(scope="session")
def prec():
    return PREC


@pytest.fixture(scope="session")
def scenario():
    return SCENARIO


@pytest.fixture(scope="session")
def bg():
    return background_solve(SCENARIO, PREC)


@pytest.fixture(scope="session")
def reco(bg):
    indices = thermodynamics_indices("camb")
    return recombination_solve(SCENARIO, PREC, bg, indices.recombination)


@pytest.fixture(scope="session")
def th(bg):
    return thermodynamics_solve(SCENARIO, PREC, bg)


def relative_error(computed, reference, eps=1e-30):
    """Compute relative error, avoiding division by zero."""
    return np.abs(computed - reference) / (np.abs(reference) + eps)


def max_relative_error(computed, reference, eps=1e-30):
    """Return (max_rel_err, index_of_max)."""
    rel = relative_error(np.asarray(computed), np.asarray(reference), eps)
    idx = np.argmax(rel)
    return float(rel[idx]), int(idx)


def assert_close(computed, reference, rtol, name="quantity", coordinate=None):
    """Assert computed matches reference within rtol, with clear error message."""
    computed = np.atleast_1d(np.asarray(computed))
    reference = np.atleast_1d(np.asarray(reference))
    max_err, idx = max_relative_error(computed, reference)
    if max_err > rtol:
        coord_str = f" at index {idx}"
        if coordinate is not None:
            coord_str = f" at {coordinate[idx]:.6g}"
        msg = (
            f"{name}: max rel error {max_err:.4%}{coord_str}"
            f" (expected {reference[idx]:.6e}, got {computed[idx]:.6e})"
            f" -- tolerance {rtol:.4%}"
        )
        raise AssertionError(msg)
