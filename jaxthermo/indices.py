"""Column layout of the recombination, reionization and thermodynamics tables.

Each table row is a fixed-width vector. The registry assigns every quantity
a column offset once, up front, and hands out immutable maps; the rest of the
pipeline addresses columns by name through them.

cf. CLASS thermodynamics.c: thermodynamics_indices()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from jaxthermo.errors import ConfigurationError


RECOMBINATION_QUANTITIES = ("z", "xe", "Tb", "cb2", "dkappadeta")

REIONIZATION_QUANTITIES = (
    "z", "xe", "Tb", "cb2", "dkappadeta",
    "dkappadz", "d2kappadz2", "d3kappadz3",
)

# dkappa = d kappa / d tau, ddkappa and dddkappa its conformal-time derivatives,
# dacb2 = d [c_b^2 / (1+z)] / d tau
THERMO_QUANTITIES = (
    "xe", "dkappa", "ddkappa", "dddkappa", "exp_m_kappa",
    "g", "dg", "ddg", "Tb", "cb2", "dacb2", "rate",
)

REIO_PARAMETERS = {
    "none": (),
    "camb": (
        "reio_redshift", "reio_start", "reio_xe_before", "reio_xe_after",
        "reio_exponent", "reio_width", "helium_fullreio_fraction",
        "helium_fullreio_redshift", "helium_fullreio_width",
    ),
}


@dataclass(frozen=True)
class IndexMap:
    """Immutable name -> column offset mapping."""

    names: Tuple[str, ...]

    def __getitem__(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def __iter__(self):
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    @property
    def size(self) -> int:
        return len(self.names)

    def as_dict(self) -> dict:
        return {name: i for i, name in enumerate(self.names)}


@dataclass(frozen=True)
class ThermoIndices:
    """All column layouts of one thermodynamics run."""

    reio_parametrization: str
    recombination: IndexMap
    reionization: IndexMap
    thermo: IndexMap
    reio_parameters: IndexMap


def build_index_map(names: Iterable[str], known: Iterable[str]) -> IndexMap:
    """Assign consecutive offsets to the requested quantities.

    Raises:
        ConfigurationError: if a name is repeated or not among `known`
    """
    names = tuple(names)
    known = set(known)
    seen = set()
    for name in names:
        if name not in known:
            raise ConfigurationError(f"Unknown table quantity: {name!r}")
        if name in seen:
            raise ConfigurationError(f"Quantity {name!r} requested twice")
        seen.add(name)
    return IndexMap(names)


def thermodynamics_indices(reio_parametrization: str) -> ThermoIndices:
    """Column layouts for the given reionization parametrization.

    Raises:
        ConfigurationError: for an unknown parametrization
    """
    if reio_parametrization not in REIO_PARAMETERS:
        raise ConfigurationError(
            f"Unknown reionization parametrization: {reio_parametrization!r}"
        )
    reio_names = REIO_PARAMETERS[reio_parametrization]
    return ThermoIndices(
        reio_parametrization=reio_parametrization,
        recombination=build_index_map(RECOMBINATION_QUANTITIES, RECOMBINATION_QUANTITIES),
        reionization=build_index_map(REIONIZATION_QUANTITIES, REIONIZATION_QUANTITIES),
        thermo=build_index_map(THERMO_QUANTITIES, THERMO_QUANTITIES),
        reio_parameters=build_index_map(reio_names, reio_names),
    )
