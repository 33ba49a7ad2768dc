"""Periodic-table lookups used by the model and the CASTEP exporters.

Symbols, atomic numbers, masses and ground-state magnetic moments come from
:mod:`ase.data`. The LCAO basis size used in ``SPECIES_LCAO_STATES`` is
derived from the block of the periodic table the element lives in.
"""

from __future__ import annotations

from ase.data import atomic_masses, atomic_numbers, chemical_symbols, ground_state_magnetic_moments

from .errors import ValidationError

# d-block ranges (Sc-Zn, Y-Cd, Lu-Hg, Lr-Cn) and f-block ranges (La-Yb, Ac-No)
_D_BLOCK = set(range(21, 31)) | set(range(39, 49)) | set(range(71, 81)) | set(range(103, 113))
_F_BLOCK = set(range(57, 71)) | set(range(89, 103))


def is_known_symbol(symbol: str) -> bool:
    """Return ``True`` if ``symbol`` is a real element symbol (dummy ``X`` excluded)."""
    return atomic_numbers.get(symbol, 0) > 0


def atomic_number(symbol: str) -> int:
    """Return the atomic number of ``symbol``.

    Raises
    ------
    ValidationError
        If the symbol is not a known element.
    """
    if not is_known_symbol(symbol):
        raise ValidationError(f"Unknown element symbol: {symbol!r}")
    return atomic_numbers[symbol]


def symbol_for(number: int) -> str:
    """Return the element symbol for an atomic number."""
    if not 0 < number < len(chemical_symbols):
        raise ValidationError(f"Invalid atomic number: {number}")
    return chemical_symbols[number]


def atomic_mass(symbol: str) -> float:
    return float(atomic_masses[atomic_number(symbol)])


def ground_state_spin(symbol: str) -> int:
    """Number of unpaired electrons of the isolated atom in its ground state."""
    return int(round(float(ground_state_magnetic_moments[atomic_number(symbol)])))


def lcao_states(symbol: str) -> int:
    """Size of the LCAO basis (angular momentum channels) for population analysis."""
    number = atomic_number(symbol)
    if number <= 2:
        return 1
    if number in _F_BLOCK:
        return 4
    if number in _D_BLOCK:
        return 3
    return 2


def potential_file(symbol: str, suffix: str = "_00.usp") -> str:
    """Name of the pseudopotential file referenced in ``SPECIES_POT``."""
    atomic_number(symbol)
    return f"{symbol}{suffix}"
