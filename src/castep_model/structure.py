from __future__ import annotations

import copy
import logging
import math
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Union

import numpy as np

from . import elements
from .errors import NotFoundError, ValidationError
from .geometry import is_degenerate

logger = logging.getLogger(__name__)

SettingValue = Union[str, int, float, tuple]

Coordinate = tuple[float, float, float]

# A3/B3/C3 hold the lattice in .msi documents
LATTICE_SETTING_NAMES = ("A3", "B3", "C3")

_SETTING_KEY_RE = re.compile(r"[^\s()\"#][^\s()\"]*\Z")


def _finite_xyz(xyz: Iterable[float], what: str = "coordinate") -> Coordinate:
    try:
        values = tuple(float(v) for v in xyz)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {what}: {xyz!r}") from exc
    if len(values) != 3:
        raise ValidationError(f"{what.capitalize()} must have three components, got {len(values)}")
    if not all(math.isfinite(v) for v in values):
        raise ValidationError(f"{what.capitalize()} must be finite, got {values}")
    return values  # type: ignore[return-value]


def check_text(text: str, what: str) -> str:
    """Reject line breaks, which cannot appear inside a quoted ``.msi`` string."""
    if "\n" in text or "\r" in text:
        raise ValidationError(f"{what} must not contain line breaks, got {text!r}")
    return text


def check_setting_value(key: str, value: Any) -> SettingValue:
    """Validate a settings entry so that it can be written to ``.msi`` and read back.

    Keys must be single ``.msi`` words and may not shadow the lattice vectors.
    Numbers must be finite and strings must fit on one line.
    """
    if not isinstance(key, str) or not _SETTING_KEY_RE.match(key):
        raise ValidationError(
            f"Setting keys must be non-empty words without spaces, quotes or parentheses, got {key!r}"
        )
    if key in LATTICE_SETTING_NAMES:
        raise ValidationError(f"Setting {key!r} is reserved for the lattice vectors")
    if isinstance(value, bool):
        raise ValidationError(f"Setting {key!r}: booleans are not supported, use 'true'/'false'")
    if isinstance(value, str):
        return check_text(value, f"Setting {key!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValidationError(f"Setting {key!r} must be finite, got {value!r}")
        return value
    if isinstance(value, (tuple, list)):
        items = tuple(value)
        if not items or not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in items
        ):
            raise ValidationError(f"Setting {key!r}: vector values must be non-empty and numeric")
        if not all(math.isfinite(v) for v in items):
            raise ValidationError(f"Setting {key!r} must be finite, got {items!r}")
        return items
    raise ValidationError(f"Setting {key!r}: unsupported value type {type(value).__name__}")


@dataclass(frozen=True)
class Atom:
    """A single atom of a :class:`Model`.

    Attributes:
        atom_id (int): Positive id, unique within its model.
        symbol (str): Element symbol, validated against the periodic table.
        xyz (tuple(float, float, float)): Cartesian coordinate in Angstrom.
        label (str | None): Optional free-text display label.
        atomic_number (int): Derived from ``symbol``. When given explicitly it
            must agree with the symbol.
        extras (tuple): Opaque constructs attached to the atom record that the
            parser kept under the ``"preserve"`` policy.

    """

    atom_id: int
    symbol: str
    xyz: Coordinate
    label: str | None = None
    atomic_number: int = 0
    extras: tuple = field(default=(), repr=False)

    def __post_init__(self) -> None:
        if isinstance(self.atom_id, bool) or not isinstance(self.atom_id, int):
            raise ValidationError(f"Atom id must be an integer, got {self.atom_id!r}")
        if self.atom_id <= 0:
            raise ValidationError(f"Atom id must be positive, got {self.atom_id}")
        number = elements.atomic_number(self.symbol)
        if self.atomic_number and self.atomic_number != number:
            raise ValidationError(
                f"Atomic number {self.atomic_number} does not match element {self.symbol} ({number})"
            )
        if self.label is not None:
            if not isinstance(self.label, str):
                raise ValidationError(f"Atom label must be a string, got {self.label!r}")
            check_text(self.label, "Atom label")
        object.__setattr__(self, "atomic_number", number)
        object.__setattr__(self, "xyz", _finite_xyz(self.xyz))
        object.__setattr__(self, "extras", tuple(self.extras))

    @property
    def display_label(self) -> str:
        return self.label if self.label is not None else self.symbol

    def moved_to(self, xyz: Iterable[float]) -> Atom:
        """Return a copy of this atom at ``xyz``."""
        return replace(self, xyz=tuple(xyz))


@dataclass(frozen=True)
class LatticeVectors:
    """Three lattice vectors ``a``, ``b``, ``c`` stored as the rows of a matrix.

    Vectors are kept exactly as given, not normalized. A (near) zero
    determinant is rejected.
    """

    vectors: tuple[Coordinate, Coordinate, Coordinate]

    def __post_init__(self) -> None:
        rows = tuple(self.vectors)
        if len(rows) != 3:
            raise ValidationError(f"Lattice needs exactly three vectors, got {len(rows)}")
        checked = tuple(_finite_xyz(row, "lattice vector") for row in rows)
        if is_degenerate(checked):
            raise ValidationError("Lattice vectors are degenerate (zero determinant)")
        object.__setattr__(self, "vectors", checked)

    @classmethod
    def from_array(cls, matrix) -> LatticeVectors:
        arr = np.asarray(matrix, dtype=float)
        if arr.shape != (3, 3):
            raise ValidationError(f"Lattice matrix must be 3x3, got shape {arr.shape}")
        return cls(tuple(tuple(float(v) for v in row) for row in arr))  # type: ignore[arg-type]

    @property
    def a(self) -> Coordinate:
        return self.vectors[0]

    @property
    def b(self) -> Coordinate:
        return self.vectors[1]

    @property
    def c(self) -> Coordinate:
        return self.vectors[2]

    def as_array(self) -> np.ndarray:
        """Return the vectors as a 3x3 array, one vector per row."""
        return np.array(self.vectors, dtype=float)

    def lengths(self) -> tuple[float, float, float]:
        a, b, c = np.linalg.norm(self.as_array(), axis=1)
        return float(a), float(b), float(c)

    def angles(self) -> tuple[float, float, float]:
        """Return ``(alpha, beta, gamma)`` in degrees."""
        a, b, c = self.as_array()

        def _angle(u, v):
            cos = np.dot(u, v) / (np.linalg.norm(u) * np.linalg.norm(v))
            return float(np.degrees(np.arccos(np.clip(cos, -1.0, 1.0))))

        return _angle(b, c), _angle(a, c), _angle(a, b)

    def volume(self) -> float:
        return abs(float(np.linalg.det(self.as_array())))

    def fractional_matrix(self) -> np.ndarray:
        """Matrix ``F`` with ``frac = cart @ F`` for row-stacked coordinates."""
        return np.linalg.inv(self.as_array())


class Model:
    """Ordered collection of atoms plus optional lattice and settings.

    Insertion order is preserved and is the order every exporter uses, so
    the id-to-index correspondence stays the same across output formats.
    Every mutating method validates first and only then commits, leaving the
    model untouched when a :class:`ValidationError` is raised.

    Example:
    -------
    >>> model = Model(lattice=LatticeVectors(((10, 0, 0), (0, 10, 0), (0, 0, 10))))
    >>> model.add_atom(Atom(1, "C", (0.0, 0.0, 0.0)))
    >>> model.get_atom(1).symbol
    'C'

    """

    def __init__(
        self,
        atoms: Iterable[Atom] | None = None,
        lattice: LatticeVectors | None = None,
        settings: Mapping[str, Any] | None = None,
        extras: Iterable[Any] | None = None,
    ) -> None:
        self._atoms: list[Atom] = []
        self._index: dict[int, int] = {}
        self._lattice: LatticeVectors | None = None
        self._settings: dict[str, SettingValue] = {}
        # Unrecognized model-level constructs kept by the "preserve" parser policy
        self.extras: list[Any] = list(extras or [])
        if atoms is not None:
            self.extend(atoms)
        if lattice is not None:
            self.set_lattice(lattice)
        if settings:
            self.update_settings(settings)

    # -- atoms ---------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._atoms)

    def __iter__(self) -> Iterator[Atom]:
        return iter(self._atoms)

    def __contains__(self, atom_id: object) -> bool:
        return atom_id in self._index

    @property
    def atoms(self) -> tuple[Atom, ...]:
        return tuple(self._atoms)

    @property
    def n_atoms(self) -> int:
        return len(self._atoms)

    @property
    def atom_ids(self) -> list[int]:
        return [atom.atom_id for atom in self._atoms]

    def index_of(self, atom_id: int) -> int:
        """Return the position of ``atom_id`` in the model order.

        Raises
        ------
        NotFoundError
            If no atom carries that id.
        """
        try:
            return self._index[atom_id]
        except KeyError:
            raise NotFoundError(f"No atom with id {atom_id}") from None

    def get_atom(self, atom_id: int) -> Atom:
        return self._atoms[self.index_of(atom_id)]

    def add_atom(self, atom: Atom) -> None:
        """Append ``atom``; its id must not already be used."""
        if not isinstance(atom, Atom):
            raise ValidationError(f"Expected an Atom, got {type(atom).__name__}")
        if atom.atom_id in self._index:
            raise ValidationError(f"Duplicate atom id {atom.atom_id}")
        self._index[atom.atom_id] = len(self._atoms)
        self._atoms.append(atom)

    def extend(self, atoms: Iterable[Atom]) -> None:
        """Append several atoms at once; nothing is added if any of them is invalid."""
        new_atoms = list(atoms)
        seen = set(self._index)
        for atom in new_atoms:
            if not isinstance(atom, Atom):
                raise ValidationError(f"Expected an Atom, got {type(atom).__name__}")
            if atom.atom_id in seen:
                raise ValidationError(f"Duplicate atom id {atom.atom_id}")
            seen.add(atom.atom_id)
        for atom in new_atoms:
            self._index[atom.atom_id] = len(self._atoms)
            self._atoms.append(atom)

    def set_coordinate(self, atom_id: int, xyz: Iterable[float]) -> None:
        idx = self.index_of(atom_id)
        self._atoms[idx] = self._atoms[idx].moved_to(_finite_xyz(xyz))

    def set_atom_id(self, atom_id: int, new_id: int) -> None:
        """Change the id of an atom, keeping its position in the model order."""
        idx = self.index_of(atom_id)
        if new_id == atom_id:
            return
        if new_id in self._index:
            raise ValidationError(f"Duplicate atom id {new_id}")
        updated = replace(self._atoms[idx], atom_id=new_id)
        del self._index[atom_id]
        self._index[new_id] = idx
        self._atoms[idx] = updated

    def replace_coordinates(self, coords) -> None:
        """Replace all cartesian coordinates at once (N x 3, model order)."""
        arr = np.asarray(coords, dtype=float)
        if arr.shape != (len(self._atoms), 3):
            raise ValidationError(
                f"Expected coordinates of shape ({len(self._atoms)}, 3), got {arr.shape}"
            )
        if not np.all(np.isfinite(arr)):
            raise ValidationError("Coordinates must be finite")
        self._atoms = [atom.moved_to(row) for atom, row in zip(self._atoms, arr.tolist())]

    def remove_atom(self, atom_id: int) -> Atom:
        """Remove and return the atom with ``atom_id``; later atoms shift down."""
        idx = self.index_of(atom_id)
        removed = self._atoms.pop(idx)
        self._rebuild_index()
        return removed

    def _rebuild_index(self) -> None:
        index: dict[int, int] = {}
        for i, atom in enumerate(self._atoms):
            if atom.atom_id in index:
                raise ValidationError(f"Duplicate atom id {atom.atom_id}")
            index[atom.atom_id] = i
        self._index = index

    def cartesian_coordinates(self) -> np.ndarray:
        """Return an ``N x 3`` array of coordinates in model order."""
        if not self._atoms:
            return np.zeros((0, 3))
        return np.array([atom.xyz for atom in self._atoms], dtype=float)

    def fractional_coordinates(self) -> np.ndarray:
        """Coordinates expressed in the basis of the lattice vectors."""
        if self._lattice is None:
            raise ValidationError("Fractional coordinates require lattice vectors")
        return self.cartesian_coordinates() @ self._lattice.fractional_matrix()

    def element_set(self) -> list[str]:
        """Unique element symbols in order of first appearance."""
        return list(dict.fromkeys(atom.symbol for atom in self._atoms))

    def spin_total(self) -> int:
        return sum(elements.ground_state_spin(atom.symbol) for atom in self._atoms)

    # -- lattice -------------------------------------------------------------

    @property
    def lattice(self) -> LatticeVectors | None:
        return self._lattice

    def set_lattice(self, lattice: LatticeVectors | None) -> None:
        if lattice is not None and not isinstance(lattice, LatticeVectors):
            lattice = LatticeVectors.from_array(lattice)
        self._lattice = lattice

    # -- settings ------------------------------------------------------------

    @property
    def settings(self) -> Mapping[str, SettingValue]:
        """Read-only view of the settings mapping."""
        return MappingProxyType(self._settings)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = check_setting_value(key, value)

    def update_settings(self, values: Mapping[str, Any]) -> None:
        checked = {key: check_setting_value(key, value) for key, value in values.items()}
        self._settings.update(checked)

    def remove_setting(self, key: str) -> None:
        self._settings.pop(key, None)

    # -- whole-model helpers ---------------------------------------------------

    def copy(self) -> Model:
        """Return an independent deep copy of the model."""
        return copy.deepcopy(self)

    def merge(self, other: Model) -> Model:
        """Return a new model with the atoms of ``self`` followed by those of ``other``.

        Lattice and settings are taken from ``self``. Atom ids must not clash.
        """
        merged = self.copy()
        merged.extend(other.atoms)
        merged.extras.extend(copy.deepcopy(other.extras))
        return merged

    def __add__(self, other: Model) -> Model:
        if not isinstance(other, Model):
            return NotImplemented
        return self.merge(other)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Model):
            return NotImplemented
        return (
            self._atoms == other._atoms
            and self._lattice == other._lattice
            and self._settings == other._settings
            and self.extras == other.extras
        )

    def is_close(self, other: Model, tol: float = 1e-9) -> bool:
        """Compare two models allowing ``tol`` absolute error on every real number."""
        if len(self) != len(other):
            return False
        for mine, theirs in zip(self._atoms, other._atoms):
            if (mine.atom_id, mine.symbol, mine.label, mine.extras) != (
                theirs.atom_id,
                theirs.symbol,
                theirs.label,
                theirs.extras,
            ):
                return False
            if not np.allclose(mine.xyz, theirs.xyz, rtol=0.0, atol=tol):
                return False
        if (self._lattice is None) != (other._lattice is None):
            return False
        if self._lattice is not None and not np.allclose(
            self._lattice.as_array(), other._lattice.as_array(), rtol=0.0, atol=tol
        ):
            return False
        if self._settings.keys() != other._settings.keys():
            return False
        for key, value in self._settings.items():
            theirs = other._settings[key]
            if isinstance(value, str) or isinstance(theirs, str):
                if value != theirs:
                    return False
            elif np.shape(value) != np.shape(theirs) or not np.allclose(
                value, theirs, rtol=0.0, atol=tol
            ):
                return False
        return self.extras == other.extras

    def __repr__(self) -> str:
        return (
            f"Model(n_atoms={len(self._atoms)}, lattice={'yes' if self._lattice else 'no'}, "
            f"settings={len(self._settings)})"
        )
