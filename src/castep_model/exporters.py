"""Render a :class:`Model` into the text formats used by CASTEP and Materials Studio.

Every target format is an independent exporter object with the same small
interface (:class:`ModelExporter`): a ``filename(seed_name)`` method and a
``render(model)`` method returning the file contents. :func:`export_model`
runs a set of exporters over one snapshot of the model so that all outputs
share the same atom order, ids and coordinates.

Supported outputs:

- ``.cell``      CASTEP cell (lattice, positions, k-points, species tables)
- ``.param``     CASTEP task parameters
- ``.kptaux``    Materials Studio k-point auxiliary file
- ``.trjaux``    Materials Studio trajectory auxiliary file (atom ids)
- ``.msi``       Materials Studio model, readable again by :func:`parse_msi`
- ``msi_to_xsd.pl``  Materials Studio Perl script converting ``.msi`` to ``.xsd``
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import numpy as np

from . import elements
from .castep_param import CastepParam, castep_flag, castep_value
from .config import CASTEP_TASKS, Config, default_config
from .errors import ExportError, ValidationError
from .msi_parser import Field, format_number, quote, render_node, setting_field
from .structure import Model, check_setting_value

logger = logging.getLogger(__name__)

MSI_HEADER = "# MSI CERIUS2 DataModel File Version 4 0"

# Attributes Materials Studio expects on a periodic model, written first and
# in this order when present.
MSI_LEADING_SETTINGS = ("CRY/DISPLAY", "PeriodicType", "SpaceGroup")
MSI_TRAILING_SETTINGS = ("CRY/TOLERANCE",)
MSI_DEFAULTS = {
    "CRY/DISPLAY": (192, 256),
    "PeriodicType": 100,
    "SpaceGroup": "1 1",
    "CRY/TOLERANCE": 0.05,
}


@runtime_checkable
class ModelExporter(Protocol):
    """Capability shared by all output formats: render a model as text."""

    def filename(self, seed_name: str) -> str: ...

    def render(self, model: Model) -> str: ...


def check_model_invariants(model: Model) -> None:
    """Re-check the model invariants every exporter relies on.

    The model enforces these on every mutation, so a failure here means a
    defect, never bad user input.
    """
    seen: set[int] = set()
    for position, atom in enumerate(model):
        atom_id = getattr(atom, "atom_id", None)
        xyz = getattr(atom, "xyz", None)
        if not isinstance(atom_id, int) or atom_id <= 0:
            raise ExportError(f"Internal invariant violated: atom #{position} has no valid id")
        if xyz is None or len(xyz) != 3 or not all(math.isfinite(v) for v in xyz):
            raise ExportError(f"Internal invariant violated: atom {atom_id} has no valid coordinate")
        if atom_id in seen:
            raise ExportError(f"Internal invariant violated: atom id {atom_id} appears twice")
        seen.add(atom_id)


def _numbers(value, name: str) -> list[float]:
    if isinstance(value, str):
        value = value.replace(",", " ").split()
    try:
        flat = np.asarray(value, dtype=float).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise ExportError(f"Setting {name!r} must be numeric, got {value!r}") from exc
    return flat.tolist()


def _vector_setting(model: Model, key: str, size: int, config: Config | None) -> list[float]:
    values = _numbers(castep_value(key, model, config), key)
    if len(values) != size:
        raise ExportError(f"Setting {key!r} needs {size} numbers, got {len(values)}")
    return values


def _mp_grid(model: Model, config: Config | None) -> list[int]:
    values = _vector_setting(model, "kpoints_mp_grid", 3, config)
    if not all(float(v).is_integer() and v > 0 for v in values):
        raise ExportError(f"kpoints_mp_grid must be three positive integers, got {values!r}")
    return [int(v) for v in values]


def _kpoints(model: Model, config: Config | None) -> list[list[float]]:
    values = _numbers(castep_value("kpoints_list", model, config), "kpoints_list")
    if not values or len(values) % 4:
        raise ExportError("kpoints_list must hold groups of four numbers (x, y, z, weight)")
    return [values[i : i + 4] for i in range(0, len(values), 4)]


def write_block(name: str, content: str) -> str:
    return f"%BLOCK {name}\n{content}%ENDBLOCK {name}\n\n"


class CellExporter:
    """CASTEP ``.cell`` seed file.

    Section order: ``LATTICE_CART``, the positions block, k-point blocks,
    cell/ionic constraints, external fields, then the species tables. Atom
    lines follow the model order and end with a ``! <id>`` comment that ties
    them back to the ``.trjaux`` and ``.msi`` files.
    """

    def __init__(self, task: str = "GeometryOptimization", config: Config | None = None) -> None:
        if task not in CASTEP_TASKS:
            raise ExportError(f"Unsupported CASTEP task {task!r}")
        self.task = task
        self.config = config or default_config

    def filename(self, seed_name: str) -> str:
        suffix = "_DOS.cell" if self.task == "BandStructure" else ".cell"
        return f"{seed_name}{suffix}"

    def lattice_block(self, model: Model) -> str:
        if model.lattice is None:
            raise ExportError("The .cell format requires lattice vectors")
        # one vector per line, i.e. the transpose of the column-vector matrix
        rows = "".join(f"{x:24.18f}{y:24.18f}{z:24.18f}\n" for x, y, z in model.lattice.vectors)
        return write_block("LATTICE_CART", rows)

    def positions_block(self, model: Model) -> str:
        mode = self.config.export.get("positions", "cartesian")
        precision = int(self.config.export.get("cell_precision", 16))
        width = precision + 4
        if mode == "fractional":
            block, coords = "POSITIONS_FRAC", model.fractional_coordinates()
        else:
            block, coords = "POSITIONS_ABS", model.cartesian_coordinates()
        lines = []
        for atom, (x, y, z) in zip(model, coords.tolist()):
            spin = elements.ground_state_spin(atom.symbol)
            spin_text = f" SPIN={spin:14.10f}" if spin > 0 else ""
            lines.append(
                f"{atom.symbol:>3}{x:{width}.{precision}f}{y:{width}.{precision}f}"
                f"{z:{width}.{precision}f}{spin_text}  ! {atom.atom_id}\n"
            )
        return write_block(block, "".join(lines))

    def kpoints_block(self, model: Model, name: str = "KPOINTS_LIST") -> str:
        rows = "".join(
            f"{x:20.16f}{y:20.16f}{z:20.16f}{w:20.16f}\n" for x, y, z, w in _kpoints(model, self.config)
        )
        return write_block(name, rows)

    def misc_block(self, model: Model) -> str:
        fix_all = castep_value("fix_all_cell", model, self.config)
        fix_com = castep_value("fix_com", model, self.config)
        text = (
            f"FIX_ALL_CELL : {castep_flag(fix_all)}\n\nFIX_COM : {castep_flag(fix_com)}\n"
            + write_block("IONIC_CONSTRAINTS", "")
        )
        ex, ey, ez = _vector_setting(model, "external_efield", 3, self.config)
        text += write_block("EXTERNAL_EFIELD", f"{ex:16.10f}{ey:16.10f}{ez:16.10f}\n")
        rxx, rxy, rxz, ryy, ryz, rzz = _vector_setting(model, "external_pressure", 6, self.config)
        pressure = (
            f"{rxx:16.10f}{rxy:16.10f}{rxz:16.10f}\n"
            f"{'':16}{ryy:16.10f}{ryz:16.10f}\n"
            f"{'':32}{rzz:16.10f}\n"
        )
        return text + write_block("EXTERNAL_PRESSURE", pressure)

    def species_blocks(self, model: Model) -> str:
        symbols = model.element_set()
        suffix = self.config.export.get("potential_suffix", "_00.usp")
        mass = "".join(f"{s:>8}{elements.atomic_mass(s):17.10f}\n" for s in symbols)
        pots = "".join(f"{s:>8}  {elements.potential_file(s, suffix)}\n" for s in symbols)
        lcao = "".join(f"{s:>8}{elements.lcao_states(s):9d}\n" for s in symbols)
        return (
            write_block("SPECIES_MASS", mass)
            + write_block("SPECIES_POT", pots)
            + write_block("SPECIES_LCAO_STATES", lcao)
        )

    def render(self, model: Model) -> str:
        parts = [self.lattice_block(model), self.positions_block(model)]
        if self.task == "BandStructure":
            parts.append(self.kpoints_block(model, "BS_KPOINTS_LIST"))
        parts.append(self.kpoints_block(model))
        parts.append(self.misc_block(model))
        parts.append(self.species_blocks(model))
        return "".join(parts)


class ParamExporter:
    """CASTEP ``.param`` file for the chosen task."""

    def __init__(self, task: str = "GeometryOptimization", config: Config | None = None) -> None:
        if task not in CASTEP_TASKS:
            raise ExportError(f"Unsupported CASTEP task {task!r}")
        self.task = task
        self.config = config

    def filename(self, seed_name: str) -> str:
        suffix = "_DOS.param" if self.task == "BandStructure" else ".param"
        return f"{seed_name}{suffix}"

    def render(self, model: Model) -> str:
        return CastepParam.for_model(model, task=self.task, config=self.config).render()


class KptAuxExporter:
    """Materials Studio ``.kptaux``: Monkhorst-Pack grid, offset and k-point images."""

    def __init__(self, band_structure: bool = False, config: Config | None = None) -> None:
        self.band_structure = band_structure
        self.config = config

    def filename(self, seed_name: str) -> str:
        return f"{seed_name}{'_DOS' if self.band_structure else ''}.kptaux"

    def render(self, model: Model) -> str:
        grid = _mp_grid(model, self.config)
        offset = _vector_setting(model, "kpoints_mp_offset", 3, self.config)
        images = "".join(f"{i:4d}{i:4d}\n" for i in range(1, len(_kpoints(model, self.config)) + 1))
        return (
            f"MP_GRID : {grid[0]:>8}{grid[1]:>8}{grid[2]:>8}\n"
            f"MP_OFFSET :{offset[0]:26.18e}{offset[1]:26.18e}{offset[2]:26.18e}\n"
            f"BLOCK KPOINT_IMAGES\n{images}ENDBLOCK KPOINT_IMAGES"
        )


class TrjAuxExporter:
    """Materials Studio ``.trjaux``: atom ids in the same order as the ``.cell`` positions."""

    HEADER = (
        "# Atom IDs to appear in any .trj file to be generated.\n"
        "# Correspond to atom IDs which will be used in exported .msi file\n"
        "# required for animation/analysis of trajectory within Cerius2.\n"
    )
    FOOTER = "#Origin  0.000000000000000e+000  0.000000000000000e+000  0.000000000000000e+000"

    def filename(self, seed_name: str) -> str:
        return f"{seed_name}.trjaux"

    def render(self, model: Model) -> str:
        ids = "".join(f"{atom_id}\n" for atom_id in model.atom_ids)
        return f"{self.HEADER}{ids}{self.FOOTER}"


class MsiExporter:
    """Materials Studio ``.msi`` document that :func:`parse_msi` reads back unchanged.

    Parameters
    ----------
    config:
        Supplies ``export.msi_precision``, the number of decimals written for
        coordinates and lattice vectors.
    fill_defaults:
        Add the periodic-model attributes Materials Studio expects
        (``PeriodicType``, ``SpaceGroup``...) when the model has a lattice but
        lacks them. The re-parsed model then carries these extra settings.
    """

    def __init__(self, config: Config | None = None, fill_defaults: bool = False) -> None:
        self.config = config or default_config
        self.fill_defaults = fill_defaults

    def filename(self, seed_name: str) -> str:
        return f"{seed_name}.msi"

    def _settings_fields(self, model: Model) -> tuple[list[Field], list[Field]]:
        settings = dict(model.settings)
        if self.fill_defaults and model.lattice is not None:
            for key, value in MSI_DEFAULTS.items():
                settings.setdefault(key, value)
        for key, value in settings.items():
            try:
                check_setting_value(key, value)
            except ValidationError as exc:
                raise ExportError(f"Cannot write setting {key!r} to .msi: {exc}") from exc
        leading = [setting_field(k, settings.pop(k)) for k in MSI_LEADING_SETTINGS if k in settings]
        trailing = [setting_field(k, settings.pop(k)) for k in MSI_TRAILING_SETTINGS if k in settings]
        trailing.extend(setting_field(k, v) for k, v in settings.items())
        return leading, trailing

    def render(self, model: Model) -> str:
        precision = int(self.config.export.get("msi_precision", 12))
        leading, trailing = self._settings_fields(model)
        lines = [MSI_HEADER, "(1 Model"]
        for node in leading:
            lines.extend(render_node(node, 2))
        if model.lattice is not None:
            for name, vector in zip(("A3", "B3", "C3"), model.lattice.vectors):
                lines.extend(render_node(Field("D", name, vector), 2, precision))
        for node in trailing:
            lines.extend(render_node(node, 2))
        for atom in model:
            lines.append(f"  ({atom.atom_id + 1} Atom")
            lines.append(f"    (A C ACL {quote(f'{atom.atomic_number} {atom.symbol}')})")
            if atom.label is not None:
                lines.append(f"    (A C Label {quote(atom.label)})")
            xyz = " ".join(format_number(v, precision) for v in atom.xyz)
            lines.append(f"    (A D XYZ ({xyz}))")
            lines.append(f"    (A I Id {atom.atom_id})")
            for extra in atom.extras:
                lines.extend(render_node(extra, 4))
            lines.append("  )")
        for extra in model.extras:
            lines.extend(render_node(extra, 2))
        lines.append(")")
        return "\n".join(lines) + "\n"


def render_xsd_script(stems: Iterable[str]) -> str:
    """Perl script for Materials Studio converting each ``<stem>.msi`` into ``<stem>.xsd``.

    Each stem is a path without extension; a trailing ``.msi`` is stripped.
    """
    items = []
    for stem in stems:
        stem = str(stem).replace("\\", "/")
        if stem.endswith(".msi"):
            stem = stem[: -len(".msi")]
        escaped = stem.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("@", "\\@")
        items.append(f'"{escaped}"')
    return (
        "#!perl\n"
        "use strict;\n"
        "use Getopt::Long;\n"
        "use MaterialsScript qw(:all);\n"
        f"my @params = (\n{', '.join(items)});\n"
        "foreach my $item (@params) {\n"
        '    my $doc = $Documents{"${item}.msi"};\n'
        "    $doc->CalculateBonds;\n"
        '    $doc->Export("${item}.xsd");\n'
        "    $doc->Save;\n"
        "    $doc->Close;\n"
        "}\n"
    )


class XsdScriptExporter:
    """Automation script; depends only on the file names it is given."""

    SCRIPT_NAME = "msi_to_xsd.pl"

    def __init__(self, stems: Sequence[str] | None = None) -> None:
        self.stems = list(stems) if stems is not None else None

    def filename(self, seed_name: str) -> str:
        return self.SCRIPT_NAME

    def render(self, model: Model | None = None, seed_name: str | None = None) -> str:
        stems = self.stems if self.stems is not None else ([seed_name] if seed_name else [])
        if not stems:
            raise ExportError("No file names given for the .msi to .xsd script")
        return render_xsd_script(stems)


def seed_exporters(task: str = "GeometryOptimization", config: Config | None = None) -> list:
    """Exporters producing the seed files for one CASTEP task."""
    if task == "BandStructure":
        return [
            KptAuxExporter(band_structure=True, config=config),
            ParamExporter("BandStructure", config),
            CellExporter("BandStructure", config),
        ]
    if task != "GeometryOptimization":
        raise ExportError(f"Unsupported CASTEP task {task!r}")
    return [
        KptAuxExporter(config=config),
        KptAuxExporter(band_structure=True, config=config),
        TrjAuxExporter(),
        ParamExporter("GeometryOptimization", config),
        CellExporter("GeometryOptimization", config),
        MsiExporter(config),
    ]


def export_model(
    model: Model,
    seed_name: str,
    exporters: Sequence | None = None,
    task: str | None = None,
    config: Config | None = None,
) -> dict[str, str]:
    """Render ``model`` with several exporters from a single snapshot.

    Parameters
    ----------
    model:
        Model to export. It is copied first, so later edits do not affect the
        returned texts.
    seed_name:
        File stem used to build the output names.
    exporters:
        Exporters to run; defaults to :func:`seed_exporters` for ``task``.
    task:
        CASTEP task, defaulting to ``config.castep.task``.
    config:
        Optional :class:`Config`.

    Returns
    -------
    dict[str, str]
        Mapping of file name to file contents, in exporter order.
    """
    if exporters is None:
        task = task or castep_value("task", model, config)
        exporters = seed_exporters(task, config)
    snapshot = model.copy()
    check_model_invariants(snapshot)
    outputs: dict[str, str] = {}
    for exporter in exporters:
        name = exporter.filename(seed_name)
        if isinstance(exporter, XsdScriptExporter):
            outputs[name] = exporter.render(snapshot, seed_name=seed_name)
        else:
            outputs[name] = exporter.render(snapshot)
    logger.debug("Rendered %s for %d atoms", ", ".join(outputs), len(snapshot))
    return outputs


__all__ = [
    "ModelExporter",
    "CellExporter",
    "ParamExporter",
    "KptAuxExporter",
    "TrjAuxExporter",
    "MsiExporter",
    "XsdScriptExporter",
    "render_xsd_script",
    "seed_exporters",
    "export_model",
    "check_model_invariants",
    "write_block",
]
