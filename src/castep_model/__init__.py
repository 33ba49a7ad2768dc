"""castep_model: convert Materials Studio ``.msi`` models into CASTEP seed files.

This package provides:
- A tolerant parser for the nested-parenthesis ``.msi`` format
- An atomistic :class:`Model` (atoms, lattice vectors, settings) that keeps
  its invariants on every edit
- In-place geometry transforms (translation, axis-angle rotation, lattice
  alignment)
- Exporters for ``.cell``, ``.param``, ``.kptaux``, ``.trjaux``, round-trip
  ``.msi`` and the Materials Studio ``.msi`` to ``.xsd`` Perl script
- JSON/YAML configuration for parser policy, output formatting and CASTEP
  task parameters
"""

from .api import apply_transforms, convert_msi_files, convert_msi_to_seed, load_model
from .castep_param import BandStructureParam, CastepParam, GeomOptParam
from .config import Config, default_config, load_config_from_file, save_config_to_file
from .decorators import time_it
from .errors import (
    CastepModelError,
    DegenerateAxisError,
    ExportError,
    GeometryError,
    NotFoundError,
    ParseError,
    ValidationError,
)
from .exporters import (
    CellExporter,
    KptAuxExporter,
    ModelExporter,
    MsiExporter,
    ParamExporter,
    TrjAuxExporter,
    XsdScriptExporter,
    export_model,
    render_xsd_script,
    seed_exporters,
)
from .io_handler import read_msi, save_msi_file, write_seed_files, write_xsd_script
from .logging_utils import configure_logging
from .msi_parser import parse_msi, parse_tree, tokenize
from .structure import Atom, LatticeVectors, Model
from .transform import align_lattice_vector, center_at, rotate, rotate_degrees, translate

__all__ = [
    # Data types
    "Atom",
    "LatticeVectors",
    "Model",
    # Parsing
    "tokenize",
    "parse_tree",
    "parse_msi",
    # Transforms
    "translate",
    "rotate",
    "rotate_degrees",
    "align_lattice_vector",
    "center_at",
    # Exporters
    "ModelExporter",
    "CellExporter",
    "ParamExporter",
    "KptAuxExporter",
    "TrjAuxExporter",
    "MsiExporter",
    "XsdScriptExporter",
    "seed_exporters",
    "export_model",
    "render_xsd_script",
    "CastepParam",
    "GeomOptParam",
    "BandStructureParam",
    # I/O functions
    "read_msi",
    "save_msi_file",
    "write_seed_files",
    "write_xsd_script",
    # Convenience functions (re-exported from ``api``)
    "load_model",
    "apply_transforms",
    "convert_msi_to_seed",
    "convert_msi_files",
    # Errors
    "CastepModelError",
    "ParseError",
    "ValidationError",
    "NotFoundError",
    "GeometryError",
    "DegenerateAxisError",
    "ExportError",
    # Configuration
    "Config",
    "default_config",
    "load_config_from_file",
    "save_config_to_file",
    # Logging and decorators
    "configure_logging",
    "time_it",
]
