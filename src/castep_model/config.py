"""Dict-based configuration for castep_model.

This module provides a simple JSON/YAML-backed configuration represented as a
nested Python dict while still exposing a Config class API. Unknown keys are
preserved, and only a small set of known keys have defaults so users can add
new keys without changing the code.
"""

from __future__ import annotations

import copy
import functools
import json
import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

PARSER_POLICIES = ("drop", "preserve")
POSITION_MODES = ("cartesian", "fractional")
CASTEP_TASKS = ("GeometryOptimization", "BandStructure")
METALS_METHODS = ("dm", "edft")

# This is the single source of truth for required/known configuration keys.
DEFAULT_CONFIG: dict[str, Any] = {
    "general": {
        # Logging level control: one of "ERROR", "WARNING", "INFO", "DEBUG"
        "logging_level": "INFO",
    },
    "parser": {
        # What to do with constructs the parser does not understand:
        # "drop" logs a warning and discards them, "preserve" keeps them
        # on the model so the .msi writer can emit them again.
        "unknown_constructs": "drop",
        "max_depth": 64,
    },
    "export": {
        "positions": "cartesian",
        "msi_precision": 12,
        "cell_precision": 16,
        "potential_suffix": "_00.usp",
    },
    "castep": {
        "task": "GeometryOptimization",
        "xc_functional": "PBE",
        "spin_polarized": True,
        "opt_strategy": "Speed",
        "page_wvfns": 0,
        "cut_off_energy": 0.0,
        "grid_scale": 1.5,
        "fine_grid_scale": 1.5,
        "finite_basis_corr": 0,
        "elec_energy_tol": 1e-5,
        "max_scf_cycles": 6000,
        "fix_occupancy": False,
        "metals_method": "dm",
        "mixing_scheme": "Pulay",
        "mix_charge_amp": 0.5,
        "mix_spin_amp": 2.0,
        "mix_charge_gmax": 1.5,
        "mix_spin_gmax": 1.5,
        "mix_history_length": 20,
        "num_occ_cycles": 6,
        "perc_extra_bands": 72,
        "smearing_width": 0.1,
        "spin_fix": 6,
        "num_dump_cycles": 0,
        "calculate_elf": False,
        "calculate_stress": False,
        "calculate_densdiff": False,
        "pdos_calculate_weights": True,
        # Geometry optimization
        "geom_energy_tol": 5e-5,
        "geom_force_tol": 0.1,
        "geom_stress_tol": 0.2,
        "geom_disp_tol": 0.005,
        "geom_max_iter": 6000,
        "geom_method": "BFGS",
        "fixed_npw": False,
        "popn_bond_cutoff": 3.0,
        # Band structure
        "bs_nextra_bands": 72,
        "bs_xc_functional": "PBE",
        "bs_eigenvalue_tol": 1e-5,
        "bs_write_eigenvalues": True,
        # Cell-file blocks
        "kpoints_mp_grid": [1, 1, 1],
        "kpoints_mp_offset": [0.0, 0.0, 0.0],
        "kpoints_list": [[0.0, 0.0, 0.0, 1.0]],
        "fix_all_cell": True,
        "fix_com": False,
        "external_efield": [0.0, 0.0, 0.0],
        # Rxx, Rxy, Rxz, Ryy, Ryz, Rzz
        "external_pressure": [0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge two dicts, with values from override taking precedence.

    Leaves inputs unmodified and returns a new merged dict.
    """
    result = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class _Section:
    """Lightweight wrapper to provide attribute access to a nested dict section."""

    def __init__(self, root: dict[str, Any], path: list[str]):
        """Initialize the section wrapper.

        Parameters
        ----------
        root:
            The root dictionary of the configuration.
        path:
            List of keys to traverse to reach this section.

        """
        object.__setattr__(self, "_root", root)
        object.__setattr__(self, "_path", path)

    def _node(self) -> dict[str, Any]:
        """Resolve the path to the current node in the dictionary."""
        node = self._root
        for key in self._path:
            node = node.setdefault(key, {})
        return node

    def __getattr__(self, name: str):
        """Get a value or a subsection by attribute name."""
        node = self._node()
        if name in node:
            val = node[name]
            if isinstance(val, dict):
                return _Section(self._root, self._path + [name])
            return val
        raise AttributeError(
            f"{name} not found in section {'.'.join(self._path) if self._path else 'root'}"
        )

    def __setattr__(self, name: str, value: Any) -> None:
        """Set a value in the configuration by attribute name."""
        node = self._node()
        node[name] = value

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the section as a dictionary."""
        return copy.deepcopy(self._node())

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by key, similar to dict.get."""
        return self._node().get(key, default)

    def setdefault(self, key: str, default: Any = None) -> Any:
        """Set a default value for a key, similar to dict.setdefault."""
        return self._node().setdefault(key, default)


class Config:
    """Dict-backed configuration with attribute access for sections.

    Example:
    -------
    >>> cfg = load_config_from_file()
    >>> print(cfg.parser.unknown_constructs)
    >>> cfg.export.positions = "fractional"
    >>> save_config_to_file(cfg, "config.json")

    """

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        """Initialize configuration with optional overrides.

        Parameters
        ----------
        data:
            Optional dictionary of configuration overrides.

        """
        merged = _deep_merge(DEFAULT_CONFIG, data or {})
        self._data: dict[str, Any] = merged
        # basic validation to catch obvious mistakes early
        validate_config(self)

    @property
    def general(self) -> _Section:
        """Return the general section of the configuration."""
        return _Section(self._data, ["general"])

    @property
    def parser(self) -> _Section:
        """Return the parser section of the configuration."""
        return _Section(self._data, ["parser"])

    @property
    def export(self) -> _Section:
        """Return the export section of the configuration."""
        return _Section(self._data, ["export"])

    @property
    def castep(self) -> _Section:
        """Return the CASTEP task-parameter section of the configuration."""
        return _Section(self._data, ["castep"])

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the underlying configuration dictionary."""
        return copy.deepcopy(self._data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create a :class:`Config` instance from a plain dictionary."""
        return cls(data)


@functools.lru_cache(maxsize=1)
def _read_config_file(filepath: str) -> dict[str, Any]:
    """Read and parse configuration file with caching.

    Returns an empty dict if the file does not exist.
    """
    if not os.path.exists(filepath):
        return {}

    with open(filepath, encoding="utf-8") as f:
        if filepath.endswith(".json"):
            return json.load(f)
        elif filepath.endswith(".yaml") or filepath.endswith(".yml"):
            try:
                from yaml import safe_load as _yaml_safe_load  # type: ignore

                return _yaml_safe_load(f)
            except ImportError as e:
                raise ImportError("PyYAML is required to load YAML config files") from e
        else:
            raise ValueError("Config file must be JSON or YAML format")


def load_config_from_file(filepath: str = "config.json") -> Config:
    """Load configuration from a JSON/YAML file and deep-merge with defaults.

    This function caches the raw dictionary loaded from the file to avoid
    repeated I/O and parsing. The returned Config object is always a new
    instance, safe to modify.

    Args:
        filepath: Path to the config file. If it doesn't exist, defaults are used.

    Returns:
        A :class:`Config` instance with data merged with :data:`DEFAULT_CONFIG`.
        Unknown keys are preserved.

    """
    user_cfg = _read_config_file(filepath)

    if user_cfg is not None and not isinstance(user_cfg, dict):
        raise ValueError("Configuration file must contain a JSON/YAML object at the root")

    cfg = Config.from_dict(copy.deepcopy(user_cfg))
    validate_config(cfg)
    return cfg


def save_config_to_file(config: Any, filepath: str) -> None:
    """Save configuration to JSON/YAML file.

    Accepts either a :class:`Config` instance or a plain dictionary.
    """
    cfg_dict = config.to_dict() if isinstance(config, Config) else dict(config)

    with open(filepath, "w", encoding="utf-8") as f:
        if filepath.endswith(".json"):
            json.dump(cfg_dict, f, indent=2)
        elif filepath.endswith(".yaml") or filepath.endswith(".yml"):
            try:
                from yaml import safe_dump as _yaml_safe_dump  # type: ignore

                _yaml_safe_dump(cfg_dict, f, default_flow_style=False, sort_keys=False)
            except ImportError as e:
                raise ImportError("PyYAML is required to save YAML config files") from e
        else:
            raise ValueError("Config file must be JSON or YAML format")

    # Invalidate cache since the file on disk has changed
    _read_config_file.cache_clear()


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_config(config: Config) -> None:
    """Validate parser, export and CASTEP settings in a Config instance.

    Checks basic types and value ranges for commonly used options.
    Raises ValueError if an invalid value is found.
    """
    parser = config.parser
    policy = parser.get("unknown_constructs", "drop")
    if policy not in PARSER_POLICIES:
        raise ValueError(
            f"parser.unknown_constructs must be one of {PARSER_POLICIES}, got {policy!r}"
        )
    if not _positive_int(parser.get("max_depth", 64)):
        raise ValueError(
            f"parser.max_depth must be a positive integer, got {parser.get('max_depth')!r}"
        )

    export = config.export
    positions = export.get("positions", "cartesian")
    if positions not in POSITION_MODES:
        raise ValueError(f"export.positions must be one of {POSITION_MODES}, got {positions!r}")
    precision = export.get("msi_precision", 12)
    if not _positive_int(precision) or precision < 10:
        # fewer decimals would break the 1e-9 round-trip guarantee
        raise ValueError(f"export.msi_precision must be an integer >= 10, got {precision!r}")
    if not _positive_int(export.get("cell_precision", 16)):
        raise ValueError(
            f"export.cell_precision must be a positive integer, got {export.get('cell_precision')!r}"
        )

    castep = config.castep
    task = castep.get("task", "GeometryOptimization")
    if task not in CASTEP_TASKS:
        raise ValueError(f"castep.task must be one of {CASTEP_TASKS}, got {task!r}")
    method = str(castep.get("metals_method", "dm")).lower()
    if method not in METALS_METHODS:
        raise ValueError(f"castep.metals_method must be one of {METALS_METHODS}, got {method!r}")

    cutoff = castep.get("cut_off_energy", 0.0)
    try:
        if float(cutoff) < 0:
            raise ValueError
    except (TypeError, ValueError) as exc:
        raise ValueError(
            f"castep.cut_off_energy must be a non-negative number, got {cutoff!r}"
        ) from exc

    grid = castep.get("kpoints_mp_grid", [1, 1, 1])
    if (
        not isinstance(grid, (list, tuple))
        or len(grid) != 3
        or not all(_positive_int(v) for v in grid)
    ):
        raise ValueError(f"castep.kpoints_mp_grid must be three positive integers, got {grid!r}")


# Default configuration instance for convenience
default_config = Config()
