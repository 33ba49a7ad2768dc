"""CASTEP ``.param`` task-parameter files.

Values come from the ``castep`` section of the configuration; a model can
override any of them through a settings entry with the same key (for
example ``cut_off_energy``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any

from .config import CASTEP_TASKS, Config, default_config
from .errors import ExportError
from .structure import Model

logger = logging.getLogger(__name__)

_FINITE_BASIS_CORR = {0: "0", 1: "1", 2: "2"}


def castep_flag(value: Any) -> str:
    if isinstance(value, str):
        return value.strip().lower()
    return "true" if value else "false"


def castep_value(key: str, model: Model | None, config: Config | None = None) -> Any:
    """Look up a CASTEP parameter: model settings first, then configuration."""
    if model is not None and key in model.settings:
        return model.settings[key]
    cfg = config or default_config
    try:
        return getattr(cfg.castep, key)
    except AttributeError:
        raise ExportError(f"No value for CASTEP parameter {key!r}") from None


def _as_int(value: Any) -> int:
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"{value!r} is not a whole number")
    return int(number)


_CONVERTERS = {"float": float, "int": _as_int, "str": str}


def _coerced(cls: type, values: dict[str, Any]) -> dict[str, Any]:
    """Convert looked-up values to the field types of ``cls``; flags stay as given."""
    kinds = {f.name: f.type for f in fields(cls)}
    out = {}
    for name, value in values.items():
        convert = _CONVERTERS.get(kinds[name])
        if convert is None:
            out[name] = value
            continue
        try:
            out[name] = convert(value)
        except (TypeError, ValueError) as exc:
            raise ExportError(
                f"CASTEP parameter {name!r} must be {kinds[name]}, got {value!r}"
            ) from exc
    return out


@dataclass
class GeomOptParam:
    """Parameters that only apply to ``GeometryOptimization`` runs."""

    geom_energy_tol: float = 5e-5
    geom_force_tol: float = 0.1
    geom_stress_tol: float = 0.2
    geom_disp_tol: float = 0.005
    geom_max_iter: int = 6000
    geom_method: str = "BFGS"
    fixed_npw: bool = False
    popn_bond_cutoff: float = 3.0

    def render(self) -> str:
        return (
            f"geom_energy_tol :   {float(self.geom_energy_tol):22.15e}\n"
            f"geom_force_tol :        {float(self.geom_force_tol):18.15f}\n"
            f"geom_stress_tol :        {float(self.geom_stress_tol):18.15f}\n"
            f"geom_disp_tol :        {float(self.geom_disp_tol):18.15f}\n"
            f"geom_max_iter :     {int(self.geom_max_iter)}\n"
            f"geom_method : {self.geom_method}\n"
            f"fixed_npw : {castep_flag(self.fixed_npw)}\n"
            f"popn_bond_cutoff :        {float(self.popn_bond_cutoff):18.15f}"
        )


@dataclass
class BandStructureParam:
    """Parameters that only apply to ``BandStructure`` runs."""

    bs_nextra_bands: int = 72
    bs_xc_functional: str = "PBE"
    bs_eigenvalue_tol: float = 1e-5
    bs_write_eigenvalues: bool = True

    def render(self) -> str:
        return (
            f"bs_nextra_bands :       {int(self.bs_nextra_bands)}\n"
            f"bs_xc_functional : {self.bs_xc_functional}\n"
            f"bs_eigenvalue_tol :   {float(self.bs_eigenvalue_tol):22.15e}\n"
            f"bs_write_eigenvalues : {castep_flag(self.bs_write_eigenvalues)}"
        )


@dataclass
class CastepParam:
    """Full contents of a ``.param`` file for one task."""

    task: str = "GeometryOptimization"
    xc_functional: str = "PBE"
    spin_polarized: bool = True
    spin: int = 0
    opt_strategy: str = "Speed"
    page_wvfns: int = 0
    cut_off_energy: float = 0.0
    grid_scale: float = 1.5
    fine_grid_scale: float = 1.5
    finite_basis_corr: int = 0
    elec_energy_tol: float = 1e-5
    max_scf_cycles: int = 6000
    fix_occupancy: bool = False
    metals_method: str = "dm"
    mixing_scheme: str = "Pulay"
    mix_charge_amp: float = 0.5
    mix_spin_amp: float = 2.0
    mix_charge_gmax: float = 1.5
    mix_spin_gmax: float = 1.5
    mix_history_length: int = 20
    num_occ_cycles: int = 6
    perc_extra_bands: int = 72
    smearing_width: float = 0.1
    spin_fix: int = 6
    num_dump_cycles: int = 0
    calculate_elf: bool = False
    calculate_stress: bool = False
    popn_calculate: bool = True
    calculate_hirshfeld: bool = True
    calculate_densdiff: bool = False
    pdos_calculate_weights: bool = True
    task_params: GeomOptParam | BandStructureParam = field(default_factory=GeomOptParam)

    @classmethod
    def for_model(
        cls, model: Model, task: str | None = None, config: Config | None = None
    ) -> CastepParam:
        """Collect parameters for ``model`` from its settings and the configuration.

        The total spin is taken from the model's elements. Band-structure runs
        switch population analysis and Hirshfeld charges off.
        """
        task = task or castep_value("task", model, config)
        if task not in CASTEP_TASKS:
            raise ExportError(f"Unsupported CASTEP task {task!r}")
        extra_cls = GeomOptParam if task == "GeometryOptimization" else BandStructureParam
        extra = extra_cls(
            **_coerced(extra_cls, {f.name: castep_value(f.name, model, config) for f in fields(extra_cls)})
        )
        skip = {"task", "spin", "popn_calculate", "calculate_hirshfeld", "task_params"}
        values = _coerced(
            cls,
            {f.name: castep_value(f.name, model, config) for f in fields(cls) if f.name not in skip},
        )
        analysis = task == "GeometryOptimization"
        return cls(
            task=task,
            spin=model.spin_total(),
            popn_calculate=analysis,
            calculate_hirshfeld=analysis,
            task_params=extra,
            **values,
        )

    def _metals_block(self) -> str:
        method = str(self.metals_method).lower()
        if method == "edft":
            return f"metals_method : EDFT\nnum_occ_cycles : {int(self.num_occ_cycles)}"
        if method != "dm":
            raise ExportError(f"Unknown metals_method {self.metals_method!r}")
        return (
            "metals_method : dm\n"
            f"mixing_scheme : {self.mixing_scheme}\n"
            f"mix_charge_amp :        {float(self.mix_charge_amp):18.15f}\n"
            f"mix_spin_amp :        {float(self.mix_spin_amp):18.15f}\n"
            f"mix_charge_gmax :        {float(self.mix_charge_gmax):18.15f}\n"
            f"mix_spin_gmax :        {float(self.mix_spin_gmax):18.15f}\n"
            f"mix_history_length :       {int(self.mix_history_length)}"
        )

    def render(self) -> str:
        corr = _FINITE_BASIS_CORR.get(int(self.finite_basis_corr))
        if corr is None:
            raise ExportError(f"finite_basis_corr must be 0, 1 or 2, got {self.finite_basis_corr!r}")
        lines = [
            f"task : {self.task}",
            "comment : CASTEP calculation from Materials Studio",
            f"xc_functional : {self.xc_functional}",
            f"spin_polarized : {castep_flag(self.spin_polarized)}",
            f"spin :        {int(self.spin)}",
            f"opt_strategy : {self.opt_strategy}",
            f"page_wvfns :        {int(self.page_wvfns)}",
            f"cut_off_energy :      {float(self.cut_off_energy):18.15f}",
            f"grid_scale :        {float(self.grid_scale):18.15f}",
            f"fine_grid_scale :        {float(self.fine_grid_scale):18.15f}",
            f"finite_basis_corr :        {corr}",
            f"elec_energy_tol :   {float(self.elec_energy_tol):18.15e}",
            f"max_scf_cycles :     {int(self.max_scf_cycles)}",
            f"fix_occupancy : {castep_flag(self.fix_occupancy)}",
            self._metals_block(),
            f"perc_extra_bands : {int(self.perc_extra_bands)}",
            f"smearing_width :        {float(self.smearing_width):18.15f}",
            f"spin_fix :        {int(self.spin_fix)}",
            f"num_dump_cycles : {int(self.num_dump_cycles)}",
            self.task_params.render(),
            f"calculate_ELF : {castep_flag(self.calculate_elf)}",
            f"calculate_stress : {castep_flag(self.calculate_stress)}",
            f"popn_calculate : {castep_flag(self.popn_calculate)}",
            f"calculate_hirshfeld : {castep_flag(self.calculate_hirshfeld)}",
            f"calculate_densdiff : {castep_flag(self.calculate_densdiff)}",
            f"pdos_calculate_weights : {castep_flag(self.pdos_calculate_weights)}",
        ]
        return "\n".join(lines) + "\n"
