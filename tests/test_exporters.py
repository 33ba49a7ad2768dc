import re

import pytest

from castep_model.config import Config
from castep_model.errors import ExportError
from castep_model.exporters import (
    CellExporter,
    KptAuxExporter,
    ModelExporter,
    MsiExporter,
    ParamExporter,
    TrjAuxExporter,
    XsdScriptExporter,
    export_model,
    render_xsd_script,
)
from castep_model.msi_parser import parse_msi
from castep_model.structure import Atom, Model
from castep_model.transform import translate


def _block(text, name):
    match = re.search(rf"%BLOCK {name}\n(.*?)%ENDBLOCK {name}\n", text, re.S)
    assert match, f"block {name} missing"
    return match.group(1).splitlines()


def test_all_exporters_share_the_protocol():
    for exporter in (CellExporter(), ParamExporter(), KptAuxExporter(), TrjAuxExporter(),
                     MsiExporter(), XsdScriptExporter(["a"])):
        assert isinstance(exporter, ModelExporter)


def test_cell_lattice_and_positions(sample_model):
    text = CellExporter().render(sample_model)
    lattice = _block(text, "LATTICE_CART")
    assert [float(v) for v in lattice[0].split()] == [10.0, 0.0, 0.0]
    assert [float(v) for v in lattice[2].split()] == [0.0, 0.0, 12.5]

    positions = _block(text, "POSITIONS_ABS")
    assert len(positions) == 3
    symbol, x, y, z, *_ = positions[1].split()
    assert symbol == "O"
    assert (float(x), float(y), float(z)) == (1.25, -0.5, 0.75)
    assert [line.rsplit("!", 1)[1].strip() for line in positions] == ["1", "2", "3"]
    assert "SPIN=" in positions[0]


def test_cell_block_order(sample_model):
    text = CellExporter().render(sample_model)
    names = re.findall(r"^%BLOCK (\S+)$", text, re.M)
    assert names == [
        "LATTICE_CART",
        "POSITIONS_ABS",
        "KPOINTS_LIST",
        "IONIC_CONSTRAINTS",
        "EXTERNAL_EFIELD",
        "EXTERNAL_PRESSURE",
        "SPECIES_MASS",
        "SPECIES_POT",
        "SPECIES_LCAO_STATES",
    ]
    assert "FIX_ALL_CELL : true\n\nFIX_COM : false\n" in text
    assert len(_block(text, "EXTERNAL_PRESSURE")) == 3


def test_cell_species_tables(sample_model):
    text = CellExporter().render(sample_model)
    masses = {line.split()[0]: float(line.split()[1]) for line in _block(text, "SPECIES_MASS")}
    assert list(masses) == ["C", "O", "H"]
    assert masses["C"] == pytest.approx(12.011, abs=1e-3)
    assert [line.split() for line in _block(text, "SPECIES_POT")][0] == ["C", "C_00.usp"]
    lcao = {line.split()[0]: int(line.split()[1]) for line in _block(text, "SPECIES_LCAO_STATES")}
    assert lcao == {"C": 2, "O": 2, "H": 1}


def test_cell_no_spin_for_closed_shell():
    model = Model(
        atoms=[Atom(1, "He", (0.0, 0.0, 0.0))],
        lattice=((4.0, 0.0, 0.0), (0.0, 4.0, 0.0), (0.0, 0.0, 4.0)),
    )
    positions = _block(CellExporter().render(model), "POSITIONS_ABS")
    assert "SPIN" not in positions[0]


def test_cell_fractional_positions_and_suffix(sample_model):
    cfg = Config({"export": {"positions": "fractional", "potential_suffix": "_OTFG.usp"}})
    text = CellExporter(config=cfg).render(sample_model)
    positions = _block(text, "POSITIONS_FRAC")
    assert [float(v) for v in positions[1].split()[1:4]] == pytest.approx([0.125, -0.05, 0.06])
    assert "O_OTFG.usp" in text


def test_cell_requires_lattice(molecule_model):
    with pytest.raises(ExportError, match="lattice"):
        CellExporter().render(molecule_model)


def test_cell_kpoints_from_settings(sample_model):
    sample_model.set_setting("kpoints_list", (0, 0, 0, 0.5, 0.5, 0.5, 0.5, 0.5))
    text = CellExporter().render(sample_model)
    kpoints = _block(text, "KPOINTS_LIST")
    assert [float(v) for v in kpoints[1].split()] == [0.5, 0.5, 0.5, 0.5]
    images = KptAuxExporter().render(sample_model)
    assert "   1   1\n   2   2\n" in images

    sample_model.set_setting("kpoints_list", (0, 0, 0))
    with pytest.raises(ExportError):
        CellExporter().render(sample_model)


def test_band_structure_cell(sample_model):
    exporter = CellExporter("BandStructure")
    assert exporter.filename("S") == "S_DOS.cell"
    text = exporter.render(sample_model)
    assert "%BLOCK BS_KPOINTS_LIST" in text
    assert "%BLOCK KPOINTS_LIST" in text


def test_unknown_task_rejected():
    with pytest.raises(ExportError):
        CellExporter("MolecularDynamics")


def test_kptaux_defaults(sample_model):
    text = KptAuxExporter().render(sample_model)
    lines = text.splitlines()
    assert lines[0] == "MP_GRID :        1       1       1"
    assert [float(v) for v in lines[1].split()[2:]] == [0.0, 0.0, 0.0]
    assert lines[2:] == ["BLOCK KPOINT_IMAGES", "   1   1", "ENDBLOCK KPOINT_IMAGES"]
    assert KptAuxExporter(band_structure=True).filename("S") == "S_DOS.kptaux"


def test_trjaux_lists_ids_in_model_order(sample_model):
    sample_model.set_atom_id(2, 17)
    text = TrjAuxExporter().render(sample_model)
    lines = text.splitlines()
    assert lines[0] == "# Atom IDs to appear in any .trj file to be generated."
    assert lines[3:6] == ["1", "17", "3"]
    assert lines[-1].startswith("#Origin")


def test_msi_round_trip_is_exact(sample_model):
    text = MsiExporter().render(sample_model)
    assert text.startswith("# MSI CERIUS2 DataModel File Version 4 0\n(1 Model\n")
    assert parse_msi(text) == sample_model


def test_msi_round_trip_from_document(sample_msi_text):
    model = parse_msi(sample_msi_text)
    again = parse_msi(MsiExporter().render(model))
    assert again.is_close(model)
    assert again.atom_ids == model.atom_ids


def test_msi_round_trip_preserves_unknown_constructs(msi_with_extras_text):
    model = parse_msi(msi_with_extras_text, policy="preserve")
    text = MsiExporter().render(model)
    assert "(A O Atom1 2)" in text
    assert "(A D Charge 0.25)" in text
    assert parse_msi(text, policy="preserve") == model


def test_msi_atom_record_numbering(sample_model):
    text = MsiExporter().render(sample_model)
    assert re.findall(r"^  \((\d+) Atom$", text, re.M) == ["2", "3", "4"]


def test_msi_fill_defaults(sample_model):
    sample_model.remove_setting("PeriodicType")
    text = MsiExporter(fill_defaults=True).render(sample_model)
    model = parse_msi(text)
    assert model.settings["PeriodicType"] == 100
    assert model.settings["CRY/TOLERANCE"] == 0.05


def test_msi_without_lattice(molecule_model):
    text = MsiExporter(fill_defaults=True).render(molecule_model)
    assert "A3" not in text
    assert parse_msi(text) == molecule_model


def test_xsd_script():
    text = render_xsd_script(["out/a", "b.msi", "C:\\runs\\c"])
    assert text.startswith("#!perl\nuse strict;\nuse Getopt::Long;\nuse MaterialsScript qw(:all);\n")
    assert 'my @params = (\n"out/a", "b", "C:/runs/c");\n' in text
    assert '    my $doc = $Documents{"${item}.msi"};\n' in text
    assert "    $doc->CalculateBonds;\n" in text
    assert '    $doc->Export("${item}.xsd");\n' in text


def test_xsd_script_needs_names(sample_model):
    with pytest.raises(ExportError):
        XsdScriptExporter([]).render(sample_model)


def test_export_model_geometry_optimization_set(sample_model):
    outputs = export_model(sample_model, "S")
    assert list(outputs) == ["S.kptaux", "S_DOS.kptaux", "S.trjaux", "S.param", "S.cell", "S.msi"]


def test_export_model_band_structure_set(sample_model):
    outputs = export_model(sample_model, "S", task="BandStructure")
    assert list(outputs) == ["S_DOS.kptaux", "S_DOS.param", "S_DOS.cell"]
    assert outputs["S_DOS.param"].startswith("task : BandStructure\n")


def test_export_model_outputs_agree(sample_model):
    sample_model.set_atom_id(1, 40)
    outputs = export_model(sample_model, "S")
    cell_ids = [int(line.rsplit("!", 1)[1]) for line in _block(outputs["S.cell"], "POSITIONS_ABS")]
    trj_ids = [int(line) for line in outputs["S.trjaux"].splitlines() if line.strip().isdigit()]
    msi_model = parse_msi(outputs["S.msi"])
    assert cell_ids == trj_ids == msi_model.atom_ids == [40, 2, 3]
    assert msi_model == sample_model


def test_export_model_with_script(sample_model):
    outputs = export_model(sample_model, "S", exporters=[TrjAuxExporter(), XsdScriptExporter()])
    assert list(outputs) == ["S.trjaux", "msi_to_xsd.pl"]
    assert '"S"' in outputs["msi_to_xsd.pl"]


def test_export_model_detects_broken_invariants(sample_model):
    atom = sample_model.atoms[0]
    # bypass the frozen dataclass to simulate a corrupted model
    object.__setattr__(atom, "xyz", (float("nan"), 0.0, 0.0))
    with pytest.raises(ExportError, match="Internal invariant"):
        export_model(sample_model, "S")


def test_export_model_does_not_touch_model(sample_model):
    before = sample_model.copy()
    export_model(sample_model, "S")
    assert sample_model == before


def test_translate_then_round_trip_is_exact():
    model = Model(
        atoms=[Atom(1, "C", (0.0, 0.0, 0.0)), Atom(2, "O", (1.5, 0.0, 0.0))],
        lattice=((10.0, 0.0, 0.0), (0.0, 10.0, 0.0), (0.0, 0.0, 10.0)),
    )
    translate(model, (1.0, 1.0, 1.0))
    assert model.get_atom(1).xyz == (1.0, 1.0, 1.0)
    assert model.get_atom(2).xyz == (2.5, 1.0, 1.0)

    again = parse_msi(export_model(model, "S")["S.msi"])
    assert again.get_atom(1).xyz == (1.0, 1.0, 1.0)
    assert again.get_atom(2).xyz == (2.5, 1.0, 1.0)
    assert again == model


@pytest.mark.parametrize(
    "key, value",
    [
        ("CRY/TOLERANCE", 1e-300),
        ("Largest", 1.7976931348623157e308),
        ("a#b", 1),
        ("Note", 'say "hi" \\ bye'),
        ("Mixed", (1, 2.5, -3)),
    ],
)
def test_msi_round_trip_of_unusual_settings(sample_model, key, value):
    sample_model.set_setting(key, value)
    assert parse_msi(export_model(sample_model, "S")["S.msi"]) == sample_model


def test_msi_round_trip_of_quoted_label():
    model = Model(atoms=[Atom(1, "C", (0.0, 0.0, 0.0), label='ring "A"\tC1')])
    assert parse_msi(MsiExporter().render(model)) == model


@pytest.mark.parametrize(
    "key, value",
    [("cut off", 1.0), ("A3", (1.0, 0.0, 0.0)), ("Tolerance", float("nan")), ("note", "a\nb")],
)
def test_msi_refuses_settings_it_cannot_read_back(sample_model, key, value):
    # bypass validation to simulate a corrupted settings mapping
    sample_model._settings[key] = value
    with pytest.raises(ExportError, match="Cannot write setting"):
        MsiExporter().render(sample_model)


def test_export_model_non_numeric_override(sample_model):
    sample_model.set_setting("cut_off_energy", "high")
    with pytest.raises(ExportError, match="cut_off_energy"):
        export_model(sample_model, "S")


def test_kptaux_mp_grid_must_be_whole_numbers(sample_model):
    sample_model.set_setting("kpoints_mp_grid", (2.0, 3, 1))
    assert KptAuxExporter().render(sample_model).splitlines()[0] == "MP_GRID :        2       3       1"
    sample_model.set_setting("kpoints_mp_grid", (2.7, 2, 1))
    with pytest.raises(ExportError, match="kpoints_mp_grid"):
        KptAuxExporter().render(sample_model)
    sample_model.set_setting("kpoints_mp_grid", (0, 2, 1))
    with pytest.raises(ExportError, match="kpoints_mp_grid"):
        KptAuxExporter().render(sample_model)
