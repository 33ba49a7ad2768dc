import logging

import pytest

from castep_model.config import Config
from castep_model.errors import ParseError
from castep_model.msi_parser import (
    Construct,
    Field,
    Opaque,
    parse_msi,
    parse_real,
    parse_tree,
    tokenize,
)


def _wrap(atom_body, model_fields=""):
    return f"(1 Model\n{model_fields}  (2 Atom\n{atom_body}  )\n)\n"


def test_parse_sample_document(sample_msi_text):
    model = parse_msi(sample_msi_text)
    assert model.atom_ids == [1, 2, 3]
    assert [a.symbol for a in model] == ["C", "O", "H"]
    assert model.get_atom(1).label == "C1"
    assert model.get_atom(2).label is None
    assert model.get_atom(2).xyz == (1.25, -0.5, 0.75)
    assert model.get_atom(3).xyz == pytest.approx((-2.0, 1.0, -2.865153883599e-05))
    assert model.lattice.vectors == ((10.0, 0.0, 0.0), (0.0, 10.0, 0.0), (0.0, 0.0, 12.5))
    assert model.settings == {
        "CRY/DISPLAY": (192, 256),
        "PeriodicType": 100,
        "SpaceGroup": "1 1",
        "CRY/TOLERANCE": 0.05,
    }


def test_crlf_line_endings_and_indentation_are_ignored(sample_msi_text):
    flat = " ".join(line.strip() for line in sample_msi_text.splitlines() if not line.startswith("#"))
    crlf = sample_msi_text.replace("\n", "\r\n")
    reference = parse_msi(sample_msi_text)
    assert parse_msi(flat) == reference
    assert parse_msi(crlf) == reference


def test_model_without_lattice():
    model = parse_msi(_wrap('    (A C ACL "1 H")\n    (A D XYZ (0 0 0))\n    (A I Id 5)\n'))
    assert model.lattice is None
    assert model.atom_ids == [5]


@pytest.mark.parametrize(
    "literal, expected",
    [("0", 0.0), ("42", 42.0), ("-2.", -2.0), (".42", 0.42), ("42.42", 42.42),
     ("-2.865153883599e-05", -2.865153883599e-05), ("1E3", 1000.0), ("+5", 5.0)],
)
def test_parse_real_accepts(literal, expected):
    assert parse_real(literal) == expected


@pytest.mark.parametrize("literal", ["1.2.3", "e5", ".", "-", "1e", "abc"])
def test_parse_real_rejects(literal):
    with pytest.raises(ParseError):
        parse_real(literal)


def test_tokenize_strings_and_comments():
    tokens = list(tokenize('# header\n(A C Label "two words \\" quoted")\n'))
    assert [t.kind for t in tokens] == ["LPAREN", "WORD", "WORD", "WORD", "STRING", "RPAREN"]
    assert tokens[0].line == 2


def test_tokenize_unterminated_string():
    with pytest.raises(ParseError, match="Unterminated string"):
        list(tokenize('(A C Label "open\n)'))


def test_quoted_string_value_is_unescaped():
    nodes = parse_tree('(A C Label "say \\"hi\\"")')
    assert nodes == [Field("C", "Label", 'say "hi"')]


def test_parse_tree_node_types():
    nodes = parse_tree("(1 Model (A I Id 3) (A O Parent 7) (x y (z)))")
    (model,) = nodes
    assert isinstance(model, Construct)
    assert model.kind == "Model"
    assert model.children[0] == Field("I", "Id", 3)
    assert model.children[1] == Field("O", "Parent", "7")
    assert model.children[2] == Opaque(("x", "y", Opaque(("z",))))


@pytest.mark.parametrize(
    "text",
    [
        "(1 Model\n  (A I Id 1)\n",
        "(1 Model)\n)",
        "(1 Model (A I Id 1)",
    ],
)
def test_unbalanced_parentheses(text):
    with pytest.raises(ParseError, match="Unbalanced"):
        parse_tree(text)


def test_parse_error_reports_line():
    with pytest.raises(ParseError) as excinfo:
        parse_msi(_wrap('    (A C ACL "6 C")\n    (A D XYZ (1.2.3 0 0))\n    (A I Id 1)\n'))
    assert excinfo.value.line == 4
    assert "Malformed real literal" in str(excinfo.value)


def test_nesting_depth_guard():
    deep = "(" * 100 + ")" * 100
    with pytest.raises(ParseError, match="Nesting deeper"):
        parse_tree(deep, max_depth=64)
    assert parse_tree("((a))", max_depth=2) == [Opaque((Opaque(("a",)),))]


@pytest.mark.parametrize("missing", ["ACL", "XYZ", "Id"])
def test_atom_missing_required_field(missing):
    fields = {
        "ACL": '    (A C ACL "6 C")\n',
        "XYZ": "    (A D XYZ (0 0 0))\n",
        "Id": "    (A I Id 1)\n",
    }
    body = "".join(v for k, v in fields.items() if k != missing)
    with pytest.raises(ParseError, match=f"missing its {missing} field"):
        parse_msi(_wrap(body))


def test_atom_fields_out_of_order():
    body = '    (A C ACL "6 C")\n    (A I Id 1)\n    (A D XYZ (0 0 0))\n'
    with pytest.raises(ParseError, match="out of order"):
        parse_msi(_wrap(body))


def test_xyz_must_have_three_components():
    body = '    (A C ACL "6 C")\n    (A D XYZ (0 0))\n    (A I Id 1)\n'
    with pytest.raises(ParseError, match="three components"):
        parse_msi(_wrap(body))


def test_unknown_element_and_mismatched_acl():
    with pytest.raises(ParseError, match="Unknown element"):
        parse_msi(_wrap('    (A C ACL "0 Xx")\n    (A D XYZ (0 0 0))\n    (A I Id 1)\n'))
    with pytest.raises(ParseError, match="does not match"):
        parse_msi(_wrap('    (A C ACL "8 C")\n    (A D XYZ (0 0 0))\n    (A I Id 1)\n'))


def test_duplicate_atom_ids():
    text = (
        "(1 Model\n"
        '  (2 Atom (A C ACL "1 H") (A D XYZ (0 0 0)) (A I Id 1))\n'
        '  (3 Atom (A C ACL "1 H") (A D XYZ (1 0 0)) (A I Id 1))\n'
        ")\n"
    )
    with pytest.raises(ParseError, match="Duplicate atom id 1"):
        parse_msi(text)


def test_non_positive_atom_id():
    with pytest.raises(ParseError):
        parse_msi(_wrap('    (A C ACL "1 H")\n    (A D XYZ (0 0 0))\n    (A I Id 0)\n'))


def test_incomplete_or_degenerate_lattice():
    atom = '    (A C ACL "1 H")\n    (A D XYZ (0 0 0))\n    (A I Id 1)\n'
    with pytest.raises(ParseError, match="missing C3"):
        parse_msi(_wrap(atom, "  (A D A3 (1 0 0))\n  (A D B3 (0 1 0))\n"))
    degenerate = "  (A D A3 (1 0 0))\n  (A D B3 (2 0 0))\n  (A D C3 (0 0 1))\n"
    with pytest.raises(ParseError, match="degenerate"):
        parse_msi(_wrap(atom, degenerate))


def test_exactly_one_model_required():
    with pytest.raises(ParseError, match="exactly one Model"):
        parse_msi("# nothing here\n")


def test_drop_policy_discards_with_warning(msi_with_extras_text, caplog):
    with caplog.at_level(logging.WARNING, logger="castep_model.msi_parser"):
        model = parse_msi(msi_with_extras_text, policy="drop")
    assert model.extras == []
    assert model.get_atom(1).extras == ()
    messages = [rec.getMessage() for rec in caplog.records]
    assert any("record 4 Bond" in m for m in messages)
    assert any("'Charge'" in m for m in messages)


def test_preserve_policy_keeps_constructs(msi_with_extras_text):
    model = parse_msi(msi_with_extras_text, policy="preserve")
    (bond,) = model.extras
    assert bond == Construct(4, "Bond", (Field("O", "Atom1", "2"), Field("O", "Atom2", "3")))
    assert model.get_atom(1).extras == (Field("D", "Charge", 0.25),)


def test_policy_taken_from_config(msi_with_extras_text):
    cfg = Config({"parser": {"unknown_constructs": "preserve"}})
    assert len(parse_msi(msi_with_extras_text, config=cfg).extras) == 1


def test_unknown_policy_rejected(sample_msi_text):
    with pytest.raises(ValueError):
        parse_msi(sample_msi_text, policy="keep-some")


def test_top_level_nodes_outside_model_are_dropped(sample_msi_text, caplog):
    text = sample_msi_text + "(9 Viewer (A I Zoom 2))\n"
    with caplog.at_level(logging.WARNING):
        model = parse_msi(text, policy="preserve")
    assert model.extras == []
    assert "outside the Model record" in caplog.text


def test_integer_headed_lists_are_not_records():
    (model,) = parse_tree("(1 Model (192 256) (3 4 5) (7 Atom))")
    assert model.children == (
        Opaque(("192", "256")),
        Opaque(("3", "4", "5")),
        Construct(7, "Atom", ()),
    )


def test_integer_headed_list_in_model_is_unrecognized(sample_msi_text, caplog):
    text = sample_msi_text.replace("  (A D CRY/TOLERANCE 0.05)\n", "  (A D CRY/TOLERANCE 0.05)\n  (192 256)\n")
    with caplog.at_level(logging.WARNING):
        dropped = parse_msi(text, policy="drop")
    assert dropped.extras == []
    assert "Dropping unrecognized list" in caplog.text
    kept = parse_msi(text, policy="preserve")
    assert kept.extras == [Opaque(("192", "256"))]
