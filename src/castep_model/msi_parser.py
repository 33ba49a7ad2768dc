"""Reader for Materials Studio ``.msi`` documents.

An ``.msi`` file is a tree of parenthesised records::

    # MSI CERIUS2 DataModel File Version 4 0
    (1 Model
      (A I PeriodicType 100)
      (A D A3 (10 0 0))
      (2 Atom
        (A C ACL "6 C")
        (A D XYZ (0 0 0))
        (A I Id 1)
      )
    )

Parsing happens in three layers:

1. :func:`tokenize` splits the text into parentheses, quoted strings and
   bare words, skipping ``#`` comments.
2. :func:`parse_tree` runs a recursive descent over the tokens and builds
   typed nodes (:class:`Field`, :class:`Construct`, :class:`Opaque`).
   Indentation is ignored; only parenthesis nesting matters.
3. :func:`parse_msi` walks the tree and extracts atoms, lattice vectors and
   settings into a :class:`~castep_model.structure.Model`.

Numeric literals never need a decimal point: ``0`` is a valid real value,
because that is what Materials Studio writes for zero coordinates.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Union

from .config import PARSER_POLICIES, Config, default_config
from .errors import ParseError, ValidationError
from .structure import LATTICE_SETTING_NAMES, Atom, LatticeVectors, Model

logger = logging.getLogger(__name__)

LPAREN = "LPAREN"
RPAREN = "RPAREN"
STRING = "STRING"
WORD = "WORD"

_TOKEN_RE = re.compile(
    r"""
    (?P<newline>\r?\n)
  | (?P<space>[ \t\f\v]+)
  | (?P<comment>\#[^\r\n]*)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<string>"(?:[^"\\\r\n]|\\[^\r\n])*")
  | (?P<word>[^\s()"]+)
  | (?P<error>.)
    """,
    re.VERBOSE,
)

_INT_RE = re.compile(r"[+-]?\d+\Z")
_REAL_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\Z")

LATTICE_FIELDS = LATTICE_SETTING_NAMES
ATOM_FIELDS = ("ACL", "Label", "XYZ", "Id")
KNOWN_TAGS = ("I", "D", "C")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    line: int


@dataclass(frozen=True)
class Field:
    """Leaf record ``(A <tag> <name> <value>)``.

    ``value`` is an ``int``/``float``/``str`` or a tuple of numbers for the
    known tags ``I``, ``D`` and ``C``. For any other tag it is the raw value
    text, kept verbatim.
    """

    tag: str
    name: str
    value: Any
    line: int | None = field(default=None, compare=False, repr=False)

    @property
    def known(self) -> bool:
        return self.tag in KNOWN_TAGS


@dataclass(frozen=True)
class Construct:
    """Container record ``(<ordinal> <kind> children...)``."""

    ordinal: int
    kind: str
    children: tuple = ()
    line: int | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Opaque:
    """Parenthesised list that is neither a field nor a construct."""

    items: tuple = ()
    line: int | None = field(default=None, compare=False, repr=False)


Node = Union[Field, Construct, Opaque]


def tokenize(text: str) -> Iterator[Token]:
    """Yield the tokens of ``text``.

    Raises
    ------
    ParseError
        On an unterminated string or a stray character.
    """
    line = 1
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup
        value = match.group()
        if kind == "newline":
            line += 1
        elif kind in ("space", "comment"):
            continue
        elif kind == "lparen":
            yield Token(LPAREN, value, line)
        elif kind == "rparen":
            yield Token(RPAREN, value, line)
        elif kind == "string":
            yield Token(STRING, value, line)
        elif kind == "word":
            yield Token(WORD, value, line)
        else:
            if value == '"':
                raise ParseError("Unterminated string literal", line)
            raise ParseError(f"Unexpected character {value!r}", line)


def _unquote(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text[1:-1])


def parse_int(text: str, line: int | None = None) -> int:
    if not _INT_RE.match(text):
        raise ParseError(f"Malformed integer literal {text!r}", line)
    return int(text)


def parse_real(text: str, line: int | None = None) -> float:
    """Parse a real literal; integer-looking literals such as ``0`` are accepted."""
    if not _REAL_RE.match(text):
        raise ParseError(f"Malformed real literal {text!r}", line)
    return float(text)


class _TreeParser:
    """Recursive descent over the token stream with a nesting-depth guard."""

    def __init__(self, text: str, max_depth: int) -> None:
        self._tokens = list(tokenize(text))
        self._pos = 0
        self._max_depth = max_depth

    def _peek(self) -> Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self, context: str) -> Token:
        tok = self._peek()
        if tok is None:
            last_line = self._tokens[-1].line if self._tokens else None
            raise ParseError(f"Unbalanced parentheses: input ended inside {context}", last_line)
        self._pos += 1
        return tok

    def parse_document(self) -> list[Node]:
        nodes: list[Node] = []
        while (tok := self._peek()) is not None:
            if tok.kind == RPAREN:
                raise ParseError("Unbalanced parentheses: unexpected ')'", tok.line)
            if tok.kind != LPAREN:
                raise ParseError(f"Unexpected {tok.text!r} outside of any record", tok.line)
            nodes.append(self._parse_node(1))
        return nodes

    def _parse_node(self, depth: int) -> Node:
        open_tok = self._next("record")
        if depth > self._max_depth:
            raise ParseError(f"Nesting deeper than {self._max_depth} levels", open_tok.line)
        head = self._peek()
        if head is not None and head.kind == WORD:
            if head.text == "A":
                return self._parse_field(open_tok, depth)
            if _INT_RE.match(head.text) and self._record_ahead():
                return self._parse_construct(open_tok, depth)
        return self._parse_opaque(open_tok, depth)

    def _record_ahead(self) -> bool:
        # "(<ordinal> <Kind>" followed by a child record or ")"; lists such as (192 256) are not
        ahead = self._tokens[self._pos + 1 : self._pos + 3]
        if len(ahead) < 2:
            return False
        kind, after = ahead
        return (
            kind.kind == WORD
            and not _REAL_RE.match(kind.text)
            and after.kind in (LPAREN, RPAREN)
        )

    def _parse_field(self, open_tok: Token, depth: int) -> Field:
        self._next("field")  # the "A" marker
        tag_tok = self._next("field")
        name_tok = self._next("field")
        if tag_tok.kind != WORD or name_tok.kind != WORD:
            raise ParseError("Field needs a type tag and a name", open_tok.line)
        values = []
        while True:
            tok = self._peek()
            if tok is None:
                self._next(f"field {name_tok.text!r}")
            if tok.kind == RPAREN:
                self._pos += 1
                break
            if tok.kind == LPAREN:
                values.append(self._parse_opaque(self._next("field"), depth + 1))
            else:
                values.append(self._next("field"))
        return _typed_field(tag_tok.text, name_tok.text, values, open_tok.line)

    def _parse_construct(self, open_tok: Token, depth: int) -> Construct:
        ordinal = int(self._next("record").text)
        kind_tok = self._next("record")
        if kind_tok.kind != WORD:
            raise ParseError(f"Record {ordinal} has no kind", open_tok.line)
        children: list[Node] = []
        while True:
            tok = self._peek()
            if tok is None:
                self._next(f"record {ordinal} {kind_tok.text}")
            if tok.kind == RPAREN:
                self._pos += 1
                break
            if tok.kind != LPAREN:
                raise ParseError(
                    f"Unexpected {tok.text!r} inside record {ordinal} {kind_tok.text}", tok.line
                )
            children.append(self._parse_node(depth + 1))
        return Construct(ordinal, kind_tok.text, tuple(children), open_tok.line)

    def _parse_opaque(self, open_tok: Token, depth: int) -> Opaque:
        if depth > self._max_depth:
            raise ParseError(f"Nesting deeper than {self._max_depth} levels", open_tok.line)
        items: list[Any] = []
        while True:
            tok = self._next("list")
            if tok.kind == RPAREN:
                break
            if tok.kind == LPAREN:
                items.append(self._parse_opaque(tok, depth + 1))
            else:
                items.append(tok.text)
        return Opaque(tuple(items), open_tok.line)


def _raw_text(values: list) -> str:
    parts = []
    for value in values:
        if isinstance(value, Token):
            parts.append(value.text)
        else:
            parts.append(_opaque_text(value))
    return " ".join(parts)


def _opaque_text(node: Opaque) -> str:
    parts = [item if isinstance(item, str) else _opaque_text(item) for item in node.items]
    return "(" + " ".join(parts) + ")"


def _typed_field(tag: str, name: str, values: list, line: int) -> Field:
    if tag not in KNOWN_TAGS:
        return Field(tag, name, _raw_text(values), line)
    if len(values) != 1:
        raise ParseError(f"Field {name!r} must hold exactly one value, got {len(values)}", line)
    (value,) = values
    if tag == "C":
        if isinstance(value, Token):
            return Field(tag, name, _unquote(value.text) if value.kind == STRING else value.text, line)
        raise ParseError(f"String field {name!r} cannot hold a list", line)
    convert = parse_int if tag == "I" else parse_real
    if isinstance(value, Token):
        if value.kind != WORD:
            raise ParseError(f"Numeric field {name!r} holds a string", line)
        return Field(tag, name, convert(value.text, line), line)
    numbers = []
    for item in value.items:
        if not isinstance(item, str) or item.startswith('"'):
            raise ParseError(f"Vector field {name!r} must hold plain numbers", line)
        numbers.append(convert(item, line))
    if not numbers:
        raise ParseError(f"Vector field {name!r} is empty", line)
    return Field(tag, name, tuple(numbers), line)


def parse_tree(text: str, max_depth: int = 64) -> list[Node]:
    """Turn ``text`` into the list of its top-level nodes."""
    return _TreeParser(text, max_depth).parse_document()


class _ModelBuilder:
    """Extract atoms, lattice and settings from the node tree of one model."""

    def __init__(self, policy: str) -> None:
        self.policy = policy
        self.model = Model()
        self.lattice_rows: dict[str, tuple[float, float, float]] = {}

    def unrecognized(self, node: Node, where: str, sink: list) -> None:
        if self.policy == "preserve":
            sink.append(node)
            return
        logger.warning("Dropping unrecognized %s in %s (line %s)", _describe(node), where, node.line)

    def build(self, model_node: Construct) -> Model:
        for child in model_node.children:
            if isinstance(child, Construct) and child.kind == "Atom":
                self.add_atom(child)
            elif isinstance(child, Field) and child.name in LATTICE_FIELDS:
                self.add_lattice_row(child)
            elif isinstance(child, Field) and child.known:
                if child.name in self.model.settings:
                    logger.warning("Field %r repeated (line %s); keeping the last value", child.name, child.line)
                try:
                    self.model.set_setting(child.name, child.value)
                except ValidationError as exc:
                    raise ParseError(str(exc), child.line) from exc
            else:
                self.unrecognized(child, "model", self.model.extras)
        self.finish_lattice(model_node.line)
        return self.model

    def add_lattice_row(self, node: Field) -> None:
        if node.name in self.lattice_rows:
            raise ParseError(f"Lattice vector {node.name} given more than once", node.line)
        value = node.value
        if not isinstance(value, tuple) or len(value) != 3:
            raise ParseError(f"Lattice vector {node.name} must have three components", node.line)
        self.lattice_rows[node.name] = tuple(float(v) for v in value)

    def finish_lattice(self, line: int | None) -> None:
        if not self.lattice_rows:
            return
        missing = [name for name in LATTICE_FIELDS if name not in self.lattice_rows]
        if missing:
            raise ParseError(f"Incomplete lattice: missing {', '.join(missing)}", line)
        try:
            lattice = LatticeVectors(tuple(self.lattice_rows[name] for name in LATTICE_FIELDS))
        except ValidationError as exc:
            raise ParseError(str(exc), line) from exc
        self.model.set_lattice(lattice)

    def add_atom(self, node: Construct) -> None:
        found: dict[str, Field] = {}
        last_rank = -1
        extras: list[Node] = []
        for child in node.children:
            if isinstance(child, Field) and child.name in ATOM_FIELDS:
                if child.name in found:
                    raise ParseError(f"Atom record {node.ordinal} repeats field {child.name}", child.line)
                rank = ATOM_FIELDS.index(child.name)
                if rank < last_rank:
                    raise ParseError(
                        f"Atom record {node.ordinal}: field {child.name} is out of order", child.line
                    )
                last_rank = rank
                found[child.name] = child
            else:
                self.unrecognized(child, f"atom record {node.ordinal}", extras)

        for required in ("ACL", "XYZ", "Id"):
            if required not in found:
                raise ParseError(f"Atom record {node.ordinal} is missing its {required} field", node.line)

        number, symbol = _parse_acl(found["ACL"])
        xyz = found["XYZ"].value
        if not isinstance(xyz, tuple) or len(xyz) != 3:
            raise ParseError(f"Atom record {node.ordinal}: XYZ must have three components", found["XYZ"].line)
        atom_id = found["Id"].value
        if not isinstance(atom_id, int) or isinstance(atom_id, bool):
            raise ParseError(f"Atom record {node.ordinal}: Id must be an integer", found["Id"].line)
        if atom_id in self.model:
            raise ParseError(f"Duplicate atom id {atom_id}", found["Id"].line)
        label = found["Label"].value if "Label" in found else None
        if label is not None and not isinstance(label, str):
            label = str(label)

        try:
            atom = Atom(
                atom_id=atom_id,
                symbol=symbol,
                xyz=tuple(float(v) for v in xyz),
                label=label,
                atomic_number=number,
                extras=tuple(extras),
            )
        except ValidationError as exc:
            raise ParseError(f"Atom record {node.ordinal}: {exc}", node.line) from exc
        self.model.add_atom(atom)


def _parse_acl(node: Field) -> tuple[int, str]:
    parts = str(node.value).split()
    if len(parts) != 2 or not _INT_RE.match(parts[0]):
        raise ParseError(f"ACL must look like \"<number> <symbol>\", got {node.value!r}", node.line)
    return int(parts[0]), parts[1]


def _describe(node: Node) -> str:
    if isinstance(node, Field):
        return f"field {node.name!r} (type {node.tag})"
    if isinstance(node, Construct):
        return f"record {node.ordinal} {node.kind}"
    return "list"


def parse_msi(
    text: str,
    policy: str | None = None,
    max_depth: int | None = None,
    config: Config | None = None,
) -> Model:
    """Parse an ``.msi`` document into a :class:`Model`.

    Parameters
    ----------
    text:
        Full document text.
    policy:
        ``"drop"`` to discard unrecognized constructs with a warning, or
        ``"preserve"`` to keep them on the model for a faithful re-export.
        Defaults to ``config.parser.unknown_constructs``.
    max_depth:
        Maximum parenthesis nesting. Defaults to ``config.parser.max_depth``.
    config:
        Optional :class:`Config`; the package default is used otherwise.

    Returns
    -------
    Model
        The parsed model. Nothing partial is ever returned.

    Raises
    ------
    ParseError
        On unbalanced parentheses, malformed literals, atom records missing
        their coordinate or id, duplicate ids or unknown elements.
    """
    cfg = config or default_config
    policy = policy or cfg.parser.get("unknown_constructs", "drop")
    if policy not in PARSER_POLICIES:
        raise ValueError(f"Unknown parser policy {policy!r}; expected one of {PARSER_POLICIES}")
    depth = max_depth if max_depth is not None else cfg.parser.get("max_depth", 64)

    nodes = parse_tree(text, max_depth=depth)
    models = [n for n in nodes if isinstance(n, Construct) and n.kind == "Model"]
    if len(models) != 1:
        raise ParseError(f"Expected exactly one Model record, found {len(models)}")

    for node in nodes:
        if node is not models[0]:
            # only the Model record is carried; there is nowhere to keep these
            logger.warning("Ignoring %s outside the Model record (line %s)", _describe(node), node.line)
    model = _ModelBuilder(policy).build(models[0])
    logger.debug(
        "Parsed model: %d atoms, lattice %s, %d settings",
        len(model),
        "present" if model.lattice is not None else "absent",
        len(model.settings),
    )
    return model


def format_number(value: float | int, precision: int | None = None) -> str:
    """Render a number so that :func:`parse_real`/:func:`parse_int` read it back."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if precision is None:
        return repr(float(value))
    return f"{float(value):.{precision}f}"


def quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def setting_field(name: str, value: Any) -> Field:
    """Build the :class:`Field` that stores a settings value."""
    if isinstance(value, str):
        return Field("C", name, value)
    if isinstance(value, tuple):
        if all(isinstance(v, int) and not isinstance(v, bool) for v in value):
            return Field("I", name, value)
        return Field("D", name, tuple(float(v) for v in value))
    if isinstance(value, int) and not isinstance(value, bool):
        return Field("I", name, value)
    return Field("D", name, float(value))


def render_node(node: Node, indent: int = 0, precision: int | None = None) -> list[str]:
    """Render a node back to ``.msi`` lines, two spaces per nesting level."""
    pad = " " * indent
    if isinstance(node, Field):
        if not node.known:
            parts = ["A", node.tag, node.name] + ([node.value] if node.value else [])
            return [pad + "(" + " ".join(parts) + ")"]
        if node.tag == "C":
            text = quote(str(node.value))
        elif isinstance(node.value, tuple):
            text = "(" + " ".join(format_number(v, precision) for v in node.value) + ")"
        else:
            text = format_number(node.value, precision)
        return [f"{pad}(A {node.tag} {node.name} {text})"]
    if isinstance(node, Construct):
        lines = [f"{pad}({node.ordinal} {node.kind}"]
        for child in node.children:
            lines.extend(render_node(child, indent + 2, precision))
        lines.append(f"{pad})")
        return lines
    return [pad + _opaque_text(node)]
