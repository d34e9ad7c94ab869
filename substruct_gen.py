"""Projection record generator.

Derives restricted "projection" records from a fully annotated source record.
The source declares the projections to create with a type-level
`substruct(Name1, Name2)` annotation, fields opt in with their own
`substruct(...)` annotation, and `substruct_attr(<selector>, <annotation>)`
injects an annotation into the generated records its selector matches.

Usage:
    python substruct_gen.py --input records.xml --output-dir generated
"""

import argparse
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import NamedTuple

DEFAULT_OUTPUT_DIR = Path("generated")


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    input_path: Path
    output_dir: Path
    records: frozenset[str]


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    input_path: Path
    filter_text: str | None
    info_record: str | None


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_RECORD_NAME",
    "CONFLICT_GENERATE_DISCOVERY",
    "FILTER_WITHOUT_LIST",
    "UNKNOWN_RECORD",
    "OUTPUT_OVERWRITES_INPUT",
}
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_record_name(name: str) -> str:
    if _IDENT_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_RECORD_NAME",
        f"Invalid record name: {name}",
        "Record names are identifiers (for example QueryParams).",
    )


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate projection records from annotated source records"
    )

    parser.add_argument("--input", type=Path, default=None)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--record", action="append", nargs="+", default=None)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--list-records", action="store_true", default=False)
    discovery_group.add_argument("--info", type=str, default=None)

    parser.add_argument("--filter", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_records(raw_records: object) -> tuple[str, ...]:
    if raw_records is None:
        return tuple()
    if not isinstance(raw_records, list):
        raise ConfigError(
            "INVALID_RECORD_NAME",
            f"Invalid --record value type: {type(raw_records).__name__}",
            "Pass record names as --record QueryParams.",
        )

    normalized: list[str] = []
    for entry in raw_records:
        if isinstance(entry, str):
            normalized.append(entry)
            continue
        if isinstance(entry, list):
            for name in entry:
                if not isinstance(name, str):
                    raise ConfigError(
                        "INVALID_RECORD_NAME",
                        f"Invalid record name type: {type(name).__name__}",
                        "Pass record names as --record QueryParams.",
                    )
                normalized.append(name)
            continue
        raise ConfigError(
            "INVALID_RECORD_NAME",
            f"Invalid --record entry type: {type(entry).__name__}",
            "Pass record names as --record QueryParams.",
        )

    return tuple(normalized)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    raw_records = normalize_records(args.record)
    has_discovery_command = bool(args.list_records or args.info)

    if args.filter and not args.list_records:
        raise ConfigError(
            "FILTER_WITHOUT_LIST",
            "--filter requires --list-records.",
            "Add --list-records or remove --filter.",
        )

    if raw_records and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode or one discovery command.",
        )

    input_path = validate_path_exists(
        args.input,
        "--input",
        "Pass the record registry to expand: --input /path/to/records.xml",
    )

    if has_discovery_command:
        command = "list-records" if args.list_records else "info"
        info_record = validate_record_name(args.info) if args.info is not None else None
        return DiscoveryConfig(
            command=command,
            input_path=input_path,
            filter_text=args.filter,
            info_record=info_record,
        )

    output_path = Path(args.output_dir) / input_path.name
    if output_path.resolve() == input_path.resolve():
        raise ConfigError(
            "OUTPUT_OVERWRITES_INPUT",
            f"Generated output would overwrite the input registry: {input_path}",
            "Pass a different --output-dir or move the input out of it.",
        )

    return GenerateConfig(
        input_path=input_path,
        output_dir=args.output_dir,
        records=frozenset(validate_record_name(name) for name in raw_records),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

DIRECTIVE_MEMBERSHIP = "substruct"
DIRECTIVE_ATTRIBUTE = "substruct_attr"
DIRECTIVE_PATHS = {DIRECTIVE_MEMBERSHIP, DIRECTIVE_ATTRIBUTE}
DOC_ANNOTATION_PATH = "doc"
PROJECTABLE_KINDS = {"struct"}
SELECTOR_OPERATORS = {"not", "any", "all"}


# ===--- Record model ---=== #


@dataclass(frozen=True)
class GenericParam:
    """One generic parameter of a record: a type parameter or a lifetime ('a)."""

    name: str
    bounds: str | None = None


@dataclass(frozen=True)
class FieldDefinition:
    """One record field as delivered by the front end.

    Attributes:
        name: Field identifier, or None for a positional (tuple-record) field.
        visibility: Visibility marker, e.g. "pub". Empty when private.
        type_expr: Opaque type expression, e.g. "Option<&'a T>".
        annotations: Raw annotations in declaration order. Each is an opaque
            string such as "serde(rename = \"a2\")".
    """

    name: str | None
    visibility: str
    type_expr: str
    annotations: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversionArgument:
    source_index: int
    name: str
    type_expr: str


@dataclass(frozen=True)
class ConversionPlan:
    """Field mapping between a projection and its source record.

    Attributes:
        source: Name of the source record.
        method: Name of the projection -> source conversion, e.g.
            "into_query_params".
        kept: (source_index, projection_index) for every projection field.
        arguments: Source fields missing from the projection, in source order.
            Converting a projection back into the source takes one argument
            per entry.
    """

    source: str
    method: str
    kept: tuple[tuple[int, int], ...]
    arguments: tuple[ConversionArgument, ...]


@dataclass(frozen=True)
class SourceDefinition:
    """A fully annotated source record, immutable once loaded.

    conversion is set when the record was itself generated as a projection
    and read back from a registry, so writing it out again keeps the plan.
    """

    name: str
    generics: tuple[GenericParam, ...]
    annotations: tuple[str, ...]
    fields: tuple[FieldDefinition, ...]
    kind: str = "struct"
    conversion: ConversionPlan | None = None


def field_location(record: str, index: int, definition: FieldDefinition) -> str:
    if definition.name is None:
        return f"{record}.{index}"
    return f"{record}.{definition.name}"


def _annotation_location(owner: str, position: int) -> str:
    return f"{owner} (annotation {position})"


# ===--- Diagnostics ---=== #

VALID_DIAGNOSTIC_CODES = {
    "SYNTAX_ERROR",
    "UNKNOWN_TARGET",
    "DUPLICATE_PROJECTION",
    "GENERIC_PARAMETER_UNUSED",
    "UNSUPPORTED_KIND",
}


class DirectiveError(Exception):
    """A problem found while resolving the directives of one source record.

    Instances are collected by DiagnosticSink rather than raised across the
    pipeline, so one bad directive never hides the diagnostics of another.

    Attributes:
        code: Stable machine-readable code from VALID_DIAGNOSTIC_CODES.
        message: Human-readable description.
        location: Record, field or annotation the problem is attached to.
        suggestion: Optional hint for fixing the directive.
    """

    code = ""

    def __init__(self, message: str, location: str, suggestion: str | None = None):
        if self.code not in VALID_DIAGNOSTIC_CODES:
            raise ValueError(f"Unknown diagnostic code: {self.code}")
        super().__init__(message)
        self.message = message
        self.location = location
        self.suggestion = suggestion


class DirectiveSyntaxError(DirectiveError):
    code = "SYNTAX_ERROR"


class UnknownTargetError(DirectiveError):
    code = "UNKNOWN_TARGET"

    def __init__(self, target: str, location: str):
        super().__init__(
            f"record name `{target}` does not appear in the top-level list of "
            f"records to create",
            location,
            "Add it to the record's substruct(...) list or fix the spelling.",
        )
        self.target = target


class DuplicateProjectionError(DirectiveError):
    code = "DUPLICATE_PROJECTION"

    def __init__(self, target: str, location: str):
        super().__init__(f"record name `{target}` is declared more than once", location)
        self.target = target


class GenericParameterUnusedError(DirectiveError):
    code = "GENERIC_PARAMETER_UNUSED"

    def __init__(self, projection: str, parameter: str, location: str):
        super().__init__(
            f"generic parameter `{parameter}` is not used in {projection}",
            location,
            f"Every generic parameter must be used by every projection; include "
            f"a field that references `{parameter}` in {projection}.",
        )
        self.projection = projection
        self.parameter = parameter


class UnsupportedKindError(DirectiveError):
    code = "UNSUPPORTED_KIND"

    def __init__(self, kind: str, location: str):
        super().__init__(f"substruct does not support {kind} records", location)
        self.kind = kind


class DiagnosticSink:
    """Accumulates diagnostics for one expansion, in report order."""

    def __init__(self) -> None:
        self._errors: list[DirectiveError] = []

    def report(self, error: DirectiveError) -> None:
        self._errors.append(error)

    @property
    def errors(self) -> tuple[DirectiveError, ...]:
        return tuple(self._errors)

    @property
    def has_errors(self) -> bool:
        return bool(self._errors)

    def __len__(self) -> int:
        return len(self._errors)


class ExpansionError(Exception):
    """Raised when one or more records could not be expanded.

    Carries every collected diagnostic, never just the first.
    """

    def __init__(self, diagnostics: tuple[DirectiveError, ...], record: str | None = None):
        target = f" in {record}" if record else ""
        super().__init__(f"{len(diagnostics)} directive error(s){target}")
        self.record = record
        self.diagnostics = diagnostics


def format_diagnostic(error: DirectiveError) -> str:
    line = f"{error.location}: error[{error.code}]: {error.message}"
    if error.suggestion:
        line += f"\n  Hint: {error.suggestion}"
    return line


# ===--- Directive tokens ---=== #


class Token(NamedTuple):
    kind: str
    text: str
    start: int
    end: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<string>"(?:[^"\\]|\\.)*")
    | (?P<ident>'?[A-Za-z_][A-Za-z0-9_]*)
    | (?P<open>[(\[{])
    | (?P<close>[)\]}])
    | (?P<comma>,)
    | (?P<punct>.)
    """,
    re.VERBOSE | re.DOTALL,
)
_CLOSERS = {"(": ")", "[": "]", "{": "}"}
_PATH_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*(?:::[A-Za-z_][A-Za-z0-9_]*)*)")


def tokenize(text: str) -> list[Token]:
    """Split directive text into tokens, dropping whitespace.

    Every character lands in some token, so slicing the original text between
    two token offsets reproduces the input verbatim.
    """
    tokens: list[Token] = []
    for m in _TOKEN_RE.finditer(text):
        if m.lastgroup == "ws":
            continue
        tokens.append(Token(m.lastgroup, m.group(), m.start(), m.end()))
    return tokens


def annotation_path(annotation: str) -> str | None:
    """Return the leading path of an annotation, e.g. "serde" for serde(...)."""
    m = _PATH_RE.match(annotation)
    return m.group(1) if m else None


def is_directive(annotation: str) -> bool:
    return annotation_path(annotation) in DIRECTIVE_PATHS


def _matching_close(tokens: list[Token], open_index: int) -> int | None:
    stack: list[str] = []
    for i in range(open_index, len(tokens)):
        tok = tokens[i]
        if tok.kind == "open":
            stack.append(_CLOSERS[tok.text])
        elif tok.kind == "close":
            if not stack or stack.pop() != tok.text:
                return None
            if not stack:
                return i
    return None


def _directive_body(annotation: str, path: str, location: str) -> str:
    """Return the text between the parentheses of `path(...)`.

    Raises:
        DirectiveSyntaxError: Missing or unbalanced parentheses, or trailing
            tokens after the closing parenthesis.
    """
    rest = annotation.strip()[len(path):]
    tokens = tokenize(rest)
    if not tokens or tokens[0].text != "(":
        raise DirectiveSyntaxError(
            f"expected `{path}(...)`, found `{annotation.strip()}`", location
        )
    close_index = _matching_close(tokens, 0)
    if close_index is None:
        raise DirectiveSyntaxError(
            f"unterminated list in `{annotation.strip()}`", location
        )
    if close_index != len(tokens) - 1:
        trailing = rest[tokens[close_index + 1].start:].strip()
        raise DirectiveSyntaxError(
            f"unexpected `{trailing}` after `{path}(...)`", location
        )
    return rest[tokens[0].end:tokens[close_index].start]


def _split_top_level(tokens: list[Token]) -> list[list[Token]]:
    """Split tokens on commas that are not nested inside brackets.

    A single trailing comma is allowed and produces no empty segment.
    """
    segments: list[list[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.kind == "open":
            depth += 1
        elif tok.kind == "close":
            depth -= 1
        if tok.kind == "comma" and depth == 0:
            segments.append([])
            continue
        segments[-1].append(tok)
    if not segments[-1]:
        segments.pop()
    return segments


def _unquote(literal: str) -> str:
    return re.sub(r"\\(.)", r"\1", literal[1:-1])


def format_doc_annotation(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'{DOC_ANNOTATION_PATH} = "{escaped}"'


# ===--- Directive model ---=== #


@dataclass(frozen=True)
class NameExpr:
    """Matches exactly the record with this name."""

    name: str

    def matches(self, target: str) -> bool:
        return target == self.name

    def names(self) -> tuple[str, ...]:
        return (self.name,)


@dataclass(frozen=True)
class NotExpr:
    operand: "Selector"

    def matches(self, target: str) -> bool:
        return not self.operand.matches(target)

    def names(self) -> tuple[str, ...]:
        return self.operand.names()


@dataclass(frozen=True)
class AnyExpr:
    """Matches when at least one operand does. any() matches nothing."""

    operands: tuple["Selector", ...]

    def matches(self, target: str) -> bool:
        return any(op.matches(target) for op in self.operands)

    def names(self) -> tuple[str, ...]:
        return tuple(name for op in self.operands for name in op.names())


@dataclass(frozen=True)
class AllExpr:
    """Matches when every operand does. all() matches everything."""

    operands: tuple["Selector", ...]

    def matches(self, target: str) -> bool:
        return all(op.matches(target) for op in self.operands)

    def names(self) -> tuple[str, ...]:
        return tuple(name for op in self.operands for name in op.names())


Selector = NameExpr | NotExpr | AnyExpr | AllExpr


@dataclass(frozen=True)
class MembershipEntry:
    selector: Selector
    doc: str | None = None


@dataclass(frozen=True)
class MembershipDirective:
    """The projections a field belongs to, merged over its substruct(...) lists.

    The entries form an implicit any(...): the field is part of every emitted
    record that at least one entry matches. An entry may carry a
    documentation override written in front of it, e.g.
    substruct("Only the filter." any(A, B)); the first matching entry that
    has one wins.
    """

    entries: tuple[MembershipEntry, ...] = ()

    def includes(self, target: str) -> bool:
        return any(entry.selector.matches(target) for entry in self.entries)

    def doc_for(self, target: str) -> str | None:
        for entry in self.entries:
            if entry.doc is not None and entry.selector.matches(target):
                return entry.doc
        return None

    @property
    def names(self) -> tuple[str, ...]:
        """Record names referenced by any entry, first occurrence order."""
        return tuple(
            dict.fromkeys(name for entry in self.entries for name in entry.selector.names())
        )


@dataclass(frozen=True)
class AttributeOverrideDirective:
    selector: Selector
    annotation: str


@dataclass(frozen=True)
class DeclaredTargets:
    """Read-only naming context computed once from the type-level directive.

    Attributes:
        source_name: Name of the source record. Always a valid target.
        entries: Names in the type-level list, in declaration order, with any
            duplicates kept so the resolver can report them.
        docs: Documentation overrides keyed by record name. May include the
            source name.
    """

    source_name: str
    entries: tuple[str, ...]
    docs: dict[str, str] = field(default_factory=dict)

    @property
    def projections(self) -> tuple[str, ...]:
        """Declared projection names: unique, ordered, source name excluded."""
        seen: set[str] = {self.source_name}
        names: list[str] = []
        for name in self.entries:
            if name not in seen:
                seen.add(name)
                names.append(name)
        return tuple(names)

    @property
    def emitted(self) -> tuple[str, ...]:
        return (self.source_name, *self.projections)

    def is_known(self, name: str) -> bool:
        return name == self.source_name or name in self.entries


@dataclass(frozen=True)
class ParsedField:
    index: int
    definition: FieldDefinition
    membership: MembershipDirective
    overrides: tuple[AttributeOverrideDirective, ...]
    passthrough: tuple[str, ...]


@dataclass(frozen=True)
class ParsedSource:
    """Directive parse of one source record.

    declared is None when the type-level directive is missing or malformed;
    field directives are still parsed in that case but nothing is emitted.
    """

    source: SourceDefinition
    declared: DeclaredTargets | None
    overrides: tuple[AttributeOverrideDirective, ...]
    passthrough: tuple[str, ...]
    fields: tuple[ParsedField, ...]


# ===--- Directive parsing ---=== #


def _split_doc(segment: list[Token]) -> tuple[str | None, list[Token]]:
    if segment and segment[0].kind == "string":
        return _unquote(segment[0].text), segment[1:]
    return None, segment


def _parse_name_entry(segment: list[Token], location: str) -> tuple[str, str | None]:
    doc, toks = _split_doc(segment)
    if len(toks) != 1 or not _IDENT_RE.match(toks[0].text):
        found = " ".join(t.text for t in segment)
        if not found:
            raise DirectiveSyntaxError("expected a record name, found nothing", location)
        raise DirectiveSyntaxError(f"expected a record name, found `{found}`", location)
    return toks[0].text, doc


def parse_name_list(tokens: list[Token], location: str) -> list[tuple[str, str | None]]:
    """Parse `Name1, "doc" Name2, ...` into (name, doc) pairs.

    Raises:
        DirectiveSyntaxError: On the first entry that is not a single name
            (optionally preceded by a documentation string).
    """
    return [_parse_name_entry(segment, location) for segment in _split_top_level(tokens)]


def parse_expression(tokens: list[Token], location: str) -> Selector:
    """Parse one selector expression.

    Grammar:
        expr := Name | not(expr, ...) | any(expr, ...) | all(expr, ...)

    not(A, B) is read as not(any(A, B)): it matches every record except A
    and B.

    Raises:
        DirectiveSyntaxError: Empty operand, unknown operator, unbalanced
            parentheses, or trailing tokens.
    """
    if not tokens:
        raise DirectiveSyntaxError("expected a record name, found nothing", location)
    head = tokens[0]
    if len(tokens) == 1 and head.kind == "ident" and _IDENT_RE.match(head.text):
        return NameExpr(head.text)

    found = " ".join(t.text for t in tokens)
    if head.kind != "ident" or len(tokens) < 3 or tokens[1].text != "(":
        raise DirectiveSyntaxError(
            f"expected a record name or expression, found `{found}`", location
        )
    operator = head.text
    if operator not in SELECTOR_OPERATORS:
        raise DirectiveSyntaxError(
            f"unexpected operator `{operator}`, expected `not`, `any`, or `all`", location
        )
    if _matching_close(tokens, 1) != len(tokens) - 1:
        raise DirectiveSyntaxError(f"expected `{operator}(...)`, found `{found}`", location)

    operands = tuple(
        parse_expression(segment, location) for segment in _split_top_level(tokens[2:-1])
    )
    if operator == "any":
        return AnyExpr(operands)
    if operator == "all":
        return AllExpr(operands)
    if not operands:
        raise DirectiveSyntaxError("`not()` needs at least one operand", location)
    if len(operands) == 1:
        return NotExpr(operands[0])
    return NotExpr(AnyExpr(operands))


def parse_selector(segments: list[list[Token]], location: str) -> Selector:
    """Parse the selector segments of a substruct_attr directive.

    Several segments are an implicit any(...), so `A, B` matches A or B.
    """
    selectors = tuple(parse_expression(segment, location) for segment in segments)
    if len(selectors) == 1:
        return selectors[0]
    return AnyExpr(selectors)


def parse_membership_entries(tokens: list[Token], location: str) -> list[MembershipEntry]:
    """Parse a field's `substruct(...)` body: expressions, each optionally documented."""
    entries: list[MembershipEntry] = []
    for segment in _split_top_level(tokens):
        doc, toks = _split_doc(segment)
        entries.append(MembershipEntry(parse_expression(toks, location), doc))
    return entries


def parse_attribute_override(annotation: str, location: str) -> AttributeOverrideDirective:
    """Parse `substruct_attr(<selector>, <annotation>)`.

    The injected annotation is the last top-level comma segment, captured
    verbatim from the source text.

    Raises:
        DirectiveSyntaxError: Malformed selector, missing annotation, or an
            injected annotation that is itself a directive.
    """
    body = _directive_body(annotation, DIRECTIVE_ATTRIBUTE, location)
    segments = _split_top_level(tokenize(body))
    if len(segments) < 2 or not segments[-1]:
        raise DirectiveSyntaxError(
            f"expected `{DIRECTIVE_ATTRIBUTE}(<selector>, <annotation>)`", location
        )
    injected_tokens = segments[-1]
    injected = body[injected_tokens[0].start:injected_tokens[-1].end]
    if is_directive(injected):
        raise DirectiveSyntaxError(
            f"`{injected}` cannot be injected: directives are not emitted", location
        )
    selector = parse_selector(segments[:-1], location)
    return AttributeOverrideDirective(selector=selector, annotation=injected)


def _check_targets(
    names: tuple[str, ...],
    declared: DeclaredTargets | None,
    location: str,
    sink: DiagnosticSink,
) -> tuple[str, ...]:
    # Without a declared list there is nothing to check against.
    if declared is None:
        return names
    known: list[str] = []
    for name in names:
        if declared.is_known(name):
            known.append(name)
        else:
            sink.report(UnknownTargetError(name, location))
    return tuple(known)


def _parse_override_into(
    annotation: str,
    location: str,
    declared: DeclaredTargets | None,
    sink: DiagnosticSink,
    overrides: list[AttributeOverrideDirective],
) -> None:
    try:
        directive = parse_attribute_override(annotation, location)
    except DirectiveSyntaxError as err:
        sink.report(err)
        return
    _check_targets(tuple(dict.fromkeys(directive.selector.names())), declared, location, sink)
    overrides.append(directive)


def parse_type_directives(
    source: SourceDefinition, sink: DiagnosticSink
) -> tuple[DeclaredTargets | None, tuple[AttributeOverrideDirective, ...], tuple[str, ...]]:
    """Parse the directives attached to the record itself.

    Returns:
        Tuple of (declared targets or None when missing/malformed, type-level
        override directives, pass-through type annotations).
    """
    entries: list[str] = []
    docs: dict[str, str] = {}
    found = False
    malformed = False

    for position, annotation in enumerate(source.annotations):
        if annotation_path(annotation) != DIRECTIVE_MEMBERSHIP:
            continue
        found = True
        location = _annotation_location(source.name, position)
        try:
            body = _directive_body(annotation, DIRECTIVE_MEMBERSHIP, location)
            parsed_entries = parse_name_list(tokenize(body), location)
        except DirectiveSyntaxError as err:
            sink.report(err)
            malformed = True
            continue
        for name, doc in parsed_entries:
            entries.append(name)
            if doc is not None:
                docs.setdefault(name, doc)

    if not found:
        sink.report(
            DirectiveSyntaxError(
                f"record `{source.name}` has no `{DIRECTIVE_MEMBERSHIP}(...)` directive",
                source.name,
                f"Declare the projections to create: {DIRECTIVE_MEMBERSHIP}(Name1, Name2)",
            )
        )

    declared = None
    if found and not malformed:
        declared = DeclaredTargets(source.name, tuple(entries), docs)

    overrides: list[AttributeOverrideDirective] = []
    passthrough: list[str] = []
    for position, annotation in enumerate(source.annotations):
        path = annotation_path(annotation)
        if path == DIRECTIVE_MEMBERSHIP:
            continue
        if path == DIRECTIVE_ATTRIBUTE:
            location = _annotation_location(source.name, position)
            _parse_override_into(annotation, location, declared, sink, overrides)
            continue
        passthrough.append(annotation)

    return declared, tuple(overrides), tuple(passthrough)


def parse_field_directives(
    record: str,
    index: int,
    definition: FieldDefinition,
    declared: DeclaredTargets | None,
    sink: DiagnosticSink,
) -> ParsedField:
    """Parse the directives of one field against the declared naming context."""
    owner = field_location(record, index, definition)
    entries: list[MembershipEntry] = []
    overrides: list[AttributeOverrideDirective] = []
    passthrough: list[str] = []

    for position, annotation in enumerate(definition.annotations):
        path = annotation_path(annotation)
        location = _annotation_location(owner, position)

        if path == DIRECTIVE_MEMBERSHIP:
            try:
                body = _directive_body(annotation, DIRECTIVE_MEMBERSHIP, location)
                parsed_entries = parse_membership_entries(tokenize(body), location)
            except DirectiveSyntaxError as err:
                sink.report(err)
                continue
            referenced = MembershipDirective(tuple(parsed_entries)).names
            _check_targets(referenced, declared, location, sink)
            entries.extend(parsed_entries)
        elif path == DIRECTIVE_ATTRIBUTE:
            _parse_override_into(annotation, location, declared, sink, overrides)
        else:
            passthrough.append(annotation)

    return ParsedField(
        index=index,
        definition=definition,
        membership=MembershipDirective(tuple(entries)),
        overrides=tuple(overrides),
        passthrough=tuple(passthrough),
    )


def parse_source_directives(source: SourceDefinition, sink: DiagnosticSink) -> ParsedSource:
    if source.kind not in PROJECTABLE_KINDS:
        sink.report(UnsupportedKindError(source.kind, source.name))

    declared, overrides, passthrough = parse_type_directives(source, sink)
    fields = tuple(
        parse_field_directives(source.name, index, definition, declared, sink)
        for index, definition in enumerate(source.fields)
    )
    return ParsedSource(
        source=source,
        declared=declared,
        overrides=overrides,
        passthrough=passthrough,
        fields=fields,
    )


# ===--- Projection resolution ---=== #

_TYPE_TOKEN_RE = re.compile(r"'?[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class ProjectionSpec:
    name: str
    fields: tuple[ParsedField, ...]
    generics: tuple[GenericParam, ...]


def type_tokens(type_expr: str) -> frozenset[str]:
    return frozenset(_TYPE_TOKEN_RE.findall(type_expr))


def used_generics(
    generics: tuple[GenericParam, ...], definitions: list[FieldDefinition]
) -> tuple[GenericParam, ...]:
    """Return the generic parameters referenced by any of the field types.

    A parameter counts as used when its name appears as a whole token in a
    field's type expression. Declaration order is kept.
    """
    tokens: set[str] = set()
    for definition in definitions:
        tokens |= type_tokens(definition.type_expr)
    return tuple(param for param in generics if param.name in tokens)


def resolve_projections(parsed: ParsedSource, sink: DiagnosticSink) -> tuple[ProjectionSpec, ...]:
    """Build one ProjectionSpec per declared projection name.

    Fields keep source order. Reports DuplicateProjectionError for every
    repeated name in the type-level list and GenericParameterUnusedError for
    every (projection, parameter) pair the projection's fields do not use.
    Returns an empty tuple when no declared list is available.

    Args:
        parsed: Output of parse_source_directives.
        sink: Diagnostic accumulator shared with the parse stage.

    Returns:
        Projection specs in declaration order.
    """
    declared = parsed.declared
    if declared is None:
        return ()

    seen: set[str] = set()
    for name in declared.entries:
        if name in seen:
            sink.report(DuplicateProjectionError(name, parsed.source.name))
        seen.add(name)

    specs: list[ProjectionSpec] = []
    for name in declared.projections:
        members = tuple(pf for pf in parsed.fields if pf.membership.includes(name))
        generics = used_generics(parsed.source.generics, [pf.definition for pf in members])
        used = {param.name for param in generics}
        for param in parsed.source.generics:
            if param.name not in used:
                sink.report(GenericParameterUnusedError(name, param.name, parsed.source.name))
        specs.append(ProjectionSpec(name=name, fields=members, generics=generics))
    return tuple(specs)


# ===--- Attribute filtering ---=== #


def apply_overrides(
    passthrough: tuple[str, ...],
    overrides: tuple[AttributeOverrideDirective, ...],
    target: str,
) -> tuple[str, ...]:
    """Pass-through annotations first, then matching injections in declaration order."""
    result = list(passthrough)
    for directive in overrides:
        if directive.selector.matches(target):
            result.append(directive.annotation)
    return tuple(result)


def apply_doc_override(annotations: tuple[str, ...], doc: str | None) -> tuple[str, ...]:
    """Replace the documentation of an annotation list.

    The override takes the place of the first doc annotation and any further
    doc annotations are dropped. Without an existing doc annotation the
    override is prepended. Other annotations keep their relative order.
    """
    if doc is None:
        return annotations
    replacement = format_doc_annotation(doc)
    result: list[str] = []
    placed = False
    for annotation in annotations:
        if annotation_path(annotation) == DOC_ANNOTATION_PATH:
            if not placed:
                result.append(replacement)
                placed = True
            continue
        result.append(annotation)
    if not placed:
        result.insert(0, replacement)
    return tuple(result)


def filter_field_annotations(parsed_field: ParsedField, target: str) -> tuple[str, ...]:
    """Final annotations of one field in one emitted record.

    The documentation override is applied last, so it also replaces any doc
    annotation injected by substruct_attr.
    """
    annotations = apply_overrides(parsed_field.passthrough, parsed_field.overrides, target)
    return apply_doc_override(annotations, parsed_field.membership.doc_for(target))


def filter_type_annotations(parsed: ParsedSource, target: str) -> tuple[str, ...]:
    docs = parsed.declared.docs if parsed.declared is not None else {}
    annotations = apply_overrides(parsed.passthrough, parsed.overrides, target)
    return apply_doc_override(annotations, docs.get(target))


# ===--- Definition emission ---=== #


@dataclass(frozen=True)
class GeneratedDefinition:
    """One emitted record: the source itself or one projection.

    fields carry their final annotation lists; source_indices gives the
    position of each field in the source record.
    """

    name: str
    kind: str
    generics: tuple[GenericParam, ...]
    annotations: tuple[str, ...]
    fields: tuple[FieldDefinition, ...]
    source_indices: tuple[int, ...]
    conversion: ConversionPlan | None = None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(
            definition.name if definition.name is not None else str(index)
            for index, definition in zip(self.source_indices, self.fields)
        )


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def build_conversion(source: SourceDefinition, spec: ProjectionSpec) -> ConversionPlan:
    included = {pf.index for pf in spec.fields}
    arguments = tuple(
        ConversionArgument(
            source_index=index,
            name=definition.name if definition.name is not None else f"arg{index}",
            type_expr=definition.type_expr,
        )
        for index, definition in enumerate(source.fields)
        if index not in included
    )
    return ConversionPlan(
        source=source.name,
        method=f"into_{to_snake_case(source.name)}",
        kept=tuple((pf.index, position) for position, pf in enumerate(spec.fields)),
        arguments=arguments,
    )


def _emit_field(parsed_field: ParsedField, target: str) -> FieldDefinition:
    return replace(
        parsed_field.definition,
        annotations=filter_field_annotations(parsed_field, target),
    )


def check_definition_invariants(source: SourceDefinition, definition: GeneratedDefinition) -> None:
    """Verify an emitted definition against its source.

    A failure here means an upstream stage produced inconsistent data, not
    that the user's directives were wrong.

    Raises:
        RuntimeError: On any violated invariant.
    """
    indices = definition.source_indices
    if len(indices) != len(definition.fields):
        raise RuntimeError(f"{definition.name}: field/index count mismatch")
    if any(b <= a for a, b in zip(indices, indices[1:])):
        raise RuntimeError(f"{definition.name}: fields are not in source order")
    for index, emitted in zip(indices, definition.fields):
        if not 0 <= index < len(source.fields):
            raise RuntimeError(f"{definition.name}: field index {index} out of range")
        original = source.fields[index]
        if (emitted.name, emitted.type_expr) != (original.name, original.type_expr):
            raise RuntimeError(f"{definition.name}: field {index} differs from source")

    listed = {param.name for param in definition.generics}
    for param in used_generics(source.generics, list(definition.fields)):
        if param.name not in listed:
            raise RuntimeError(
                f"{definition.name}: generic parameter {param.name} used but not declared"
            )

    annotation_lists = [definition.annotations] + [f.annotations for f in definition.fields]
    for annotations in annotation_lists:
        for annotation in annotations:
            if is_directive(annotation):
                raise RuntimeError(f"{definition.name}: directive `{annotation}` survived")


def emit_definitions(
    parsed: ParsedSource, projections: tuple[ProjectionSpec, ...]
) -> tuple[GeneratedDefinition, ...]:
    """Assemble the source definition followed by one definition per projection.

    Args:
        parsed: Directive parse of the source record.
        projections: Resolved projections, in declaration order.

    Returns:
        The source definition first, then projections in declaration order.

    Raises:
        RuntimeError: If no declared list is available or an emitted
            definition violates its invariants.
    """
    if parsed.declared is None:
        raise RuntimeError(
            f"{parsed.source.name}: cannot emit definitions without a declared list"
        )

    source = parsed.source
    definitions: list[GeneratedDefinition] = [
        GeneratedDefinition(
            name=source.name,
            kind=source.kind,
            generics=source.generics,
            annotations=filter_type_annotations(parsed, source.name),
            fields=tuple(_emit_field(pf, source.name) for pf in parsed.fields),
            source_indices=tuple(pf.index for pf in parsed.fields),
            conversion=source.conversion,
        )
    ]
    for spec in projections:
        definitions.append(
            GeneratedDefinition(
                name=spec.name,
                kind=source.kind,
                generics=spec.generics,
                annotations=filter_type_annotations(parsed, spec.name),
                fields=tuple(_emit_field(pf, spec.name) for pf in spec.fields),
                source_indices=tuple(pf.index for pf in spec.fields),
                conversion=build_conversion(source, spec),
            )
        )

    for definition in definitions:
        check_definition_invariants(source, definition)
    return tuple(definitions)


@dataclass(frozen=True)
class ExpansionResult:
    """Outcome of expanding one source record.

    definitions is empty whenever diagnostics is non-empty.
    """

    parsed: ParsedSource
    diagnostics: tuple[DirectiveError, ...]
    definitions: tuple[GeneratedDefinition, ...]

    @property
    def ok(self) -> bool:
        return not self.diagnostics

    def raise_for_diagnostics(self) -> None:
        if self.diagnostics:
            raise ExpansionError(self.diagnostics, self.parsed.source.name)


def expand(source: SourceDefinition) -> ExpansionResult:
    """Run parse -> resolve -> filter -> emit for one source record.

    Every diagnostic from parsing and resolution is collected before deciding
    whether to emit; nothing is emitted if any was reported.
    """
    sink = DiagnosticSink()
    parsed = parse_source_directives(source, sink)
    projections = resolve_projections(parsed, sink)
    if sink.has_errors:
        return ExpansionResult(parsed=parsed, diagnostics=sink.errors, definitions=())
    definitions = emit_definitions(parsed, projections)
    return ExpansionResult(parsed=parsed, diagnostics=(), definitions=definitions)


def expand_or_raise(source: SourceDefinition) -> tuple[GeneratedDefinition, ...]:
    result = expand(source)
    result.raise_for_diagnostics()
    return result.definitions


def uses_directives(source: SourceDefinition) -> bool:
    if any(is_directive(annotation) for annotation in source.annotations):
        return True
    return any(
        is_directive(annotation)
        for definition in source.fields
        for annotation in definition.annotations
    )


def passthrough_definition(source: SourceDefinition) -> GeneratedDefinition:
    """Wrap a record without directives so it can be written unchanged."""
    return GeneratedDefinition(
        name=source.name,
        kind=source.kind,
        generics=source.generics,
        annotations=source.annotations,
        fields=source.fields,
        source_indices=tuple(range(len(source.fields))),
        conversion=source.conversion,
    )


# ===--- Record registry XML ---=== #


class RecordFormatError(Exception):
    """The record registry XML does not follow the <records> schema."""


def _annotation_texts(el: ET.Element) -> tuple[str, ...]:
    return tuple((a.text or "").strip() for a in el.findall("annotation"))


def parse_field_element(el: ET.Element, record: str) -> FieldDefinition:
    type_expr = el.get("type")
    if not type_expr:
        label = el.get("name", "<positional>")
        raise RecordFormatError(f"field {record}.{label} is missing its type attribute")
    return FieldDefinition(
        name=el.get("name"),
        visibility=el.get("visibility", ""),
        type_expr=type_expr,
        annotations=_annotation_texts(el),
    )


def _index_attr(el: ET.Element, attr: str, record: str) -> int:
    raw = el.get(attr, "")
    if not raw.isdigit():
        raise RecordFormatError(
            f"conversion of {record}: <{el.tag}> has an invalid {attr} attribute: {raw!r}"
        )
    return int(raw)


def parse_conversion_element(el: ET.Element | None, record: str) -> ConversionPlan | None:
    """Read back the <conversion> element written for a projection."""
    if el is None:
        return None
    source = el.get("from")
    method = el.get("method")
    if not source or not method:
        raise RecordFormatError(f"conversion of {record} needs from and method attributes")
    kept = tuple(
        (_index_attr(k, "source-index", record), _index_attr(k, "index", record))
        for k in el.findall("keep")
    )
    arguments = tuple(
        ConversionArgument(
            source_index=_index_attr(a, "source-index", record),
            name=a.get("name", ""),
            type_expr=a.get("type", ""),
        )
        for a in el.findall("argument")
    )
    return ConversionPlan(source=source, method=method, kept=kept, arguments=arguments)


def parse_record_element(el: ET.Element) -> SourceDefinition:
    name = el.get("name", "")
    if not _IDENT_RE.match(name):
        raise RecordFormatError(f"record element has an invalid name: {name!r}")
    generics = tuple(
        GenericParam(name=g.get("name", ""), bounds=g.get("bounds"))
        for g in el.findall("generic")
    )
    return SourceDefinition(
        name=name,
        generics=generics,
        annotations=_annotation_texts(el),
        fields=tuple(parse_field_element(f, name) for f in el.findall("field")),
        kind=el.get("kind", "struct"),
        conversion=parse_conversion_element(el.find("conversion"), name),
    )


def load_records(root: ET.Element) -> list[SourceDefinition]:
    if root.tag != "records":
        raise RecordFormatError(f"expected a <records> root element, found <{root.tag}>")
    return [parse_record_element(el) for el in root.findall("record")]


def read_records(path: Path) -> list[SourceDefinition]:
    return load_records(ET.parse(path).getroot())


def definition_to_element(definition: GeneratedDefinition) -> ET.Element:
    el = ET.Element("record", {"name": definition.name, "kind": definition.kind})
    for param in definition.generics:
        attrs = {"name": param.name}
        if param.bounds:
            attrs["bounds"] = param.bounds
        ET.SubElement(el, "generic", attrs)
    for annotation in definition.annotations:
        ET.SubElement(el, "annotation").text = annotation
    for emitted in definition.fields:
        attrs = {}
        if emitted.name is not None:
            attrs["name"] = emitted.name
        if emitted.visibility:
            attrs["visibility"] = emitted.visibility
        attrs["type"] = emitted.type_expr
        field_el = ET.SubElement(el, "field", attrs)
        for annotation in emitted.annotations:
            ET.SubElement(field_el, "annotation").text = annotation

    plan = definition.conversion
    if plan is not None:
        conv = ET.SubElement(el, "conversion", {"from": plan.source, "method": plan.method})
        for source_index, index in plan.kept:
            ET.SubElement(
                conv, "keep", {"source-index": str(source_index), "index": str(index)}
            )
        for argument in plan.arguments:
            ET.SubElement(
                conv,
                "argument",
                {
                    "source-index": str(argument.source_index),
                    "name": argument.name,
                    "type": argument.type_expr,
                },
            )
    return el


def assemble_records_document(definitions: tuple[GeneratedDefinition, ...]) -> str:
    """Serialize definitions to a complete <records> document with trailing newline."""
    root = ET.Element("records")
    root.extend([definition_to_element(d) for d in definitions])
    ET.indent(root)
    body = ET.tostring(root, encoding="unicode")
    return '<?xml version="1.0" encoding="utf-8"?>\n' + body + "\n"


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing the generated registry.

    Attributes:
        filename: Filename written, e.g. "records.xml".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def write_records(
    output_dir: Path, filename: str, definitions: tuple[GeneratedDefinition, ...]
) -> FileWriteResult:
    """Write the generated registry to output_dir/filename.

    Creates output_dir (and any missing parents) first. OSError propagates.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    content = assemble_records_document(definitions)
    file_path = output_dir / filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Discovery ---=== #


@dataclass(frozen=True)
class RecordSummary:
    """One row of the --list-records table.

    projections is empty for records without a usable type-level directive.
    """

    name: str
    kind: str
    field_count: int
    projections: tuple[str, ...]
    uses_directives: bool


@dataclass(frozen=True)
class RecordDetail:
    """Full --info output for one record."""

    summary: RecordSummary
    definitions: tuple[GeneratedDefinition, ...]
    diagnostics: tuple[DirectiveError, ...]


def summarize_record(source: SourceDefinition) -> RecordSummary:
    declared, _, _ = parse_type_directives(source, DiagnosticSink())
    return RecordSummary(
        name=source.name,
        kind=source.kind,
        field_count=len(source.fields),
        projections=declared.projections if declared is not None else (),
        uses_directives=uses_directives(source),
    )


def gather_record_summaries(sources: list[SourceDefinition]) -> list[RecordSummary]:
    return [summarize_record(source) for source in sources]


def filter_records_by_text(
    summaries: list[RecordSummary], filter_text: str
) -> list[RecordSummary]:
    """Keep rows whose record or projection names contain filter_text (case-insensitive)."""
    needle = filter_text.lower()
    return [
        s
        for s in summaries
        if needle in s.name.lower() or any(needle in p.lower() for p in s.projections)
    ]


def gather_record_detail(sources: list[SourceDefinition], name: str) -> RecordDetail | None:
    for source in sources:
        if source.name != name:
            continue
        if not uses_directives(source):
            return RecordDetail(
                summary=summarize_record(source),
                definitions=(passthrough_definition(source),),
                diagnostics=(),
            )
        result = expand(source)
        return RecordDetail(
            summary=summarize_record(source),
            definitions=result.definitions,
            diagnostics=result.diagnostics,
        )
    return None


def format_generics(generics: tuple[GenericParam, ...]) -> str:
    if not generics:
        return ""
    parts = [f"{g.name}: {g.bounds}" if g.bounds else g.name for g in generics]
    return f"<{', '.join(parts)}>"


def format_records_table(summaries: list[RecordSummary], source_label: str) -> str:
    """Return the complete --list-records output as a string.

    Output format:

        2 records in records.xml:

          QueryParams  struct  3 fields    projections: LimitedQueryParams
          Plain        struct  1 field

    Column widths for name and kind are derived from the widest value.
    """
    n = len(summaries)
    lines = [f"{n} records in {source_label}:", ""]

    if not summaries:
        lines.append("")
        return "\n".join(lines)

    name_width = max(len(s.name) for s in summaries)
    kind_width = max(len(s.kind) for s in summaries)
    for s in summaries:
        noun = "field" if s.field_count == 1 else "fields"
        count_col = f"{s.field_count} {noun}"
        row = f"  {s.name.ljust(name_width)}  {s.kind.ljust(kind_width)}  {count_col:<10}"
        if s.projections:
            row += f"  projections: {', '.join(s.projections)}"
        lines.append(row.rstrip())

    lines.append("")
    return "\n".join(lines)


def format_definition(definition: GeneratedDefinition, indent: str = "  ") -> list[str]:
    lines = [f"{indent}@{annotation}" for annotation in definition.annotations]
    lines.append(f"{indent}{definition.name}{format_generics(definition.generics)}")
    for label, emitted in zip(definition.field_names, definition.fields):
        for annotation in emitted.annotations:
            lines.append(f"{indent}    @{annotation}")
        visibility = f"{emitted.visibility} " if emitted.visibility else ""
        lines.append(f"{indent}    {visibility}{label}: {emitted.type_expr}")
    if definition.conversion is not None and definition.conversion.arguments:
        missing = ", ".join(a.name for a in definition.conversion.arguments)
        lines.append(f"{indent}    -> {definition.conversion.method}({missing})")
    return lines


def format_record_detail(detail: RecordDetail) -> str:
    """Return the complete --info output for one record as a string.

    Output format:

        QueryParams (struct, 3 fields)
          Projections: LimitedQueryParams

          QueryParams
              pub name: String
              ...

          LimitedQueryParams
              pub name: String
              -> into_query_params(limit)

    When diagnostics were reported they are listed instead of definitions.
    """
    s = detail.summary
    noun = "field" if s.field_count == 1 else "fields"
    lines = [f"{s.name} ({s.kind}, {s.field_count} {noun})"]
    projections = ", ".join(s.projections) if s.projections else "none"
    lines.append(f"  Projections: {projections}")

    if detail.diagnostics:
        lines.append("")
        lines.append(f"  Diagnostics ({len(detail.diagnostics)}):")
        for error in detail.diagnostics:
            for text in format_diagnostic(error).splitlines():
                lines.append(f"    {text}")

    for definition in detail.definitions:
        lines.append("")
        lines.extend(format_definition(definition))

    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute the discovery command specified in config.

    "list-records" -> gather_record_summaries -> [filter] -> format_records_table
    "info"         -> gather_record_detail -> [None check] -> format_record_detail

    Raises:
        SystemExit(1): When config.command == "info" and the record is not in
            the registry.
    """
    sources = read_records(config.input_path)
    source_label = config.input_path.name

    if config.command == "list-records":
        summaries = gather_record_summaries(sources)
        if config.filter_text is not None:
            summaries = filter_records_by_text(summaries, config.filter_text)
        print(format_records_table(summaries, source_label), end="")

    elif config.command == "info":
        assert config.info_record is not None
        detail = gather_record_detail(sources, config.info_record)
        if detail is None:
            print(
                f"Error: record '{config.info_record}' not found in {source_label}",
                file=sys.stderr,
            )
            raise SystemExit(1)
        print(format_record_detail(detail), end="")


# ===--- Generation pipeline ---=== #


@dataclass(frozen=True)
class RecordOutcome:
    """What generation did with one input record.

    Attributes:
        name: Source record name.
        expanded: False when the record was written through unchanged.
        definitions: Definitions written for this record, source first.
    """

    name: str
    expanded: bool
    definitions: tuple[GeneratedDefinition, ...]

    @property
    def projections(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.definitions[1:]) if self.expanded else ()


def expand_records(
    sources: list[SourceDefinition], selected: frozenset[str] = frozenset()
) -> list[RecordOutcome]:
    """Expand every record that uses directives.

    When selected is non-empty only those records are expanded; every other
    record is written through unchanged.

    Raises:
        ExpansionError: Carrying the diagnostics of every failed record.
    """
    outcomes: list[RecordOutcome] = []
    diagnostics: list[DirectiveError] = []
    for source in sources:
        wanted = not selected or source.name in selected
        if not wanted or not uses_directives(source):
            outcomes.append(
                RecordOutcome(source.name, False, (passthrough_definition(source),))
            )
            continue
        result = expand(source)
        diagnostics.extend(result.diagnostics)
        outcomes.append(RecordOutcome(source.name, True, result.definitions))

    if diagnostics:
        raise ExpansionError(tuple(diagnostics))
    return outcomes


@dataclass(frozen=True)
class GenerationSummary:
    source_label: str
    outcomes: tuple[RecordOutcome, ...]
    file: FileWriteResult


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the post-generation console report.

    Output format:

        Projection records generated:

          Input:      records.xml
          Output:     /abs/out/records.xml

          Records:
            QueryParams  expanded     LimitedQueryParams
            Plain        unchanged

          Total: 3 records written (1 projection), 24 lines
    """
    lines = ["Projection records generated:", ""]
    lines.append(f"  Input:      {summary.source_label}")
    lines.append(f"  Output:     {summary.file.path}")
    lines.append("")
    lines.append("  Records:")

    name_width = max((len(o.name) for o in summary.outcomes), default=0)
    for outcome in summary.outcomes:
        status = "expanded" if outcome.expanded else "unchanged"
        row = f"    {outcome.name.ljust(name_width)}  {status:<11}{', '.join(outcome.projections)}"
        lines.append(row.rstrip())

    written = sum(len(o.definitions) for o in summary.outcomes)
    projections = sum(len(o.projections) for o in summary.outcomes)
    noun = "projection" if projections == 1 else "projections"
    lines.append("")
    lines.append(
        f"  Total: {written} records written ({projections} {noun}), "
        f"{summary.file.line_count:,} lines"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


def run_generate(config: GenerateConfig) -> FileWriteResult:
    """Load, expand and write the record registry named by config.

    Raises:
        ConfigError: UNKNOWN_RECORD when --record names a missing record.
        ExpansionError: Any record's directives failed to resolve.
        OSError / ET.ParseError / RecordFormatError: Unreadable input or
            failed write.
        RuntimeError: An emitted definition violated its invariants.
    """
    print(f"Parsing: {config.input_path}")
    sources = read_records(config.input_path)
    print(f"  Records: {len(sources)} loaded")

    known = {source.name for source in sources}
    missing = sorted(config.records - known)
    if missing:
        raise ConfigError(
            "UNKNOWN_RECORD",
            f"Record(s) not found in {config.input_path.name}: {', '.join(missing)}",
            "Run --list-records to see the available records.",
        )

    outcomes = expand_records(sources, config.records)
    definitions = tuple(d for outcome in outcomes for d in outcome.definitions)
    print(f"  Expanded: {sum(o.expanded for o in outcomes)} records")

    result = write_records(config.output_dir, config.input_path.name, definitions)
    print_generation_summary(
        GenerationSummary(
            source_label=config.input_path.name,
            outcomes=tuple(outcomes),
            file=result,
        )
    )
    return result


# ===--- Main ---=== #


def _exit_with_config_error(err: ConfigError) -> None:
    print(f"Config error [{err.code}]: {err.message}")
    if err.suggestion:
        print(f"Hint: {err.suggestion}")
    raise SystemExit(1) from err


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        _exit_with_config_error(err)

    if isinstance(config, DiscoveryConfig):
        run_discovery(config)
        return

    try:
        run_generate(config)
    except ConfigError as err:
        _exit_with_config_error(err)
    except ExpansionError as err:
        for diagnostic in err.diagnostics:
            print(format_diagnostic(diagnostic))
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError, RecordFormatError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
