import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import substruct_gen as sg  # noqa: E402


QUERY_PARAMS_XML = """\
<records>
  <record name="QueryParams" kind="struct">
    <annotation>substruct(LimitedQueryParams)</annotation>
    <annotation>derive(Clone, Debug)</annotation>
    <field name="name" visibility="pub" type="String">
      <annotation>substruct(LimitedQueryParams)</annotation>
    </field>
    <field name="parent" visibility="pub" type="Option&lt;String&gt;">
      <annotation>substruct(LimitedQueryParams)</annotation>
    </field>
    <field name="limit" visibility="pub" type="usize" />
  </record>
  <record name="Plain" kind="struct">
    <annotation>derive(Debug)</annotation>
    <field name="id" visibility="pub" type="u64" />
  </record>
</records>
"""


@pytest.fixture
def make_field() -> Callable[..., sg.FieldDefinition]:
    def _make_field(
        name: str | None,
        type_expr: str = "String",
        *annotations: str,
        visibility: str = "pub",
    ) -> sg.FieldDefinition:
        return sg.FieldDefinition(
            name=name,
            visibility=visibility,
            type_expr=type_expr,
            annotations=tuple(annotations),
        )

    return _make_field


@pytest.fixture
def make_source() -> Callable[..., sg.SourceDefinition]:
    def _make_source(
        name: str,
        fields: list[sg.FieldDefinition],
        annotations: tuple[str, ...] = (),
        generics: tuple[str, ...] = (),
        kind: str = "struct",
    ) -> sg.SourceDefinition:
        return sg.SourceDefinition(
            name=name,
            generics=tuple(sg.GenericParam(g) for g in generics),
            annotations=annotations,
            fields=tuple(fields),
            kind=kind,
        )

    return _make_source


@pytest.fixture
def write_records(tmp_path: Path) -> Callable[[str], Path]:
    def _write_records(xml: str = QUERY_PARAMS_XML, filename: str = "records.xml") -> Path:
        path = tmp_path / filename
        path.write_text(xml, encoding="utf-8")
        return path

    return _write_records


@pytest.fixture
def existing_paths(write_records: Callable[[str], Path], tmp_path: Path) -> dict[str, Path]:
    return {
        "input": write_records(),
        "output_dir": tmp_path / "out",
    }


@pytest.fixture
def make_args(existing_paths: dict[str, Path]) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "input": existing_paths["input"],
            "output_dir": existing_paths["output_dir"],
            "record": None,
            "list_records": False,
            "info": None,
            "filter": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
