from collections.abc import Callable
from pathlib import Path

import pytest

import substruct_gen as sg


TWO_BROKEN_XML = """\
<records>
  <record name="Unknown">
    <annotation>substruct(Small)</annotation>
    <field name="a" type="u8">
      <annotation>substruct(Smal)</annotation>
    </field>
  </record>
  <record name="Unused">
    <generic name="T" />
    <annotation>substruct(Small)</annotation>
    <field name="a" type="u8">
      <annotation>substruct(Small)</annotation>
    </field>
    <field name="b" type="T" />
  </record>
  <record name="Fine">
    <field name="a" type="u8" />
  </record>
</records>
"""


def _generate_config(input_path: Path, output_dir: Path, records: set[str] | None = None) -> sg.GenerateConfig:
    return sg.GenerateConfig(
        input_path=input_path,
        output_dir=output_dir,
        records=frozenset(records or ()),
    )


def test_expand_records_expands_directive_records_only(
    write_records: Callable[..., Path],
) -> None:
    outcomes = sg.expand_records(sg.read_records(write_records()))

    assert [(o.name, o.expanded) for o in outcomes] == [("QueryParams", True), ("Plain", False)]
    assert outcomes[0].projections == ("LimitedQueryParams",)
    assert [d.name for d in outcomes[1].definitions] == ["Plain"]


def test_expand_records_leaves_unselected_records_unchanged(
    write_records: Callable[..., Path],
) -> None:
    outcomes = sg.expand_records(sg.read_records(write_records()), frozenset({"Plain"}))

    assert outcomes[0].expanded is False
    assert outcomes[0].definitions[0].annotations[0] == "substruct(LimitedQueryParams)"


def test_expand_records_collects_diagnostics_across_records(
    write_records: Callable[..., Path],
) -> None:
    sources = sg.read_records(write_records(TWO_BROKEN_XML))

    with pytest.raises(sg.ExpansionError) as exc_info:
        sg.expand_records(sources)

    codes = [d.code for d in exc_info.value.diagnostics]
    assert codes == ["UNKNOWN_TARGET", "GENERIC_PARAMETER_UNUSED"]
    assert str(exc_info.value) == "2 directive error(s)"


def test_run_generate_writes_registry_and_prints_summary(
    write_records: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    output_dir = tmp_path / "generated"

    result = sg.run_generate(_generate_config(write_records(), output_dir))

    assert result.path == (output_dir / "records.xml").resolve()
    written = sg.read_records(result.path)
    assert [s.name for s in written] == ["QueryParams", "LimitedQueryParams", "Plain"]

    out = capsys.readouterr().out
    assert "Parsing: " in out
    assert "  Records: 2 loaded" in out
    assert "  Expanded: 1 records" in out
    assert "Projection records generated:" in out
    assert "  Total: 3 records written (1 projection)" in out


def test_run_generate_rejects_unknown_record(
    write_records: Callable[..., Path], tmp_path: Path
) -> None:
    config = _generate_config(write_records(), tmp_path / "out", {"Missing", "Plain"})

    with pytest.raises(sg.ConfigError) as exc_info:
        sg.run_generate(config)

    assert exc_info.value.code == "UNKNOWN_RECORD"
    assert "Missing" in exc_info.value.message
    assert not (tmp_path / "out").exists()


def test_run_generate_does_not_write_on_expansion_error(
    write_records: Callable[..., Path], tmp_path: Path
) -> None:
    output_dir = tmp_path / "out"

    with pytest.raises(sg.ExpansionError):
        sg.run_generate(_generate_config(write_records(TWO_BROKEN_XML), output_dir))

    assert not output_dir.exists()


def test_main_generate_succeeds(
    write_records: Callable[..., Path], tmp_path: Path
) -> None:
    output_dir = tmp_path / "generated"

    sg.main(["--input", str(write_records()), "--output-dir", str(output_dir)])

    assert (output_dir / "records.xml").is_file()


def test_main_prints_every_diagnostic_and_exits_1(
    write_records: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    argv = ["--input", str(write_records(TWO_BROKEN_XML)), "--output-dir", str(tmp_path / "out")]

    with pytest.raises(SystemExit) as exc_info:
        sg.main(argv)

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "Unknown.a (annotation 0): error[UNKNOWN_TARGET]" in out
    assert "Unused: error[GENERIC_PARAMETER_UNUSED]: generic parameter `T` is not used in Small" in out
    assert "Error: 2 directive error(s)" in out


def test_main_reports_unknown_record_as_config_error(
    write_records: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    argv = ["--input", str(write_records()), "--output-dir", str(tmp_path / "out"), "--record", "Nope"]

    with pytest.raises(SystemExit) as exc_info:
        sg.main(argv)

    assert exc_info.value.code == 1
    assert "Config error [UNKNOWN_RECORD]" in capsys.readouterr().out


@pytest.mark.parametrize(
    "xml",
    ["<records><record name='A'></records>", "<registry />"],
)
def test_main_reports_unreadable_registry(
    xml: str,
    write_records: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    argv = ["--input", str(write_records(xml)), "--output-dir", str(tmp_path / "out")]

    with pytest.raises(SystemExit) as exc_info:
        sg.main(argv)

    assert exc_info.value.code == 1
    assert "Error: " in capsys.readouterr().out
