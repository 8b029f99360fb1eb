from __future__ import annotations

from pathlib import Path

import schemagen


def _make_derived() -> list[schemagen.DerivedType]:
    return [
        schemagen.DerivedType(name="Pet", shape="named record", symbol="models.Pet"),
        schemagen.DerivedType(name="Owner", shape="named record", symbol="models.Owner"),
        schemagen.DerivedType(name="Coord", shape="positional record", symbol=None),
        schemagen.DerivedType(name="Flag", shape="unit marker", symbol=None),
        schemagen.DerivedType(name="Kind", shape="tagged union", symbol="models.Kind"),
    ]


def _make_components(count: int) -> schemagen.Components:
    components = schemagen.Components()
    for index in range(count):
        components.insert(f"models.T{index}", {"type": "object"})
    return components


def test_build_generation_summary_counts_shapes() -> None:
    summary = schemagen.build_generation_summary(
        "models", _make_derived(), _make_components(4), None
    )

    assert summary.counts == schemagen.ShapeCounts(
        named_records=2,
        positional_records=1,
        unit_markers=1,
        tagged_unions=1,
    )
    assert summary.counts.total == 5
    assert summary.registered == 4
    assert summary.inline == 2
    assert summary.output is None


def test_format_generation_summary_renders_fixed_layout() -> None:
    summary = schemagen.build_generation_summary(
        "models", _make_derived(), _make_components(3), Path("build/openapi.json")
    )

    assert schemagen.format_generation_summary(summary).splitlines() == [
        "Module: models",
        "",
        "Types derived: 5",
        "  named records:      2",
        "  positional records: 1",
        "  unit markers:       1",
        "  tagged unions:      1",
        "",
        "Schemas registered: 3",
        "Inline schemas:     2",
        f"Output: {Path('build/openapi.json')}",
    ]


def test_print_generation_summary_writes_formatted_text(capsys) -> None:
    summary = schemagen.build_generation_summary("models", [], _make_components(0), None)

    schemagen.print_generation_summary(summary)

    out = capsys.readouterr().out
    assert out == schemagen.format_generation_summary(summary) + "\n"
    assert "Types derived: 0" in out
    assert "Output: stdout" in out


def test_format_types_table_aligns_columns() -> None:
    table = schemagen.format_types_table(_make_derived()[:3])

    assert table.splitlines() == [
        "Pet    named record       models.Pet",
        "Owner  named record       models.Owner",
        "Coord  positional record  (inline)",
    ]


def test_format_types_table_handles_empty_module() -> None:
    assert schemagen.format_types_table([]) == "No @to_schema classes found."


def test_build_document_wraps_components() -> None:
    components = _make_components(1)

    assert schemagen.build_document(components) == {
        "openapi": "3.1.0",
        "components": {"schemas": {"models.T0": {"type": "object"}}},
    }
    assert schemagen.render_document(components, 0) == (
        '{"openapi": "3.1.0", "components": {"schemas": {"models.T0": {"type": "object"}}}}'
    )
