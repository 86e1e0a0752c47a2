"""Tests for prompt assembly from ordered prompt parts."""

import pytest

from cascade.core.graph_model import GraphModel
from cascade.core.graph_schema import WorkflowGraph
from cascade.core.prompt_assembly import (
    PART_SEPARATOR,
    PromptAssembler,
    format_value,
    strip_code_fences,
)
from cascade.core.state import Database


def _assembler(db: Database, parts: list[dict]) -> tuple[PromptAssembler, list]:
    graph = WorkflowGraph.model_validate(
        {
            "id": "wf",
            "name": "Test",
            "nodes": [
                {"id": "a", "type": "dataset"},
                {"id": "b", "type": "dataset"},
                {"id": "p", "type": "promptTemplate", "config": {"promptParts": parts}},
            ],
        }
    )
    model = GraphModel(graph)
    return PromptAssembler(db, model), model.dependency_parts("p")


class TestStripCodeFences:
    def test_full_fence(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_dangling_fences(self):
        assert strip_code_fences("```python\nprint(1)") == "print(1)"
        assert strip_code_fences("done\n```") == "done"

    def test_plain_text_untouched(self):
        assert strip_code_fences("  plain  ") == "plain"


class TestFormatValue:
    def test_string_as_is(self):
        assert format_value("text") == "text"

    def test_json_indented_by_default(self):
        assert format_value({"a": 1}) == '{\n  "a": 1\n}'

    def test_compact(self):
        assert format_value({"a": [1, 2]}, indent=None) == '{"a":[1,2]}'


class TestAssemble:
    """Separator placement, dependency values and frameworks."""

    def test_separator_on_category_change(self, temp_db):
        assembler, parts = _assembler(
            temp_db,
            [{"type": "text", "value": "Summarize:"}, {"type": "dependency", "value": "a"}],
        )
        result = assembler.assemble(parts, {"a": "the data"})
        assert result.prompt == f"Summarize:{PART_SEPARATOR}the data"
        assert result.reference == "the data\n"

    def test_consecutive_text_parts_joined(self, temp_db):
        assembler, parts = _assembler(
            temp_db, [{"type": "text", "value": "Hello "}, {"type": "text", "value": "world"}]
        )
        assert assembler.assemble(parts, {}).prompt == "Hello world"

    def test_consecutive_dependencies_separated(self, temp_db):
        assembler, parts = _assembler(
            temp_db,
            [{"type": "dependency", "value": "a"}, {"type": "dependency", "value": "b"}],
        )
        result = assembler.assemble(parts, {"a": "one", "b": "two"})
        assert result.prompt == f"one{PART_SEPARATOR}two"

    def test_dependency_without_output_skipped(self, temp_db):
        assembler, parts = _assembler(
            temp_db,
            [
                {"type": "text", "value": "Intro"},
                {"type": "dependency", "value": "a"},
                {"type": "text", "value": " outro"},
            ],
        )
        assert assembler.assemble(parts, {}).prompt == "Intro outro"

    def test_structured_dependency_rendered_as_json(self, temp_db):
        assembler, parts = _assembler(temp_db, [{"type": "dependency", "value": "a"}])
        result = assembler.assemble(parts, {"a": {"revenue": 10}})
        assert result.prompt == '{\n  "revenue": 10\n}'

    def test_dependency_code_fences_stripped(self, temp_db):
        assembler, parts = _assembler(temp_db, [{"type": "dependency", "value": "a"}])
        assert assembler.assemble(parts, {"a": "```\nbody\n```"}).prompt == "body"

    def test_framework_header(self, temp_db):
        temp_db.save_framework("fw-1", "Rating Scale", '{"levels": 5}')
        assembler, parts = _assembler(
            temp_db, [{"type": "text", "value": "Rate it."}, {"type": "framework", "value": "fw-1"}]
        )
        result = assembler.assemble(parts, {})
        assert result.prompt == 'Rate it.\n\n--- Rating Scale ---\n{"levels": 5}\n'
        assert "[Framework: Rating Scale]" in result.reference

    def test_missing_framework_marker(self, temp_db):
        assembler, parts = _assembler(temp_db, [{"type": "framework", "value": "fw-missing"}])
        assert assembler.assemble(parts, {}).prompt == "\n[Framework not found: fw-missing]\n"

    def test_system_prompt_part_becomes_system_message(self, temp_db):
        temp_db.save_system_prompt("sp-1", "Analyst", "You are an analyst.")
        assembler, parts = _assembler(
            temp_db,
            [
                {"type": "text", "value": "ignored body", "systemPromptId": "sp-1"},
                {"type": "text", "value": "Question?"},
            ],
        )
        result = assembler.assemble(parts, {})
        assert result.system_prompt == "You are an analyst."
        assert result.prompt == "Question?"
        assert result.messages() == [
            {"role": "system", "content": "You are an analyst."},
            {"role": "user", "content": "Question?"},
        ]

    def test_evaluation_reference_falls_back_to_prompt(self, temp_db):
        assembler, parts = _assembler(temp_db, [{"type": "text", "value": " Just text "}])
        assert assembler.assemble(parts, {}).evaluation_reference == "Just text"


class TestAssemblePlain:
    def test_no_separators_and_compact_json(self, temp_db):
        assembler, parts = _assembler(
            temp_db,
            [
                {"type": "text", "value": "q="},
                {"type": "dependency", "value": "a"},
                {"type": "dependency", "value": "b"},
            ],
        )
        assert assembler.assemble_plain(parts, {"a": {"x": 1}, "b": "!"}) == 'q={"x":1}!'


@pytest.mark.parametrize(
    "deps,expected",
    [({}, "Hi"), ({"a": "A"}, f"Hi{PART_SEPARATOR}A")],
)
def test_assemble_with_and_without_dependency(temp_db, deps, expected):
    assembler, parts = _assembler(
        temp_db, [{"type": "text", "value": "Hi"}, {"type": "dependency", "value": "a"}]
    )
    assert assembler.assemble(parts, deps).prompt == expected
