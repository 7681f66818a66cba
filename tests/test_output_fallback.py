from __future__ import annotations

import allure
import pytest

from taskloop.coordinator.idea_workflow import parse_idea_output
from taskloop.coordinator.output_fallback import (
    LOOSE_SCAN_TAIL_CHARS,
    parse_json_object,
    parse_trailing_json_block,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Agent Output Parsing"),
]


def test_trailing_block_prefers_last_json_fence() -> None:
    text = """
Exploring.
```json
{"assumptions": {"customer": "old"}}
```
Iterated.
```json
{"assumptions": {"customer": "new"}, "variants": []}
```
""".strip()

    payload = parse_trailing_json_block(text, expected_keys=("assumptions", "variants"))

    assert payload == {"assumptions": {"customer": "new"}, "variants": []}


def test_trailing_block_falls_back_to_bare_object_with_expected_key() -> None:
    text = 'Log {"step": 1}\nDone: {"variants": [{"name": "A"}], "implemented": 0} bye'

    payload = parse_trailing_json_block(text, expected_keys=("assumptions", "variants"))

    assert payload["variants"] == [{"name": "A"}]
    assert payload["implemented"] == 0


def test_trailing_block_ignores_objects_without_expected_keys() -> None:
    text = 'progress {"step": 1} and {"other": true}'

    assert parse_trailing_json_block(text, expected_keys=("variants",)) == {}


def test_trailing_block_malformed_fence_yields_empty() -> None:
    text = "```json\n{\"variants\": [\n```"

    assert parse_trailing_json_block(text, expected_keys=("variants",)) == {}


def test_parse_json_object_recovers_from_prose_wrapping() -> None:
    assert parse_json_object('{"shouldCapture": false}') == {"shouldCapture": False}
    assert parse_json_object('Sure!\n```\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("   ") is None
    assert parse_json_object("no braces here") is None


def test_parse_idea_output_full_block() -> None:
    text = """
Built the CLI variant.
```json
{
  "assumptions": {"customer": "indie devs", "problem": "context switching"},
  "variants": [
    {"name": "CLI", "description": "Terminal", "pros": ["fast"], "cons": []},
    {"name": "Web", "description": "Browser"}
  ],
  "implemented": 0,
  "epicId": "epic-42"
}
```
""".strip()

    output = parse_idea_output(text)

    assert output.assumptions == {"customer": "indie devs", "problem": "context switching"}
    assert output.variants is not None
    assert [variant.name for variant in output.variants] == ["CLI", "Web"]
    assert output.variants[0].pros == ["fast"]
    assert output.implemented == 0
    assert output.epic_id == "epic-42"


def test_parse_idea_output_malformed_is_empty_not_error() -> None:
    output = parse_idea_output("crashed halfway ```json {oops ```")

    assert output.assumptions is None
    assert output.variants is None
    assert output.implemented is None
    assert output.epic_id is None


def test_parse_idea_output_rejects_invalid_implemented_values() -> None:
    assert parse_idea_output('{"variants": [], "implemented": -1}').implemented is None
    assert parse_idea_output('{"variants": [], "implemented": true}').implemented is None
    assert parse_idea_output('{"variants": [], "implemented": "2"}').implemented is None


@pytest.mark.parametrize(
    ("raw_pros", "expected"),
    [
        ("3", []),
        ("null", []),
        ('{"speed": "fast"}', []),
        ('"fast"', ["fast"]),
        ('"  "', []),
        ('["fast", 7, "cheap"]', ["fast", "cheap"]),
    ],
)
def test_parse_idea_output_coerces_loose_pros(raw_pros: str, expected: list[str]) -> None:
    block = f'{{"assumptions": {{}}, "variants": [{{"name": "A", "pros": {raw_pros}}}]}}'
    text = f"```json\n{block}\n```"

    output = parse_idea_output(text)

    assert output.variants is not None
    assert output.variants[0].pros == expected
    assert output.variants[0].cons == []


def test_parse_idea_output_survives_deeply_nested_block() -> None:
    nested = "[" * 100_000 + "]" * 100_000

    output = parse_idea_output(f'```json\n{{"variants": {nested}}}\n```')

    assert output.variants is None


def test_trailing_block_loose_scan_only_reads_the_tail() -> None:
    early = '{"variants": [{"name": "Early"}]}'
    noise = "{ " * (LOOSE_SCAN_TAIL_CHARS // 2)

    assert parse_trailing_json_block(early + noise, expected_keys=("variants",)) == {}
    assert parse_trailing_json_block(noise + early, expected_keys=("variants",)) == {
        "variants": [{"name": "Early"}],
    }
