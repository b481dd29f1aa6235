import json

import pytest

from skillgate.exceptions import ManifestError
from skillgate.manifest import (
    manifest_from_json,
    normalize_tool_name,
    parse_manifest_text,
    validate_manifest_data,
)


def _manifest_data(**overrides):
    data = {
        "id": "pdf-tools",
        "name": "PDF Tools",
        "version": "1.2.0",
        "entry": "main.py",
        "tools": [
            {
                "name": "extract_pdf_text",
                "description": "Extract text from a PDF.",
                "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
                "aliases": ["pdf_text"],
            }
        ],
        "runtime": {"type": "python", "timeout_ms": 20000},
        "platforms": ["linux"],
        "risk_level": "medium",
    }
    data.update(overrides)
    return data


def test_parse_yaml_manifest():
    raw = """
id: hello
name: Hello
version: "0.1.0"
entry: run.sh
tools:
  - name: say_hello
    description: Greets someone.
    input_schema:
      type: object
runtime:
  type: shell
platforms: [linux, darwin]
"""
    manifest = parse_manifest_text(raw, "hello/manifest.yaml")

    assert manifest.id == "hello"
    assert manifest.version == "0.1.0"
    assert manifest.runtime.type == "shell"
    assert manifest.risk_level == "low"
    assert manifest.capabilities == []
    assert manifest.tools[0].name == "say_hello"


def test_parse_json_manifest_text():
    manifest = parse_manifest_text(json.dumps(_manifest_data()), "pdf/manifest.json")
    assert manifest.risk_level == "medium"
    assert manifest.runtime.timeout_ms == 20000


def test_duplicate_tool_names_differing_by_case_are_rejected():
    tools = [
        {"name": "Search", "description": "a", "input_schema": {}},
        {"name": "search", "description": "b", "input_schema": {}},
    ]
    with pytest.raises(ManifestError, match="Duplicate tool name"):
        validate_manifest_data(_manifest_data(tools=tools), "dup/manifest.yaml")


@pytest.mark.parametrize(
    "overrides",
    [
        {"risk_level": "extreme"},
        {"runtime": {"type": "ruby"}},
        {"tools": []},
        {"platforms": []},
        {"runtime": {"type": "python", "timeout_ms": 500}},
        {"id": ""},
    ],
)
def test_invalid_manifest_fields_are_rejected(overrides):
    with pytest.raises(ManifestError) as exc_info:
        validate_manifest_data(_manifest_data(**overrides), "bad/manifest.yaml")
    assert exc_info.value.source_name == "bad/manifest.yaml"


def test_empty_and_unparseable_text_raise_manifest_error():
    with pytest.raises(ManifestError, match="empty"):
        parse_manifest_text("   \n", "empty.yaml")
    with pytest.raises(ManifestError, match="Failed to parse"):
        parse_manifest_text("id: [unclosed", "broken.yaml")
    with pytest.raises(ManifestError):
        parse_manifest_text("- just\n- a list\n", "list.yaml")


def test_serialized_manifest_reparses_to_equal_manifest():
    original = validate_manifest_data(_manifest_data(), "pdf/manifest.yaml")
    reparsed = parse_manifest_text(original.to_json(), "pdf/manifest.json")
    assert reparsed == original
    assert manifest_from_json(original.to_json()) == original


def test_manifest_from_json_tolerates_garbage():
    assert manifest_from_json(None) is None
    assert manifest_from_json("not json") is None
    assert manifest_from_json("[1, 2]") is None
    assert manifest_from_json(json.dumps({"id": "x"})) is None


def test_find_tool_matches_name_and_alias_case_insensitively():
    manifest = validate_manifest_data(_manifest_data(), "pdf/manifest.yaml")
    assert manifest.find_tool("EXTRACT_PDF_TEXT").name == "extract_pdf_text"
    assert manifest.find_tool(" Pdf_Text ").name == "extract_pdf_text"
    assert manifest.find_tool("missing") is None
    assert normalize_tool_name("  Mixed_Case ") == "mixed_case"
