from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from apps.toolpacks.loader import ToolpackLoader, ToolpackValidationError, _apply_json_pointer

KYVERNO_TOOLPACKS = Path(__file__).resolve().parents[3] / "apps" / "mcp_server" / "toolpacks"


def _write(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".json":
        path.write_text(json.dumps(payload), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def _definition(**overrides: object) -> dict[str, object]:
    base: dict[str, object] = {
        "id": "mcp.tool:sample.echo",
        "version": "1.0.0",
        "title": "Echo",
        "deterministic": True,
        "timeoutMs": 1000,
        "limits": {"maxInputBytes": 4096, "maxOutputBytes": 8192},
        "inputSchema": {"$ref": "schemas/shared.json#/$defs/input"},
        "outputSchema": {"type": "object"},
        "execution": {"kind": "python", "module": "tests.helpers.toolpack_samples:echo"},
    }
    base.update(overrides)
    return base


@pytest.fixture
def toolpack_dir(tmp_path: Path) -> Path:
    _write(
        tmp_path / "schemas" / "shared.json",
        {
            "$defs": {
                "text": {"type": "string", "minLength": 1},
                "input": {
                    "type": "object",
                    "properties": {"text": {"$ref": "#/$defs/text"}},
                    "required": ["text"],
                },
            }
        },
    )
    return tmp_path


def test_shipped_kyverno_toolpacks_load() -> None:
    loader = ToolpackLoader()
    loader.load_dir(KYVERNO_TOOLPACKS)
    tools = {toolpack.id: toolpack for toolpack in loader.list()}

    assert list(tools) == sorted(tools)
    assert set(tools) == {
        "mcp.tool:kyverno.apply.policies",
        "mcp.tool:kyverno.apply.request",
        "mcp.tool:kyverno.bundles.list",
        "mcp.tool:kyverno.show.violations",
    }
    assert tools["mcp.tool:kyverno.bundles.list"].deterministic is True
    assert tools["mcp.tool:kyverno.apply.policies"].deterministic is False
    for toolpack in tools.values():
        assert toolpack.entrypoint.startswith("apps.toolpacks.python.kyverno.")
        assert "$ref" not in json.dumps(toolpack.input_schema)


def test_apply_policies_describes_supported_sources() -> None:
    loader = ToolpackLoader()
    loader.load_dir(KYVERNO_TOOLPACKS)
    toolpack = loader.get("mcp.tool:kyverno.apply.policies")

    assert "URL" not in toolpack.description
    assert "policy directory" in toolpack.description
    namespace = toolpack.input_schema["properties"]["namespace"]["description"]
    assert "configured namespace mode" in namespace
    assert "empty or 'all'" not in namespace


def test_refs_are_inlined_across_files(toolpack_dir: Path) -> None:
    _write(toolpack_dir / "echo.tool.yaml", _definition())
    loader = ToolpackLoader()
    loader.load_dir(toolpack_dir)

    toolpack = loader.get("mcp.tool:sample.echo")
    assert toolpack.input_schema["properties"]["text"] == {"type": "string", "minLength": 1}
    assert toolpack.title == "Echo"
    assert toolpack.source_path.name == "echo.tool.yaml"


@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"id": "Bad Id"}, "dotted lowercase"),
        ({"version": "1.0"}, "major.minor.patch"),
        ({"version": "one"}, "semantic versioning"),
        ({"deterministic": "yes"}, "deterministic must be a boolean"),
        ({"timeoutMs": 0}, "timeoutMs must be a positive integer"),
        ({"limits": {"maxInputBytes": 10}}, "maxOutputBytes"),
        ({"execution": {"kind": "node", "module": "x:y"}}, "execution.kind"),
        ({"execution": {"kind": "python", "module": "no_callable"}}, "module:callable"),
        ({"inputSchema": {"$ref": "schemas/missing.json"}}, "reference not found"),
        ({"inputSchema": {"$ref": "schemas/shared.json#/$defs/absent"}}, "does not resolve"),
        ({"outputSchema": {"type": 12}}, "schema failed validation"),
    ],
)
def test_invalid_definitions(toolpack_dir: Path, overrides: dict, fragment: str) -> None:
    _write(toolpack_dir / "echo.tool.yaml", _definition(**overrides))
    with pytest.raises(ToolpackValidationError, match=fragment):
        ToolpackLoader().load_dir(toolpack_dir)


def test_missing_fields_are_listed(toolpack_dir: Path) -> None:
    definition = _definition()
    del definition["limits"]
    del definition["execution"]
    _write(toolpack_dir / "echo.tool.yaml", definition)
    with pytest.raises(ToolpackValidationError, match="limits, execution"):
        ToolpackLoader().load_dir(toolpack_dir)


def test_duplicate_ids_are_rejected(toolpack_dir: Path) -> None:
    _write(toolpack_dir / "a.tool.yaml", _definition())
    _write(toolpack_dir / "nested" / "b.tool.yaml", _definition())
    with pytest.raises(ToolpackValidationError, match="Duplicate toolpack id"):
        ToolpackLoader().load_dir(toolpack_dir)


def test_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(ToolpackValidationError, match="not found"):
        ToolpackLoader().load_dir(tmp_path / "absent")


def test_json_pointer_escapes() -> None:
    document = {"a/b": {"c~d": [10, 20]}}
    assert _apply_json_pointer(document, "/a~1b/c~0d/1", "tool") == 20
