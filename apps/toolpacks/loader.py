"""Load and validate ``*.tool.yaml`` toolpack definitions.

A definition names a python entrypoint (``module:callable``), its input and
output JSON schemas, and the guardrails the MCP service enforces around it.
Schemas may be split across files; ``{"$ref": "file.json#/pointer"}`` nodes
are inlined at load time so the executor only ever sees plain schemas.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import validators
from jsonschema.exceptions import SchemaError
from packaging.version import InvalidVersion, Version

__all__ = ["Toolpack", "ToolpackLoader", "ToolpackValidationError"]

LOGGER = logging.getLogger(__name__)

_TOOL_ID = re.compile(r"^[a-z0-9]+(?:\.[a-z0-9]+)*:[a-z0-9]+(?:\.[a-z0-9]+)*$|^[a-z0-9]+(?:\.[a-z0-9]+)+$")
_REQUIRED_FIELDS = (
    "id",
    "version",
    "deterministic",
    "timeoutMs",
    "limits",
    "inputSchema",
    "outputSchema",
    "execution",
)
_LIMIT_KEYS = ("maxInputBytes", "maxOutputBytes")


class ToolpackValidationError(Exception):
    """Raised when a toolpack definition fails validation."""


@dataclass(frozen=True)
class Toolpack:
    """A tool exposed by the server: schemas, guardrails and a python entrypoint."""

    id: str
    version: str
    title: str
    description: str
    deterministic: bool
    timeout_ms: int
    limits: Mapping[str, Any]
    input_schema: Mapping[str, Any]
    output_schema: Mapping[str, Any]
    execution: Mapping[str, Any]
    source_path: Path

    @property
    def entrypoint(self) -> str:
        return str(self.execution["module"])

    @classmethod
    def from_dict(cls, data: Any, source_path: Path, *, resolver: _SchemaResolver) -> Toolpack:
        if not isinstance(data, Mapping):
            raise ToolpackValidationError(
                f"Expected mapping for toolpack {source_path}, got {type(data).__name__}"
            )
        missing = [name for name in _REQUIRED_FIELDS if name not in data]
        if missing:
            raise ToolpackValidationError(
                f"Toolpack {source_path} missing required field(s): {', '.join(missing)}"
            )

        tool_id = data["id"]
        if not isinstance(tool_id, str) or not _TOOL_ID.fullmatch(tool_id):
            raise ToolpackValidationError(
                f"Toolpack {source_path} id {tool_id!r} must use dotted lowercase segments "
                "(e.g. 'mcp.tool:kyverno.apply.policies')"
            )
        check = _Checker(tool_id)
        version = check.semver(data["version"])
        deterministic = check.that(
            data["deterministic"], isinstance(data["deterministic"], bool), "deterministic must be a boolean"
        )
        timeout_ms = check.positive_int(data["timeoutMs"], "timeoutMs")
        limits = check.mapping(data["limits"], "limits")
        for key in _LIMIT_KEYS:
            check.positive_int(limits.get(key), f"limits['{key}']")

        return cls(
            id=tool_id,
            version=version,
            title=str(data.get("title") or tool_id),
            description=str(data.get("description") or ""),
            deterministic=deterministic,
            timeout_ms=timeout_ms,
            limits=dict(limits),
            input_schema=resolver.schema(data["inputSchema"], source_path.parent, tool_id),
            output_schema=resolver.schema(data["outputSchema"], source_path.parent, tool_id),
            execution=check.execution(data["execution"]),
            source_path=source_path,
        )


class ToolpackLoader:
    """Load ``*.tool.yaml`` definitions from a directory tree."""

    def __init__(self) -> None:
        self._toolpacks: dict[str, Toolpack] = {}

    def load_dir(self, directory: Path | str) -> None:
        base_dir = Path(directory).expanduser().resolve()
        if not base_dir.is_dir():
            raise ToolpackValidationError(f"Toolpacks directory not found: {base_dir}")

        resolver = _SchemaResolver()
        loaded: dict[str, Toolpack] = {}
        for path in sorted(base_dir.rglob("*.tool.yaml")):
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ToolpackValidationError(f"Failed to parse YAML for toolpack {path}: {exc}") from exc
            toolpack = Toolpack.from_dict(data, path, resolver=resolver)
            if toolpack.id in loaded:
                raise ToolpackValidationError(
                    f"Duplicate toolpack id '{toolpack.id}' found in {path} "
                    f"(first defined in {loaded[toolpack.id].source_path})"
                )
            loaded[toolpack.id] = toolpack

        LOGGER.debug("Loaded %d toolpack(s) from %s", len(loaded), base_dir)
        self._toolpacks = dict(sorted(loaded.items()))

    def list(self) -> list[Toolpack]:
        return list(self._toolpacks.values())

    def get(self, tool_id: str) -> Toolpack:
        return self._toolpacks[tool_id]


class _Checker:
    """Field checks whose errors name the tool being loaded."""

    def __init__(self, tool_id: str) -> None:
        self.tool_id = tool_id

    def fail(self, message: str) -> ToolpackValidationError:
        return ToolpackValidationError(f"Toolpack {self.tool_id} {message}")

    def that(self, value: Any, condition: bool, message: str) -> Any:
        if not condition:
            raise self.fail(message)
        return value

    def positive_int(self, value: Any, name: str) -> int:
        ok = isinstance(value, int) and not isinstance(value, bool) and value > 0
        return self.that(value, ok, f"{name} must be a positive integer")

    def mapping(self, value: Any, name: str) -> Mapping[str, Any]:
        if value is None:
            return {}
        return self.that(value, isinstance(value, Mapping), f"field '{name}' must be a mapping")

    def semver(self, value: Any) -> str:
        if not isinstance(value, str) or not value:
            raise self.fail("version must be a non-empty string")
        try:
            parsed = Version(value)
        except InvalidVersion as exc:
            raise self.fail(f"version must follow semantic versioning: {exc}") from exc
        if len(parsed.release) != 3:
            raise self.fail(f"version '{value}' must include major.minor.patch")
        return value

    def execution(self, value: Any) -> dict[str, Any]:
        execution = self.mapping(value, "execution")
        if execution.get("kind") != "python":
            raise self.fail("execution.kind must be 'python'")
        module_name, sep, attr = str(execution.get("module") or "").partition(":")
        if not sep or not module_name or not attr:
            raise self.fail("execution.module must use 'module:callable' format")
        return dict(execution)


class _SchemaResolver:
    """Inline ``$ref`` nodes, caching every referenced file fragment."""

    def __init__(self) -> None:
        self._cache: dict[tuple[Path, str], Any] = {}

    def schema(self, spec: Any, base_dir: Path, tool_id: str) -> dict[str, Any]:
        if not isinstance(spec, Mapping):
            raise ToolpackValidationError(f"Toolpack {tool_id} schema definition must be a mapping")
        resolved = self._inline(spec, base_dir, tool_id, document=spec)
        try:
            validators.validator_for(resolved).check_schema(resolved)
        except SchemaError as exc:
            raise ToolpackValidationError(f"Toolpack {tool_id} schema failed validation: {exc.message}") from exc
        return resolved

    def _inline(self, node: Any, base_dir: Path, tool_id: str, *, document: Any) -> Any:
        if isinstance(node, Mapping):
            if set(node) == {"$ref"}:
                return self._follow(node["$ref"], base_dir, tool_id, document=document)
            return {key: self._inline(value, base_dir, tool_id, document=document) for key, value in node.items()}
        if isinstance(node, list):
            return [self._inline(item, base_dir, tool_id, document=document) for item in node]
        return node

    def _follow(self, reference: Any, base_dir: Path, tool_id: str, *, document: Any) -> Any:
        if not isinstance(reference, str) or not reference:
            raise ToolpackValidationError(f"Toolpack {tool_id} schema $ref must be a non-empty string")
        file_part, _, pointer = reference.partition("#")
        if not file_part:
            target = _apply_json_pointer(document, pointer, tool_id)
            return self._inline(target, base_dir, tool_id, document=document)

        path = Path(file_part)
        if not path.is_absolute():
            path = (base_dir / path).resolve()
        key = (path, pointer)
        if key not in self._cache:
            loaded = _read_schema_file(path, reference, tool_id)
            target = _apply_json_pointer(loaded, pointer, tool_id)
            self._cache[key] = self._inline(target, path.parent, tool_id, document=loaded)
        return copy.deepcopy(self._cache[key])


def _read_schema_file(path: Path, reference: str, tool_id: str) -> Any:
    if not path.is_file():
        raise ToolpackValidationError(f"Toolpack {tool_id} schema reference not found: {reference}")
    try:
        text = path.read_text(encoding="utf-8")
        return yaml.safe_load(text) if path.suffix in {".yaml", ".yml"} else json.loads(text)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ToolpackValidationError(f"Toolpack {tool_id} failed to load schema {reference}: {exc}") from exc


def _apply_json_pointer(document: Any, pointer: str, tool_id: str) -> Any:
    """Walk an RFC 6901 pointer (``~1`` is ``/``, ``~0`` is ``~``)."""

    current = document
    for raw in filter(None, pointer.split("/")):
        part = raw.replace("~1", "/").replace("~0", "~")
        try:
            current = current[int(part)] if isinstance(current, list) else current[part]
        except (KeyError, IndexError, ValueError, TypeError) as exc:
            raise ToolpackValidationError(f"Toolpack {tool_id} schema pointer '#{pointer}' does not resolve") from exc
    return current
