"""
Tool declarations: normalization, provider formats and argument validators.

Tools arrive in whatever shape the host uses (Gemini functionDeclarations,
OpenAI function tools, or bare {name, parameters}). They are normalized to
ToolDeclaration once, formatted per provider on the way out, and their JSON
schemas are compiled at registration time into pydantic models that check
arguments before a call executes.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, create_model

logger = logging.getLogger(__name__)


class ToolDeclaration(BaseModel):
    """Provider-neutral tool declaration."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class SchemaCompileError(ValueError):
    """A JSON schema uses constructs the compiler doesn't support."""


# ── Normalization ─────────────────────────────────────────────────────


def _declaration_from(entry: dict[str, Any]) -> ToolDeclaration:
    parameters = (
        entry.get("parameters")
        or entry.get("parametersJsonSchema")
        or entry.get("input_schema")
        or {"type": "object", "properties": {}}
    )
    return ToolDeclaration(
        name=entry["name"],
        description=entry.get("description") or "",
        parameters=parameters,
    )


def normalize_tools(raw: Iterable[dict[str, Any] | ToolDeclaration] | None) -> list[ToolDeclaration]:
    """Flatten any supported tool format into declarations, first name wins."""
    declarations: list[ToolDeclaration] = []
    seen: set[str] = set()

    def _add(decl: ToolDeclaration) -> None:
        if decl.name in seen:
            logger.warning("Duplicate tool declaration '%s' ignored", decl.name)
            return
        seen.add(decl.name)
        declarations.append(decl)

    for entry in raw or []:
        if isinstance(entry, ToolDeclaration):
            _add(entry)
            continue
        group = entry.get("functionDeclarations") or entry.get("function_declarations")
        if group:
            for item in group:
                _add(_declaration_from(item))
        elif entry.get("type") == "function" and isinstance(entry.get("function"), dict):
            _add(_declaration_from(entry["function"]))
        elif "name" in entry:
            _add(_declaration_from(entry))
        else:
            logger.warning("Skipping unrecognized tool declaration: %s", sorted(entry))

    return declarations


def to_openai_tools(declarations: Iterable[ToolDeclaration]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": d.name,
                "description": d.description,
                "parameters": d.parameters,
            },
        }
        for d in declarations
    ]


def to_anthropic_tools(declarations: Iterable[ToolDeclaration]) -> list[dict[str, Any]]:
    return [
        {
            "name": d.name,
            "description": d.description,
            "input_schema": {**d.parameters, "type": "object"},
        }
        for d in declarations
    ]


# ── Schema compilation ────────────────────────────────────────────────

_SCALAR_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "null": type(None),
}


def _python_type(spec: Any, path: str) -> Any:
    if not isinstance(spec, dict):
        raise SchemaCompileError(f"{path}: schema must be an object")

    enum = spec.get("enum")
    if enum is not None:
        if not enum or not all(isinstance(v, (str, int, float, bool)) for v in enum):
            raise SchemaCompileError(f"{path}: unsupported enum")
        return Literal[tuple(enum)]

    json_type = spec.get("type")
    if json_type is None:
        return Any
    if isinstance(json_type, list):
        members = tuple(_python_type({**spec, "type": t}, path) for t in json_type)
        return Union[members] if len(members) > 1 else members[0]
    if json_type in _SCALAR_TYPES:
        return _SCALAR_TYPES[json_type]
    if json_type == "array":
        items = spec.get("items")
        return list[_python_type(items, f"{path}[]")] if items else list[Any]
    if json_type == "object":
        return dict[str, Any]
    raise SchemaCompileError(f"{path}: unknown type {json_type!r}")


def compile_schema(tool_name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """
    Build a pydantic model for a tool's parameter schema.

    Property names become aliases so any JSON key works, including ones that
    aren't Python identifiers.
    """
    if schema.get("type", "object") != "object":
        raise SchemaCompileError(f"{tool_name}: top-level schema must be an object")

    properties = schema.get("properties") or {}
    if not isinstance(properties, dict):
        raise SchemaCompileError(f"{tool_name}: properties must be a mapping")
    required = set(schema.get("required") or [])

    fields: dict[str, Any] = {}
    for i, (prop, spec) in enumerate(properties.items()):
        py_type = _python_type(spec, f"{tool_name}.{prop}")
        description = spec.get("description") if isinstance(spec, dict) else None
        if prop in required:
            fields[f"f{i}"] = (py_type, Field(..., alias=prop, description=description))
        else:
            fields[f"f{i}"] = (Optional[py_type], Field(None, alias=prop, description=description))

    extra = "forbid" if schema.get("additionalProperties") is False else "allow"
    return create_model(
        f"{tool_name}_args",
        __config__=ConfigDict(extra=extra, populate_by_name=False),
        **fields,
    )


class ArgumentValidator:
    """Validates argument dicts against a compiled tool schema."""

    permissive = False

    def __init__(self, tool_name: str, model: type[BaseModel]):
        self.tool_name = tool_name
        self.model = model

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        """Return coerced arguments; raises pydantic.ValidationError."""
        validated = self.model.model_validate(args)
        return validated.model_dump(by_alias=True, exclude_unset=True)


class PermissiveSchema(ArgumentValidator):
    """Stand-in for a schema that could not be compiled. Accepts any object."""

    permissive = True

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.model = None
        self.reason = reason

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        return args


class ToolSchemaRegistry:
    """Declarations plus their validators, compiled when registered."""

    def __init__(self, declarations: Iterable[ToolDeclaration] | None = None):
        self._declarations: dict[str, ToolDeclaration] = {}
        self._validators: dict[str, ArgumentValidator] = {}
        for declaration in declarations or []:
            self.register(declaration)

    def register(self, declaration: ToolDeclaration) -> ArgumentValidator:
        try:
            validator: ArgumentValidator = ArgumentValidator(
                declaration.name, compile_schema(declaration.name, declaration.parameters)
            )
        except SchemaCompileError as e:
            logger.warning("Tool '%s' registered with permissive schema: %s", declaration.name, e)
            validator = PermissiveSchema(declaration.name, str(e))

        self._declarations[declaration.name] = declaration
        self._validators[declaration.name] = validator
        return validator

    def get(self, name: str) -> ArgumentValidator | None:
        return self._validators.get(name)

    def is_permissive(self, name: str) -> bool:
        validator = self._validators.get(name)
        return validator is not None and validator.permissive

    def validate(self, name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Validate arguments for a registered tool; unknown tools pass through."""
        validator = self._validators.get(name)
        if validator is None:
            return args
        return validator.validate(args)

    def declarations(self) -> list[ToolDeclaration]:
        return list(self._declarations.values())

    def __contains__(self, name: object) -> bool:
        return name in self._declarations

    def __len__(self) -> int:
        return len(self._declarations)
