"""Registry mapping tool names to typed handlers and JSON schemas."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .errors import ErrorCode, ToolArgumentError, UnknownToolError

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 10

ToolHandler = Callable[[Mapping[str, Any]], Awaitable[str]]


@dataclass(slots=True)
class ToolRegistration:
    """A registered tool: its metadata, parameter schema and handler."""

    name: str
    description: str
    parameters: Mapping[str, Any]
    handler: ToolHandler

    def as_openai_tool(self) -> Dict[str, Any]:
        """Return an OpenAI-compatible function tool spec."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


class ToolRegistry:
    """Name-keyed tool lookup with schema validation.

    Example::

        registry = ToolRegistry()
        registry.register(ToolRegistration("create_flowchart", "...", schema, handler))
        registry.validate("create_flowchart", {"title": "Build", "description": "CI"})
    """

    def __init__(self, registrations: Sequence[ToolRegistration] = ()) -> None:
        self._tools: Dict[str, ToolRegistration] = {}
        self._validators: Dict[str, Draft202012Validator] = {}
        for registration in registrations:
            self.register(registration)

    def register(self, registration: ToolRegistration) -> None:
        try:
            Draft202012Validator.check_schema(dict(registration.parameters))
        except SchemaError as exc:
            raise ValueError(f"Invalid parameter schema for tool '{registration.name}': {exc.message}") from exc
        self._tools[registration.name] = registration
        self._validators[registration.name] = Draft202012Validator(dict(registration.parameters))
        LOGGER.debug("Registered tool: %s", registration.name)

    def unregister(self, name: str) -> bool:
        self._validators.pop(name, None)
        return self._tools.pop(name, None) is not None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolRegistration]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def get(self, name: str) -> ToolRegistration:
        """Return the registration for ``name``.

        Raises:
            UnknownToolError: If no tool with that name is registered.
        """
        registration = self._tools.get(name)
        if registration is None:
            raise UnknownToolError(tool_name=name, available=self.names)
        return registration

    def validate(self, name: str, arguments: Mapping[str, Any]) -> None:
        """Check ``arguments`` against the tool's schema.

        Raises:
            UnknownToolError: If the tool is not registered.
            ToolArgumentError: With one message per schema violation.
        """
        validator = self._validators.get(name)
        if validator is None:
            raise UnknownToolError(tool_name=name, available=self.names)
        problems: list[str] = []
        for issue in validator.iter_errors(dict(arguments)):
            path = _format_schema_path(issue.absolute_path)
            problems.append(f"{path}: {issue.message}" if path else issue.message)
            if len(problems) >= MAX_SCHEMA_ERRORS:
                break
        if problems:
            raise ToolArgumentError(
                error_code=ErrorCode.SCHEMA_VIOLATION,
                message=f"Arguments for {name} do not match its schema: {problems[0]}",
                details={"tool": name, "problems": problems},
            )

    def as_openai_tools(self) -> list[Dict[str, Any]]:
        return [registration.as_openai_tool() for registration in self._tools.values()]


def _format_schema_path(path: Sequence[Any]) -> str:
    parts: list[str] = []
    for item in path:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts)


__all__ = ["ToolHandler", "ToolRegistration", "ToolRegistry"]
