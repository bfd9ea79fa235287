"""Standardized error types for canvas tools.

Every tool failure carries a machine-readable ``error_code`` plus a
human-readable message so the chat layer can render it and log it
consistently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..errors import NoteCanvasError


class ErrorCode:
    """Constants for error codes used in tool failures."""

    INVALID_ARGUMENTS = "invalid_arguments"
    SCHEMA_VIOLATION = "schema_violation"
    PARENT_NOT_FOUND = "parent_not_found"
    UNKNOWN_TOOL = "unknown_tool"
    GRAPH_MUTATION_FAILED = "graph_mutation_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ToolError(NoteCanvasError):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging and UI acknowledgement."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ToolArgumentError(ToolError):
    """Raised when a tool call's arguments are not valid JSON or violate its schema."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Tool arguments could not be parsed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Send arguments as a JSON object matching the tool schema")

    raw_arguments: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.raw_arguments is not None:
            result["raw_arguments"] = self.raw_arguments
        return result


@dataclass
class UnknownToolError(ToolError):
    """Raised when a tool call names a tool that is not registered."""

    error_code: str = field(default=ErrorCode.UNKNOWN_TOOL)
    message: str = field(default="Unknown tool")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    tool_name: str | None = field(default=None)
    available: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.tool_name and self.message == "Unknown tool":
            self.message = f"Unknown tool: {self.tool_name}"
        if self.available and not self.suggestion:
            self.suggestion = f"Use one of: {', '.join(self.available)}"
        super().__post_init__()

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name is not None:
            result["tool_name"] = self.tool_name
        return result


@dataclass
class ExecutionError(ToolError):
    """Raised when the GraphModel or Board Store rejects a mutation."""

    error_code: str = field(default=ErrorCode.GRAPH_MUTATION_FAILED)
    message: str = field(default="Graph mutation failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


__all__ = [
    "ErrorCode",
    "ToolError",
    "ToolArgumentError",
    "UnknownToolError",
    "ExecutionError",
]
