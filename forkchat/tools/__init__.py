"""Tool schemas and per-conversation tool resolution."""

from forkchat.tools.schema import Parameters, Property, Tool
from forkchat.tools.registry import (
    NAME_SEPARATOR,
    ToolRegistry,
    ToolWithApproval,
    qualify,
    split_qualified_name,
    validate_arguments,
)

__all__ = [
    "NAME_SEPARATOR",
    "Parameters",
    "Property",
    "Tool",
    "ToolRegistry",
    "ToolWithApproval",
    "qualify",
    "split_qualified_name",
    "validate_arguments",
]
