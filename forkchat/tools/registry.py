"""Tool registry: toolset resolution, approval policy and preset parameters."""

from dataclasses import dataclass, field
from typing import Any, Iterable

from forkchat.config import ToolsetConfig
from forkchat.exceptions import ConfigurationError, ToolArgumentError, ToolNotFoundError
from forkchat.llm.types import ToolCall, ToolDefinition
from forkchat.logging import get_logger
from forkchat.tools.schema import Parameters, Tool

log = get_logger(__name__)

NAME_SEPARATOR = "__"


def qualify(server: str, tool: str) -> str:
    """Return the fully qualified ``server__tool`` name."""
    return f"{server}{NAME_SEPARATOR}{tool}"


def split_qualified_name(name: str) -> tuple[str, str]:
    """Split ``server__tool`` into its parts.

    Raises:
        ToolNotFoundError if ``name`` is not qualified
    """
    server, sep, tool = name.partition(NAME_SEPARATOR)
    if not sep or not server or not tool:
        raise ToolNotFoundError(name)
    return server, tool


@dataclass(frozen=True)
class ToolWithApproval:
    """A tool as exposed to one conversation.

    ``tool`` is the schema shown to the model, with preset parameters
    removed. ``preset_parameters`` holds the values injected at call time.
    """

    server: str
    tool: Tool
    require_approval: bool = True
    preset_parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return qualify(self.server, self.tool.name)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.qualified_name,
            description=self.tool.description,
            parameters=self.tool.parameters.to_json_schema(),
        )


def strip_preset_parameters(tool: Tool, presets: dict[str, Any]) -> Tool:
    """Remove preset parameter names from a tool's properties and ``required``."""
    properties = {
        name: prop for name, prop in tool.parameters.properties.items() if name not in presets
    }
    required = [name for name in tool.parameters.required if name not in presets]
    return tool.model_copy(
        update={
            "parameters": Parameters(
                type=tool.parameters.type,
                properties=properties,
                required=required,
            )
        }
    )


def recover_preset_parameters(
    original: Tool, modified: Tool, configured: dict[str, Any]
) -> dict[str, Any]:
    """Find the preset values for parameters missing from ``modified``.

    A parameter counts as preset when it is in the original schema but not
    in the exposed one; its value comes from ``configured``.
    """
    presets: dict[str, Any] = {}
    for name in original.parameters.properties:
        if name not in modified.parameters.properties and name in configured:
            presets[name] = configured[name]
    return presets


def _check_name(kind: str, name: str) -> None:
    if NAME_SEPARATOR in name:
        raise ConfigurationError(f"{kind} name {name!r} must not contain '{NAME_SEPARATOR}'")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    if isinstance(value, float):
        return value.is_integer()
    return isinstance(value, int) and not isinstance(value, bool)


_TYPE_CHECKS = {
    "string": lambda value: isinstance(value, str),
    "number": _is_number,
    "integer": _is_integer,
    "boolean": lambda value: isinstance(value, bool),
    "array": lambda value: isinstance(value, list),
    "object": lambda value: isinstance(value, dict),
}

_TYPE_NOUNS = {
    "string": "a string",
    "number": "a number",
    "integer": "an integer",
    "boolean": "a boolean",
    "array": "an array",
    "object": "an object",
}


def validate_arguments(tool_name: str, parameters: Parameters, arguments: dict[str, Any]) -> None:
    """Validate model-supplied arguments against a tool schema.

    Checks required parameters, unknown parameter names, primitive types
    and enum membership.

    Raises:
        ToolArgumentError describing the first problem found
    """
    for name in parameters.required:
        if name not in arguments:
            raise ToolArgumentError(tool_name, f"missing required parameter: {name}")

    for name, value in arguments.items():
        prop = parameters.properties.get(name)
        if prop is None:
            raise ToolArgumentError(tool_name, f"unknown parameter: {name}")

        check = _TYPE_CHECKS.get(prop.type)
        if check is not None and not check(value):
            raise ToolArgumentError(tool_name, f"parameter {name} must be {_TYPE_NOUNS[prop.type]}")

        if prop.enum and value not in prop.enum:
            allowed = ", ".join(str(option) for option in prop.enum)
            raise ToolArgumentError(tool_name, f"parameter {name} must be one of: [{allowed}]")


class ToolRegistry:
    """Tools available to one conversation.

    Built once from the transport's catalog and the preset's toolsets, and
    read-only afterwards.
    """

    def __init__(
        self,
        catalog: dict[str, dict[str, Tool]],
        toolset_names: Iterable[str],
        toolsets: dict[str, ToolsetConfig],
    ):
        """Resolve the toolsets against the catalog.

        Args:
            catalog: ``server -> tool name -> Tool`` as listed by the transport
            toolset_names: Toolsets selected by the active preset, in order
            toolsets: All configured toolsets

        Raises:
            ConfigurationError for unknown toolsets, servers or tools, and
            for names containing the ``__`` separator
        """
        self._tools: dict[str, dict[str, ToolWithApproval]] = {}

        for toolset_name in toolset_names:
            toolset = toolsets.get(toolset_name)
            if toolset is None:
                raise ConfigurationError(f"Toolset {toolset_name!r} not found in configuration")

            for server_name, server_config in toolset.servers.items():
                _check_name("Server", server_name)
                server_tools = catalog.get(server_name)
                if server_tools is None:
                    raise ConfigurationError(
                        f"Server {server_name!r} referenced by toolset {toolset_name!r} not found"
                    )
                resolved = self._tools.setdefault(server_name, {})

                if not server_config.allowed_tools:
                    for tool_name, tool in server_tools.items():
                        _check_name("Tool", tool_name)
                        resolved[tool_name] = ToolWithApproval(
                            server=server_name,
                            tool=tool,
                            require_approval=server_config.require_approval,
                        )
                    continue

                for tool_name, tool_config in server_config.allowed_tools.items():
                    _check_name("Tool", tool_name)
                    original = server_tools.get(tool_name)
                    if original is None:
                        raise ConfigurationError(
                            f"Tool {tool_name!r} not found in server {server_name!r}"
                        )

                    configured = tool_config.preset_parameters
                    exposed = strip_preset_parameters(original, configured) if configured else original
                    presets = recover_preset_parameters(original, exposed, configured)
                    for name in configured.keys() - presets.keys():
                        log.warning(
                            "Preset parameter not in tool schema, ignoring",
                            tool=qualify(server_name, tool_name),
                            parameter=name,
                        )

                    resolved[tool_name] = ToolWithApproval(
                        server=server_name,
                        tool=exposed,
                        require_approval=tool_config.require_approval,
                        preset_parameters=presets,
                    )

        log.debug(
            "Tool registry resolved",
            servers=len(self._tools),
            tools=sum(len(tools) for tools in self._tools.values()),
        )

    @property
    def tools(self) -> dict[str, dict[str, ToolWithApproval]]:
        """``server -> tool name -> ToolWithApproval`` (a copy)."""
        return {server: dict(tools) for server, tools in self._tools.items()}

    def __len__(self) -> int:
        return sum(len(tools) for tools in self._tools.values())

    def servers_in_scope(self) -> list[str]:
        """Servers contributing at least one tool."""
        return [server for server, tools in self._tools.items() if tools]

    def definitions(self) -> list[ToolDefinition]:
        """Flattened, server-qualified tool definitions for the model."""
        return [
            entry.definition()
            for server in sorted(self._tools)
            for _, entry in sorted(self._tools[server].items())
        ]

    def lookup(self, qualified_name: str) -> ToolWithApproval:
        """Return the entry for ``server__tool``.

        Raises:
            ToolNotFoundError if the tool is not in this registry
        """
        server, tool = split_qualified_name(qualified_name)
        entry = self._tools.get(server, {}).get(tool)
        if entry is None:
            raise ToolNotFoundError(qualified_name)
        return entry

    def requires_approval(self, call: ToolCall) -> bool:
        """True if the call is gated. Calls to unknown tools are not gated;
        they fail at execution instead."""
        try:
            return self.lookup(call.name).require_approval
        except ToolNotFoundError:
            return False

    def prepare_call(self, call: ToolCall) -> tuple[ToolWithApproval, dict[str, Any]]:
        """Validate a call and merge its preset parameters.

        Model-supplied values for preset parameters are dropped before
        validation; presets always win.

        Returns:
            The registry entry and the arguments to send to the transport

        Raises:
            ToolNotFoundError if the tool is not in this registry
            ToolArgumentError if the arguments are malformed or invalid
        """
        entry = self.lookup(call.name)

        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            raise ToolArgumentError(call.name, f"invalid argument format: {e}") from e

        overridden = [name for name in arguments if name in entry.preset_parameters]
        if overridden:
            log.warning(
                "Model supplied preset parameters, using presets",
                tool=call.name,
                call_id=call.id,
                parameters=overridden,
            )
            arguments = {k: v for k, v in arguments.items() if k not in entry.preset_parameters}

        validate_arguments(call.name, entry.tool.parameters, arguments)

        return entry, {**arguments, **entry.preset_parameters}
