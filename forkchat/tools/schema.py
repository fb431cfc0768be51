"""JSON-Schema-like tool definitions."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class Property(BaseModel):
    """Schema of one tool parameter (recursive for arrays and objects)."""

    type: str = ""
    description: str = ""
    enum: list[Any] = Field(default_factory=list)
    items: "Property | None" = None
    properties: dict[str, "Property"] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    default: Any = None

    @field_validator("type", mode="before")
    @classmethod
    def _collapse_union_type(cls, value: Any) -> Any:
        # ["string", "null"] style unions: keep the first concrete type.
        if isinstance(value, list):
            concrete = [item for item in value if item != "null"]
            return concrete[0] if concrete else "null"
        return value if value is not None else ""

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {}
        if self.type:
            schema["type"] = self.type
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.items is not None:
            schema["items"] = self.items.to_json_schema()
        if self.properties:
            schema["properties"] = {
                name: prop.to_json_schema() for name, prop in self.properties.items()
            }
        if self.required:
            schema["required"] = list(self.required)
        if self.default is not None:
            schema["default"] = self.default
        return schema


class Parameters(BaseModel):
    """Top-level argument object of a tool."""

    type: str = "object"
    properties: dict[str, Property] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)

    def to_json_schema(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "properties": {name: prop.to_json_schema() for name, prop in self.properties.items()},
            "required": list(self.required),
        }


class Tool(BaseModel):
    """A tool as advertised by an MCP server."""

    name: str
    description: str = ""
    parameters: Parameters = Field(default_factory=Parameters)

    @classmethod
    def from_input_schema(
        cls, name: str, description: str | None, input_schema: dict[str, Any] | None
    ) -> "Tool":
        """Build a tool from an MCP ``inputSchema`` document.

        Schema keywords this model does not describe are ignored.
        """
        schema = input_schema or {}
        return cls(
            name=name,
            description=description or "",
            parameters=Parameters.model_validate(
                {
                    "type": schema.get("type") or "object",
                    "properties": schema.get("properties") or {},
                    "required": schema.get("required") or [],
                }
            ),
        )


Property.model_rebuild()
