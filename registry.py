"""
Tool Registry.

Maps tool names to handlers and their pydantic input/output models.
Populated once at start-up, then sealed; lookups after that are read-only
and safe to share between concurrent requests without locking.

    registry = ToolRegistry()

    @registry.tool()
    async def open_file(params: OpenFileParams) -> OpenFileResult:
        ...

    registry.seal()
    await registry.invoke("open_file", {"path": "/tmp/a.afphoto"})
"""

import inspect
import logging
import typing
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable

from mcp.types import Tool
from pydantic import BaseModel, ConfigDict, ValidationError

from errors import DuplicateToolError, InvalidArguments, UnknownTool

log = logging.getLogger("affinity_mcp.registry")

Handler = Callable[..., Awaitable[Any]]


class EmptyParams(BaseModel):
    """Input model for tools that take no arguments."""

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel] | None
    handler: Handler
    takes_params: bool = True

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(),
            outputSchema=self.output_model.model_json_schema() if self.output_model else None,
        )


def _describe(error: ValidationError) -> tuple[str, list[dict]]:
    """Flatten a pydantic ValidationError into a sentence and a list."""
    violations = []
    for item in error.errors(include_url=False):
        loc = ".".join(str(part) for part in item["loc"]) or "<arguments>"
        violations.append({"field": loc, "message": item["msg"], "type": item["type"]})
    description = "; ".join(f"{v['field']}: {v['message']}" for v in violations)
    return description, violations


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class ToolRegistry:
    """Name -> ToolSpec mapping with schema validation on invoke."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}
        self._sealed = False

    # ------------------------------------------------------------------
    # Registration (start-up only)
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        input_model: type[BaseModel],
        handler: Handler,
        *,
        description: str = "",
        output_model: type[BaseModel] | None = None,
        takes_params: bool = True,
    ) -> ToolSpec:
        """Register a tool.  Duplicate names are a fatal start-up error."""
        if self._sealed:
            raise RuntimeError(f"Registry is sealed; cannot register '{name}' at runtime")
        if name in self._tools:
            raise DuplicateToolError(name)
        spec = ToolSpec(
            name=name,
            description=description,
            input_model=input_model,
            output_model=output_model,
            handler=handler,
            takes_params=takes_params,
        )
        self._tools[name] = spec
        log.debug("Registered tool %s", name)
        return spec

    def tool(
        self,
        name: str | None = None,
        *,
        description: str | None = None,
        output_model: type[BaseModel] | None = None,
    ):
        """Decorator form of ``register``.

        The input model is the annotation of the handler's first parameter;
        a handler without parameters takes ``EmptyParams``.  The output model
        defaults to the return annotation when that is a pydantic model.
        """

        def decorator(fn: Handler) -> Handler:
            hints = typing.get_type_hints(fn)
            params = list(inspect.signature(fn).parameters)
            if params:
                input_model = hints[params[0]]
            else:
                input_model = EmptyParams
            returns = hints.get("return")
            out = output_model
            if out is None and inspect.isclass(returns) and issubclass(returns, BaseModel):
                out = returns
            self.register(
                name or fn.__name__,
                input_model,
                fn,
                description=description or inspect.getdoc(fn) or "",
                output_model=out,
                takes_params=bool(params),
            )
            return fn

        return decorator

    def seal(self) -> "ToolRegistry":
        """Freeze the registry; no registration is possible afterwards."""
        self._tools = MappingProxyType(dict(self._tools))
        self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownTool(name) from None

    def list_tools(self) -> list[Tool]:
        return [spec.to_tool() for spec in self._tools.values()]

    async def invoke(self, name: str, arguments: Any) -> Any:
        """Validate ``arguments`` and run the tool; returns JSON-ready output.

        Raises UnknownTool / InvalidArguments.  Anything the handler raises
        propagates unchanged.
        """
        spec = self.get(name)
        try:
            params = spec.input_model.model_validate(arguments if arguments is not None else {})
        except ValidationError as e:
            description, violations = _describe(e)
            raise InvalidArguments(name, description, violations) from None

        if spec.takes_params:
            result = await spec.handler(params)
        else:
            result = await spec.handler()
        return _dump(result)
