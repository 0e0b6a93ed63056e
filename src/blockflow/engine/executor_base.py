"""Block executor base class and the block registry.

Blocks are the units of work a workflow node points at. Each concrete block
is a BlockExecutor subclass that declares its identity and capabilities as
class attributes and implements ``execute``.

Key principles:
- Executors are stateless: the registry creates a fresh instance per call
- ``execute`` returns ``{"status", "output", "error"}`` or a bare value
- Raising an exception means the attempt failed (the core executor decides
  whether to retry)
- Capabilities (``supports_mock``, ``cacheable``) belong to the class, not
  the instance, so the registry can answer questions without instantiating
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .interpolation import VariableInterpolator

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "blockflow.blocks"


class BlockExecutor(ABC):
    """Base class for workflow blocks.

    Subclasses must:
    1. Set ``type_name`` (the registry key used by workflow definitions)
    2. Implement ``execute()``
    3. Set ``supports_mock = True`` if they can run without live external calls

    Example:
        class UppercaseBlock(BlockExecutor):
            type_name = "transform.uppercase"
            category = "transform"
            supports_mock = True

            async def execute(self, config, input, context):
                field = config.get("field", "text")
                return {**input, field: str(input.get(field, "")).upper()}
    """

    type_name: ClassVar[str] = ""
    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    category: ClassVar[str] = "custom"
    version: ClassVar[str] = "1.0.0"

    # Can run meaningfully in demo/test mode without live external calls
    supports_mock: ClassVar[bool] = False
    # Results may be served from the ResultCache
    cacheable: ClassVar[bool] = True
    # A dict result with only status/output/error/metadata keys is read as
    # ``{status, output, error}``; blocks that forward arbitrary records opt out
    returns_envelope: ClassVar[bool] = True

    # Used by `blockflow blocks baseline` to write a starting test config
    baseline_config: ClassVar[dict[str, Any]] = {}
    baseline_input: ClassVar[Any] = {}

    @abstractmethod
    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        """Run the block once.

        Args:
            config: Node config with templates already interpolated
            input: Merged output of the upstream nodes (or the run's initial input)
            context: Current execution context (read node results, variables, secrets)

        Returns:
            ``{"status": "completed", "output": ...}``, ``{"status": "failed", "error": ...}``
            or a bare output value

        Raises:
            Exception: Any exception marks the attempt as failed
        """

    def interpolate_config(
        self, config: dict[str, Any], interpolator: VariableInterpolator, input: Any
    ) -> dict[str, Any]:
        """Resolve ``{{...}}`` templates in ``config`` before ``execute`` runs.

        Blocks that evaluate templates themselves (per record, say) override
        this and leave those strings untouched.
        """
        return interpolator.interpolate_object(config, input)

    def log(
        self, context: ExecutionContext, level: str, message: str, **details: Any
    ) -> None:
        """Write to the run's ExecutionLogger (``level``: debug|info|warning|error)."""
        write = getattr(context.logger, level, context.logger.info)
        write(f"[{self.type_name or type(self).__name__}] {message}", details or None)

    @classmethod
    def get_capabilities(cls) -> dict[str, Any]:
        return {
            "type": cls.type_name,
            "supports_mock": cls.supports_mock,
            "cacheable": cls.cacheable,
            "category": cls.category,
        }


class BlockMetadata(BaseModel):
    """Descriptive data kept by the registry for each block type."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    name: str
    description: str = ""
    category: str = "custom"
    version: str = "1.0.0"
    supports_mock: bool = Field(default=False, alias="supportsMock")
    cacheable: bool = True


class BlockRegistry(BaseModel):
    """
    Registry of block types.

    Maps a type tag to exactly one BlockExecutor subclass. There is no global
    instance: build one with ``create_default_registry()`` and pass it along.
    """

    model_config = {"arbitrary_types_allowed": True}

    _classes: dict[str, type[BlockExecutor]] = PrivateAttr(default_factory=dict)
    _metadata: dict[str, BlockMetadata] = PrivateAttr(default_factory=dict)

    def register(
        self,
        type_name: str,
        executor_class: type[BlockExecutor],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Register ``executor_class`` under ``type_name``.

        Raises:
            ValueError: If the type is already registered
            TypeError: If ``executor_class`` is not a BlockExecutor subclass
        """
        if type_name in self._classes:
            raise ValueError(f"Block type already registered: {type_name}")
        if not (inspect.isclass(executor_class) and issubclass(executor_class, BlockExecutor)):
            raise TypeError(f"{executor_class!r} is not a BlockExecutor subclass")

        values: dict[str, Any] = {
            "type": type_name,
            "name": executor_class.name or type_name,
            "description": executor_class.description,
            "category": executor_class.category,
            "version": executor_class.version,
            "supports_mock": executor_class.supports_mock,
            "cacheable": executor_class.cacheable,
        }
        values.update(metadata or {})
        values["type"] = type_name

        self._classes[type_name] = executor_class
        self._metadata[type_name] = BlockMetadata.model_validate(values)

    def register_block(
        self, executor_class: type[BlockExecutor], metadata: dict[str, Any] | None = None
    ) -> None:
        """Register a block under its own ``type_name``."""
        if not executor_class.type_name:
            raise ValueError(f"{executor_class.__name__} does not declare a type_name")
        self.register(executor_class.type_name, executor_class, metadata)

    def unregister(self, type_name: str) -> bool:
        """Remove a block type. Returns True if it was registered."""
        self._metadata.pop(type_name, None)
        return self._classes.pop(type_name, None) is not None

    def create(self, type_name: str) -> BlockExecutor | None:
        """Create a fresh executor instance, or None for an unknown type."""
        executor_class = self._classes.get(type_name)
        if executor_class is None:
            return None
        try:
            return executor_class()
        except Exception:
            logger.exception(f"Failed to instantiate block type '{type_name}'")
            return None

    def get_class(self, type_name: str) -> type[BlockExecutor] | None:
        return self._classes.get(type_name)

    def has(self, type_name: str) -> bool:
        """Check if block type is registered."""
        return type_name in self._classes

    def list(self) -> list[str]:
        """List registered block types in registration order."""
        return list(self._classes)

    def get_metadata(self, type_name: str) -> BlockMetadata | None:
        return self._metadata.get(type_name)

    def get_all_metadata(self) -> list[BlockMetadata]:
        return list(self._metadata.values())

    def get_by_category(self, category: str) -> list[BlockMetadata]:
        return [meta for meta in self._metadata.values() if meta.category == category]

    def clear(self) -> None:
        self._classes.clear()
        self._metadata.clear()

    def discover_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """Discover and register blocks from entry points.

        Third-party packages provide blocks by declaring entry points:

            [project.entry-points."blockflow.blocks"]
            crm_lookup = "my_pkg.blocks:CrmLookupBlock"

        The entry point name is used as the type tag unless the class
        declares its own ``type_name``.

        Returns:
            Number of blocks discovered and registered
        """
        from importlib.metadata import entry_points

        discovered = 0
        for entry_point in entry_points().select(group=group):
            try:
                executor_class = entry_point.load()
            except Exception:
                logger.exception(f"Failed to load block entry point '{entry_point.name}'")
                continue

            if not (inspect.isclass(executor_class) and issubclass(executor_class, BlockExecutor)):
                logger.warning(f"Entry point '{entry_point.name}' is not a BlockExecutor subclass")
                continue

            type_name = executor_class.type_name or entry_point.name
            if self.has(type_name):
                logger.warning(f"Block type '{type_name}' from entry point already registered")
                continue

            self.register(type_name, executor_class)
            discovered += 1

        return discovered


def create_default_registry(discover_plugins: bool = False) -> BlockRegistry:
    """Registry with every built-in block registered.

    Args:
        discover_plugins: Also load blocks from ``blockflow.blocks`` entry points
    """
    from .executors_core import CORE_BLOCKS
    from .executors_flow import FLOW_BLOCKS
    from .executors_http import HttpRequestBlock

    registry = BlockRegistry()
    for executor_class in (*CORE_BLOCKS, *FLOW_BLOCKS, HttpRequestBlock):
        registry.register_block(executor_class)

    if discover_plugins:
        count = registry.discover_entry_points()
        if count:
            logger.info(f"Discovered {count} block(s) from entry points")

    return registry


__all__ = [
    "ENTRY_POINT_GROUP",
    "BlockExecutor",
    "BlockMetadata",
    "BlockRegistry",
    "create_default_registry",
]
