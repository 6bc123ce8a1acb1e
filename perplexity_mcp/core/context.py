"""
Request context creation and derivation.

Correlation contexts are immutable values threaded through every call.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:
    from .identifiers import IdGenerator

_CORE_FIELDS = ("request_id", "operation", "timestamp")


@dataclass(frozen=True)
class RequestContext:
    """Correlation record for one logical operation.

    Never mutated. Sub-operations call derive() to get their own copy, so
    concurrent branches from the same parent cannot see each other's fields.
    """
    request_id: str
    operation: str = ""
    timestamp: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze a private copy so callers keeping the original dict can't mutate us
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def derive(self, **fields: Any) -> "RequestContext":
        """Create a child context with added or overridden fields.

        Args:
            **fields: request_id/operation/timestamp override the matching
                attribute, anything else is merged into the metadata

        Returns:
            New RequestContext; self is left untouched
        """
        core = {k: fields.pop(k) for k in _CORE_FIELDS if k in fields}
        merged = dict(self.metadata)
        merged.update(fields)
        return replace(self, metadata=merged, **core)

    def get(self, key: str, default: Any = None) -> Any:
        if key in _CORE_FIELDS:
            return getattr(self, key)
        return self.metadata.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into {request_id, operation, timestamp, **metadata}."""
        data: Dict[str, Any] = dict(self.metadata)
        data["request_id"] = self.request_id
        data["operation"] = self.operation
        data["timestamp"] = self.timestamp
        return data


class ContextService:
    """Creates request contexts with fresh identifiers."""

    def __init__(self, id_generator: "IdGenerator", entity_type: str = "request"):
        self.id_generator = id_generator
        self.entity_type = entity_type

    def create_request_context(self, operation: str = "", **initial: Any) -> RequestContext:
        """Create a new root context.

        Args:
            operation: Name of the logical operation
            **initial: Arbitrary metadata to attach

        Returns:
            RequestContext with a generated request_id and a UTC timestamp
        """
        initial.pop("request_id", None)
        initial.pop("timestamp", None)
        return RequestContext(
            request_id=self.id_generator.generate_for_entity(self.entity_type),
            operation=operation,
            timestamp=datetime.now(timezone.utc).isoformat(),
            metadata=initial,
        )
