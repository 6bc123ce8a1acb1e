"""
Entity-prefixed identifier generation.

Identifiers look like REQ_A1B2C3: a registered prefix, a separator and a random payload.
"""

import secrets
import string
import threading
from typing import Dict, Mapping, Optional

from .errors import ErrorCode, McpError

DEFAULT_CHARSET = string.ascii_uppercase + string.digits
DEFAULT_LENGTH = 6
DEFAULT_SEPARATOR = "_"


class IdGenerator:
    """Generates and structurally validates entity identifiers.

    The prefix registry is the only shared state and is guarded by a lock.
    """

    def __init__(
        self,
        prefixes: Optional[Mapping[str, str]] = None,
        default_length: int = DEFAULT_LENGTH,
        separator: str = DEFAULT_SEPARATOR,
        charset: str = DEFAULT_CHARSET,
    ):
        if default_length <= 0:
            raise ValueError("default_length must be > 0")
        if not charset:
            raise ValueError("charset cannot be empty")
        self.default_length = default_length
        self.separator = separator
        self.charset = charset
        self._prefixes: Dict[str, str] = {}
        self._lock = threading.Lock()
        if prefixes:
            self.set_entity_prefixes(prefixes)

    def set_entity_prefixes(self, mapping: Mapping[str, str]) -> None:
        """Register prefixes per entity type, overwriting existing entries."""
        for entity_type, prefix in mapping.items():
            if not prefix or self.separator in prefix:
                raise ValueError(f"Invalid prefix for entity type '{entity_type}': {prefix!r}")
        with self._lock:
            self._prefixes.update(mapping)

    def get_prefix(self, entity_type: str) -> Optional[str]:
        with self._lock:
            return self._prefixes.get(entity_type)

    @property
    def entity_prefixes(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._prefixes)

    def generate(self, length: Optional[int] = None, prefix: Optional[str] = None) -> str:
        """Generate a random payload, optionally prefixed."""
        length = self.default_length if length is None else length
        if length <= 0:
            raise McpError(ErrorCode.VALIDATION_ERROR, f"Identifier length must be > 0, got {length}")
        payload = "".join(secrets.choice(self.charset) for _ in range(length))
        if prefix:
            return f"{prefix}{self.separator}{payload}"
        return payload

    def generate_for_entity(self, entity_type: str, length: Optional[int] = None) -> str:
        """Generate an identifier for a registered entity type.

        Args:
            entity_type: Registered entity type (e.g. "request")
            length: Payload length (defaults to default_length)

        Returns:
            Identifier of the form <prefix><separator><payload>

        Raises:
            McpError: INTERNAL_ERROR if the entity type has no prefix
        """
        prefix = self.get_prefix(entity_type)
        if prefix is None:
            raise McpError(
                ErrorCode.INTERNAL_ERROR,
                f"Unknown entity type: {entity_type}",
                details={"entity_type": entity_type},
            )
        return self.generate(length=length, prefix=prefix)

    def is_valid(self, identifier: str, entity_type: str, length: Optional[int] = None) -> bool:
        """Check prefix, charset and payload length. Never consults issued ids."""
        if not isinstance(identifier, str):
            return False
        prefix = self.get_prefix(entity_type)
        if prefix is None:
            return False

        head = f"{prefix}{self.separator}"
        if not identifier.startswith(head):
            return False

        payload = identifier[len(head):]
        expected = self.default_length if length is None else length
        if len(payload) != expected:
            return False
        return all(ch in self.charset for ch in payload)

    def get_entity_type(self, identifier: str) -> str:
        """Reverse lookup of the entity type from an identifier's prefix.

        Raises:
            McpError: VALIDATION_ERROR for malformed ids or unknown prefixes
        """
        head, sep, payload = identifier.partition(self.separator)
        if not sep or not head or not payload:
            raise McpError(ErrorCode.VALIDATION_ERROR, f"Invalid identifier format: {identifier}")

        with self._lock:
            for entity_type, prefix in self._prefixes.items():
                if prefix.upper() == head.upper():
                    return entity_type

        raise McpError(ErrorCode.VALIDATION_ERROR, f"Unknown entity prefix: {head}")

    def normalize(self, identifier: str) -> str:
        """Canonical upper-case form; prefix lookup is case-insensitive."""
        entity_type = self.get_entity_type(identifier)
        _, _, payload = identifier.partition(self.separator)
        return f"{self.get_prefix(entity_type)}{self.separator}{payload.upper()}"
