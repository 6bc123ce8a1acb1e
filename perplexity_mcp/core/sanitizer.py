"""
Input sanitization.

Cleans untrusted strings (HTML, paths, URLs, numbers, JSON) before use, and
redacts sensitive fields before anything reaches a log sink.
"""

import json
import math
import os
import re
from dataclasses import fields, is_dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Set
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Comment, Declaration, Doctype, ProcessingInstruction
from bs4.element import PreformattedString

from .context import RequestContext
from .errors import ErrorCode, McpError

REDACTED = "[REDACTED]"
CIRCULAR = "[Circular]"

DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "key",
    "apikey",
    "api_key",
    "authorization",
    "credential",
    "cookie",
)

DEFAULT_ALLOWED_TAGS = frozenset({
    "h1", "h2", "h3", "h4", "h5", "h6",
    "p", "a", "ul", "ol", "li", "b", "i", "strong", "em", "strike",
    "code", "pre", "blockquote", "hr", "br", "div", "span",
    "table", "thead", "tbody", "tr", "th", "td",
})

DEFAULT_ALLOWED_ATTRIBUTES: Dict[str, FrozenSet[str]] = {
    "a": frozenset({"href", "name", "target"}),
    "td": frozenset({"colspan", "rowspan"}),
    "th": frozenset({"colspan", "rowspan"}),
}

# Removed together with their content, never unwrapped
DROPPED_TAGS = frozenset({
    "script", "style", "iframe", "object", "embed", "noscript", "template",
})

URL_ATTRIBUTES = frozenset({"href", "src", "action", "formaction"})
UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:")

PRESERVE_WHITESPACE_TAGS = ("pre", "textarea")

_DROPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)
_ASCII_SPACES = {ord(c): None for c in "\x20\x0a\x09\x0c\x0d"}
_URL_NOISE = re.compile(r"[\x00-\x20\x7f]+")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_WORD_SPLIT = re.compile(r"[^A-Za-z0-9]+")


def _validation_error(message: str, **details: Any) -> McpError:
    return McpError(ErrorCode.VALIDATION_ERROR, message, details=details or None)


def _collapse_whitespace(soup: BeautifulSoup) -> None:
    """Merge adjacent strings and shrink whitespace-only ones as html.parser does.

    Unwrapping tags or dropping stray end tags leaves neighbouring strings
    that a fresh parse would join and collapse, so the output would change
    on a second pass.
    """
    soup.smooth()
    for node in soup.find_all(string=True):
        if isinstance(node, PreformattedString) or not node:
            continue
        if node.translate(_ASCII_SPACES) or node.find_parent(PRESERVE_WHITESPACE_TAGS):
            continue
        collapsed = "\n" if "\n" in node else " "
        if node != collapsed:
            node.replace_with(collapsed)


class Sanitizer:
    """Sanitizes untrusted input.

    Constructed once at startup and shared by every component that needs it.
    """

    def __init__(
        self,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
        allowed_tags: Iterable[str] = DEFAULT_ALLOWED_TAGS,
        allowed_attributes: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.sensitive_fields: FrozenSet[str] = frozenset(f.lower() for f in sensitive_fields)
        self.allowed_tags: FrozenSet[str] = frozenset(t.lower() for t in allowed_tags)
        if allowed_attributes is None:
            allowed_attributes = DEFAULT_ALLOWED_ATTRIBUTES
        self.allowed_attributes: Dict[str, FrozenSet[str]] = {
            tag.lower(): frozenset(a.lower() for a in attrs)
            for tag, attrs in allowed_attributes.items()
        }

    # ------------------------------------------------------------------
    # HTML / strings
    # ------------------------------------------------------------------

    def sanitize_html(self, value: str) -> str:
        """Strip markup outside the allow-list and all scriptable content.

        Idempotent: sanitizing the output again returns it unchanged.
        """
        if not value:
            return ""
        soup = self._clean_markup(value, self.allowed_tags, self.allowed_attributes)
        _collapse_whitespace(soup)
        return str(soup)

    def _clean_markup(
        self,
        value: str,
        allowed_tags: FrozenSet[str],
        allowed_attributes: Mapping[str, FrozenSet[str]],
    ) -> BeautifulSoup:
        soup = BeautifulSoup(value, "html.parser")

        for node in soup.find_all(string=lambda s: isinstance(s, _DROPPED_STRINGS)):
            node.extract()

        for tag in soup.find_all(list(DROPPED_TAGS)):
            if not getattr(tag, "decomposed", False):
                tag.decompose()

        for tag in soup.find_all(True):
            if tag.name not in allowed_tags:
                tag.unwrap()
                continue

            permitted = allowed_attributes.get(tag.name, frozenset())
            for attr in list(tag.attrs):
                name = attr.lower()
                if name.startswith("on") or name not in permitted:
                    del tag[attr]
                elif name in URL_ATTRIBUTES and not self._is_safe_url_value(tag[attr]):
                    del tag[attr]

        return soup

    @staticmethod
    def _is_safe_url_value(raw: Any) -> bool:
        if isinstance(raw, list):
            raw = " ".join(raw)
        compact = _URL_NOISE.sub("", str(raw)).lower()
        return not compact.startswith(UNSAFE_SCHEMES)

    def sanitize_string(self, value: str, context: str = "text") -> str:
        """Sanitize a string for the place it will be used.

        "text" returns plain, unescaped text with all markup and scriptable
        content removed; it is not safe to embed in HTML as-is.

        Args:
            value: Untrusted input
            context: One of "text", "html", "attribute", "url"

        Raises:
            McpError: VALIDATION_ERROR for the "javascript" context or an
                unknown context
        """
        if not value:
            return ""
        if context == "html":
            return self.sanitize_html(value)
        if context == "text":
            return self._clean_markup(value, frozenset(), {}).get_text()
        if context == "attribute":
            text = self._clean_markup(value, frozenset(), {}).get_text()
            return re.sub(r"[\"'<>`&]", "", text)
        if context == "url":
            return self.sanitize_url(value)
        if context == "javascript":
            raise _validation_error("JavaScript sanitization is not supported", context=context)
        raise _validation_error(f"Unknown sanitization context: {context}", context=context)

    def sanitize_url(self, value: str, allowed_schemes: Sequence[str] = ("http", "https")) -> str:
        """Validate an absolute URL and return it trimmed.

        Raises:
            McpError: VALIDATION_ERROR if the URL is malformed or its scheme
                is not allowed
        """
        if not isinstance(value, str):
            raise _validation_error("URL must be a string")
        url = value.strip()
        if not url or _URL_NOISE.search(url):
            raise _validation_error("Invalid URL format")

        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in {s.lower() for s in allowed_schemes}:
            raise _validation_error(f"URL scheme not allowed: {parts.scheme or '(none)'}")
        if not parts.netloc:
            raise _validation_error("URL must include a host")
        return url

    # ------------------------------------------------------------------
    # Paths, numbers, JSON
    # ------------------------------------------------------------------

    def sanitize_path(self, value: str, root_dir: str, allow_absolute: bool = False) -> str:
        """Resolve a path against root_dir and reject directory traversal.

        The joined path is normalized (".." collapsed) before the
        containment check.

        Args:
            value: Untrusted path, relative to root_dir
            root_dir: Directory the result must stay inside
            allow_absolute: Accept absolute input (still must be inside root_dir)

        Returns:
            Normalized absolute path inside root_dir

        Raises:
            McpError: VALIDATION_ERROR if the path is empty, contains null
                bytes, is absolute when not allowed, or escapes root_dir
        """
        if not isinstance(value, str) or not value:
            raise _validation_error("Path must be a non-empty string")
        if "\x00" in value:
            raise _validation_error("Path contains null bytes")

        candidate = value.replace("\\", "/")
        if os.path.isabs(candidate) and not allow_absolute:
            raise _validation_error("Absolute paths are not allowed", path=value)

        root = os.path.normpath(os.path.abspath(root_dir))
        resolved = os.path.normpath(os.path.join(root, candidate))

        if os.path.commonpath([root, resolved]) != root:
            raise _validation_error("Path traversal detected", path=value)
        return resolved

    def sanitize_number(
        self,
        value: Any,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
    ) -> float:
        """Parse a number and clamp it into [min_value, max_value].

        Values are compared as Decimal, so integers and exponents too large
        for a float are still clamped.

        Raises:
            McpError: VALIDATION_ERROR if the value is not a finite number, or
                is too large for a float and no bound brings it into range;
                clamping never applies to unparsable input
        """
        if min_value is not None and max_value is not None and min_value > max_value:
            raise _validation_error(f"Invalid bounds: min {min_value} > max {max_value}")

        if isinstance(value, bool) or value is None:
            raise _validation_error(f"Invalid number: {value!r}")
        if isinstance(value, (int, float, Decimal)):
            raw = value
        elif isinstance(value, str):
            raw = value.strip()
        else:
            raise _validation_error(f"Invalid number type: {type(value).__name__}")

        try:
            number = Decimal(raw)
        except InvalidOperation:
            raise _validation_error(f"Invalid number: {value!r}")

        if not number.is_finite():
            raise _validation_error(f"Number must be finite: {value!r}")

        if min_value is not None and number < Decimal(min_value):
            number = Decimal(min_value)
        if max_value is not None and number > Decimal(max_value):
            number = Decimal(max_value)

        result = float(number)
        if not math.isfinite(result):
            raise _validation_error(f"Number out of range: {value!r}")
        return result

    def sanitize_json(self, value: str, max_size: Optional[int] = None) -> Any:
        """Parse a JSON string.

        Raises:
            McpError: VALIDATION_ERROR for non-string, oversized or malformed input
        """
        if not isinstance(value, str):
            raise _validation_error("JSON input must be a string")
        if max_size is not None and len(value.encode("utf-8")) > max_size:
            raise _validation_error(f"JSON exceeds maximum allowed size of {max_size} bytes")
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise _validation_error(f"Invalid JSON format: {e.msg}", line=e.lineno, column=e.colno)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def is_sensitive_key(self, key: Any) -> bool:
        """True if the key, or one of its words, names a sensitive field.

        "apiKey", "x-api-key" and "ACCESS_TOKEN" match; "max_tokens" does not.
        """
        text = str(key)
        words = [w.lower() for w in _WORD_SPLIT.split(_CAMEL_BOUNDARY.sub(r"\1_\2", text)) if w]
        if not words:
            return False
        if "".join(words) in self.sensitive_fields or text.lower() in self.sensitive_fields:
            return True
        return any(w in self.sensitive_fields for w in words)

    def sanitize_for_logging(self, obj: Any) -> Any:
        """Return a redacted deep copy of obj, safe to hand to a log sink.

        Containers (mappings, lists, tuples, sets, dataclasses and request
        contexts) are copied; other values are passed through. Sets come back
        as lists, since redacted members may no longer be hashable. A
        container that appears among its own ancestors is replaced by
        "[Circular]".
        """
        return self._redact(obj, set())

    def _redact(self, value: Any, ancestors: Set[int]) -> Any:
        if isinstance(value, RequestContext):
            value = value.to_dict()
        elif is_dataclass(value) and not isinstance(value, type):
            value = {f.name: getattr(value, f.name) for f in fields(value)}

        if not isinstance(value, (Mapping, list, tuple, set, frozenset)):
            return value

        marker = id(value)
        if marker in ancestors:
            return CIRCULAR
        ancestors.add(marker)
        try:
            if isinstance(value, Mapping):
                return {
                    k: REDACTED if self.is_sensitive_key(k) else self._redact(v, ancestors)
                    for k, v in value.items()
                }
            items = [self._redact(v, ancestors) for v in value]
            if isinstance(value, tuple):
                return tuple(items)
            return items
        finally:
            ancestors.discard(marker)
