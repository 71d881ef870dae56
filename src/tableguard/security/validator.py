"""Input validation for table and form identifiers and values.

Rejects or sanitizes externally supplied identifiers (table and column names)
and values (search, filter, order strings, ...) before they reach any query
construction code.

Every rejection is reported as one security event through the injected
:class:`SecurityEventSink` before the typed error propagates. Reported values
are truncated so a hostile payload cannot inflate the logs.
"""

import html
import logging
import re
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any, ClassVar, Protocol

from pydantic import BaseModel, Field

from tableguard.config.schema import ValidatorConfig

from .exceptions import (
    InjectionDetected,
    InputTooLong,
    InvalidIdentifier,
    SecurityValidationError,
    XssDetected,
)
from .patterns import BLOCK_RULES, PatternMatch, RuleSet, ThreatFamily

logger = logging.getLogger(__name__)


class SecurityEventSink(Protocol):
    """Anything that accepts security events (normally the monitoring service)."""

    def log_security_event(
        self,
        event_type: str,
        context: dict[str, Any] | None = None,
        severity: Any = None,
    ) -> None: ...


class IdentifierKind(StrEnum):
    """Kinds of SQL identifiers."""

    TABLE = "table"
    COLUMN = "column"


class ValueType(StrEnum):
    """Value types with distinct sanitation rules."""

    STRING = "string"
    TEXT = "text"
    SEARCH = "search"
    FILTER = "filter"
    ORDER = "order"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"


# Types whose output is coerced to a closed set; payloads are neutralized, not rejected
CLOSED_SET_TYPES = frozenset({ValueType.ORDER, ValueType.INT, ValueType.FLOAT, ValueType.BOOL})


class FieldRule(BaseModel):
    """Validation rule for one key of array input."""

    type: ValueType = ValueType.STRING
    max_length: int | None = Field(default=None, ge=1)


class InputValidator:
    """Validates identifiers and sanitizes values.

    Usage:
        validator = InputValidator(sink=monitoring_service)

        table = validator.validate_identifier("users", IdentifierKind.TABLE)
        column = validator.validate_identifier("users.created_at", IdentifierKind.COLUMN)
        term = validator.sanitize_value(request_term, ValueType.SEARCH)
    """

    TABLE_NAME_PATTERN: ClassVar[re.Pattern] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
    COLUMN_NAME_PATTERN: ClassVar[re.Pattern] = re.compile(
        r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$"
    )

    # Derived/aggregate columns are allowed without whitelisting
    DYNAMIC_COLUMN_SUFFIXES: ClassVar[tuple[str, ...]] = (
        "_id",
        "_at",
        "_by",
        "_count",
        "_sum",
        "_avg",
        "_max",
        "_min",
    )

    DEFAULT_WHITELIST: ClassVar[tuple[str, ...]] = (
        "id",
        "name",
        "email",
        "created_at",
        "updated_at",
        "deleted_at",
        "title",
        "description",
        "status",
        "type",
        "category_id",
        "user_id",
        "slug",
        "content",
        "price",
        "quantity",
        "active",
        "published",
        "meta_title",
        "meta_description",
        "sort_order",
        "parent_id",
    )

    DANGEROUS_SQL_KEYWORDS: ClassVar[tuple[str, ...]] = (
        "drop",
        "truncate",
        "delete",
        "insert",
        "update",
        "create",
        "alter",
        "exec",
        "execute",
        "sp_",
        "xp_",
        "cmdshell",
        "openrowset",
        "openquery",
    )

    MAX_KEY_LENGTH = 64

    def __init__(
        self,
        config: ValidatorConfig | None = None,
        sink: SecurityEventSink | None = None,
        rules: RuleSet = BLOCK_RULES,
    ):
        """Initialize validator.

        Args:
            config: Validator configuration
            sink: Receiver for security violation events
            rules: Block rules used for injection and XSS checks
        """
        self.config = config or ValidatorConfig()
        self.sink = sink

        enabled = set()
        if self.config.sql_injection_protection:
            enabled.add(ThreatFamily.SQL_INJECTION)
        if self.config.xss_protection:
            enabled.add(ThreatFamily.XSS)
        if self.config.path_traversal_protection:
            enabled.add(ThreatFamily.PATH_TRAVERSAL)

        self._sql_rules = rules.only(ThreatFamily.SQL_INJECTION).only(*enabled)
        self._xss_rules = rules.only(ThreatFamily.XSS).only(*enabled)
        self._path_rules = rules.only(ThreatFamily.PATH_TRAVERSAL).only(*enabled)

        self._whitelist: list[str] = list(self.DEFAULT_WHITELIST)
        self.add_whitelisted_columns(self.config.whitelist_columns)

    # -- whitelist -------------------------------------------------------

    def add_whitelisted_columns(self, columns: str | Iterable[str]) -> None:
        """Add custom column names to the whitelist."""
        if isinstance(columns, str):
            columns = [columns]
        for column in columns:
            if column not in self._whitelist:
                self._whitelist.append(column)

    @property
    def whitelisted_columns(self) -> list[str]:
        return list(self._whitelist)

    # -- identifiers -----------------------------------------------------

    def validate_identifier(
        self,
        name: str,
        kind: IdentifierKind | str = IdentifierKind.TABLE,
        whitelist: Iterable[str] | None = None,
    ) -> str:
        """Validate a table or column name.

        Args:
            name: Identifier supplied by the caller
            kind: TABLE or COLUMN
            whitelist: Extra column names allowed for this call

        Returns:
            The identifier unchanged

        Raises:
            InputTooLong: Identifier exceeds its maximum length
            InjectionDetected: Identifier contains an injection payload
            InvalidIdentifier: Bad characters, or column not whitelisted
        """
        kind = IdentifierKind(kind)
        if not isinstance(name, str) or not name:
            self._reject(
                InvalidIdentifier,
                "invalid_input_validation",
                f"empty_{kind}_name",
                str(name),
            )

        if kind is IdentifierKind.TABLE:
            bare = name
            max_length = self.config.table_name_max_length
            pattern = self.TABLE_NAME_PATTERN
        else:
            bare = self._strip_table_prefix(name)
            max_length = self.config.column_name_max_length
            pattern = self.COLUMN_NAME_PATTERN

        if len(bare) > max_length:
            self._reject(
                InputTooLong,
                "invalid_input_validation",
                f"{kind}_name_too_long",
                name,
                length=len(bare),
                max_length=max_length,
            )

        self._check_injection(name, f"{kind}_name")

        if not pattern.match(name):
            self._reject(
                InvalidIdentifier,
                "invalid_input_validation",
                f"invalid_{kind}_name_pattern",
                name,
                pattern=pattern.pattern,
            )

        if kind is IdentifierKind.COLUMN:
            allowed = set(self._whitelist)
            if whitelist:
                allowed.update(whitelist)
            if bare not in allowed and not self.is_dynamic_column(bare):
                self._reject(
                    InvalidIdentifier,
                    "invalid_input_validation",
                    "column_not_whitelisted",
                    name,
                    clean_name=bare,
                )

        return name

    def validate_table_name(self, name: str) -> str:
        return self.validate_identifier(name, IdentifierKind.TABLE)

    def validate_column_name(self, name: str, whitelist: Iterable[str] | None = None) -> str:
        return self.validate_identifier(name, IdentifierKind.COLUMN, whitelist)

    @classmethod
    def is_dynamic_column(cls, column: str) -> bool:
        """Whether column ends with an aggregate/derived suffix."""
        return column.endswith(cls.DYNAMIC_COLUMN_SUFFIXES)

    @staticmethod
    def _strip_table_prefix(name: str) -> str:
        return name.rsplit(".", 1)[-1] if "." in name else name

    # -- values ----------------------------------------------------------

    def sanitize_value(
        self,
        value: Any,
        type: ValueType | str = ValueType.STRING,
        max_length: int | None = None,
    ) -> Any:
        """Validate and sanitize a single value.

        Args:
            value: Raw value
            type: Value type selecting the sanitation rule
            max_length: Override for the type's default maximum length

        Returns:
            Sanitized value (type depends on ``type``)

        Raises:
            InputTooLong: Value exceeds its maximum length
            InjectionDetected: SQL injection or path traversal in a free-text value
            XssDetected: Markup/script payload in a free-text value
        """
        value_type = ValueType(type)
        if value is None or value == "":
            return value

        text = value if isinstance(value, str) else str(value)
        limit = max_length or self.config.max_lengths.get(
            value_type.value, self.config.max_lengths.get("string", 255)
        )
        if len(text) > limit:
            self._reject(
                InputTooLong,
                "invalid_input_validation",
                "input_value_too_long",
                text,
                type=value_type.value,
                length=len(text),
                max_length=limit,
            )

        if value_type in CLOSED_SET_TYPES:
            sanitized = self._coerce(value, value_type)
            self._report_neutralized(text, value_type)
            return sanitized

        self._check_injection(text, "value", type=value_type.value)
        self._check_xss(text, "value", type=value_type.value)
        return self._sanitize_text(text, value_type)

    def validate_array(
        self,
        data: Mapping[Any, Any],
        rules: Mapping[Any, Any] | None = None,
        _depth: int = 0,
    ) -> dict[Any, Any]:
        """Validate keys and sanitize values of (nested) mapping input.

        Args:
            data: Mapping of user input
            rules: Per-key :class:`FieldRule` (or dict form); nested mappings
                take a nested rules mapping

        Returns:
            New mapping with sanitized values

        Raises:
            InvalidIdentifier: A key is malformed
            InputTooLong: Nesting exceeds the configured depth
            SecurityValidationError: Any value check failed
        """
        if _depth >= self.config.max_nesting_depth:
            self._reject(
                InputTooLong,
                "invalid_input_validation",
                "array_nesting_too_deep",
                "",
                max_depth=self.config.max_nesting_depth,
            )

        rules = rules or {}
        sanitized: dict[Any, Any] = {}

        for key, value in data.items():
            self._check_key(key, value)
            key_rule = rules.get(key)

            if isinstance(value, Mapping):
                nested_rules = key_rule if isinstance(key_rule, Mapping) and "type" not in key_rule else {}
                sanitized[key] = self.validate_array(value, nested_rules, _depth + 1)
                continue

            field_rule = self._field_rule(key_rule)
            if isinstance(value, list | tuple):
                sanitized[key] = [
                    self.validate_array(item, {}, _depth + 1)
                    if isinstance(item, Mapping)
                    else self.sanitize_value(item, field_rule.type, field_rule.max_length)
                    for item in value
                ]
            else:
                sanitized[key] = self.sanitize_value(value, field_rule.type, field_rule.max_length)

        return sanitized

    def validate_sql_safe_pattern(self, value: str, context: str = "general") -> str:
        """Reject values containing dangerous SQL keywords anywhere.

        Stricter than :meth:`sanitize_value`: a substring match is enough.
        """
        lowered = value.lower()
        for keyword in self.DANGEROUS_SQL_KEYWORDS:
            if keyword in lowered:
                self._reject(
                    InjectionDetected,
                    "sql_injection_attempt",
                    "dangerous_sql_keyword",
                    value,
                    keyword=keyword,
                    context=context,
                )
        return value

    # -- checks ----------------------------------------------------------

    def _check_injection(self, text: str, subject: str, **extra: Any) -> None:
        matches = self._sql_rules.match(text)
        if matches:
            self._reject(
                InjectionDetected,
                "sql_injection_attempt",
                f"sql_injection_attempt_{subject}",
                text,
                matches=matches,
                **extra,
            )

        matches = self._path_rules.match(text)
        if matches:
            self._reject(
                InjectionDetected,
                "path_traversal_attempt",
                f"path_traversal_attempt_{subject}",
                text,
                matches=matches,
                **extra,
            )

    def _check_xss(self, text: str, subject: str, **extra: Any) -> None:
        matches = self._xss_rules.match(text)
        if matches:
            self._reject(
                XssDetected,
                "xss_attempt",
                f"xss_attempt_{subject}",
                text,
                matches=matches,
                **extra,
            )

    def _check_key(self, key: Any, value: Any) -> None:
        if isinstance(key, bool) or not isinstance(key, str | int):
            self._reject(
                InvalidIdentifier, "invalid_input_validation", "invalid_array_key", repr(key)
            )

        text = str(key)
        suspicious = (
            len(text) > self.MAX_KEY_LENGTH
            or self._sql_rules.matches_any(text)
            or self._xss_rules.matches_any(text)
        )
        if suspicious:
            preview = value[:50] if isinstance(value, str) else type(value).__name__
            self._reject(
                InvalidIdentifier,
                "invalid_input_validation",
                "invalid_array_key",
                text,
                value_preview=preview,
            )

    @staticmethod
    def _field_rule(rule: Any) -> FieldRule:
        if isinstance(rule, FieldRule):
            return rule
        if isinstance(rule, Mapping):
            return FieldRule(**rule)
        if isinstance(rule, str | ValueType):
            return FieldRule(type=ValueType(rule))
        return FieldRule()

    # -- sanitation ------------------------------------------------------

    @staticmethod
    def _sanitize_text(text: str, value_type: ValueType) -> str:
        if value_type is ValueType.SEARCH:
            return re.sub(r"[^\w\s%*.\-]", "", text)
        if value_type is ValueType.FILTER:
            return re.sub(r"[^\w\s.\-]", "", text)
        return html.escape(text, quote=True)

    @staticmethod
    def _coerce(value: Any, value_type: ValueType) -> Any:
        if value_type is ValueType.ORDER:
            clean = re.sub(r"[^\w.]", "", str(value)).lower()
            return clean if clean in ("asc", "desc") else "asc"

        if value_type is ValueType.INT:
            if isinstance(value, bool):
                return int(value)
            try:
                return int(str(value).strip())
            except ValueError:
                return 0

        if value_type is ValueType.FLOAT:
            try:
                return float(str(value).strip())
            except ValueError:
                return 0.0

        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "on", "yes")

    def _report_neutralized(self, text: str, value_type: ValueType) -> None:
        """Report a payload that was coerced away instead of rejected."""
        for rules, event_type in (
            (self._sql_rules, "sql_injection_attempt"),
            (self._path_rules, "path_traversal_attempt"),
            (self._xss_rules, "xss_attempt"),
        ):
            matches = rules.match(text)
            if matches:
                self._report(
                    event_type,
                    f"{event_type}_{value_type.value}_value",
                    text,
                    action_taken="sanitized",
                    matches=matches,
                    type=value_type.value,
                )
                return

    # -- reporting -------------------------------------------------------

    def _reject(
        self,
        error: type[SecurityValidationError],
        event_type: str,
        violation: str,
        value: str,
        matches: list[PatternMatch] | None = None,
        **extra: Any,
    ) -> None:
        context = self._report(
            event_type, violation, value, action_taken="blocked", matches=matches, **extra
        )
        raise error(violation=violation, context=context)

    def _report(
        self,
        event_type: str,
        violation: str,
        value: str,
        action_taken: str,
        matches: list[PatternMatch] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        max_chars = self.config.logged_value_max_chars
        context: dict[str, Any] = {
            "violation_type": violation,
            "value": value[:max_chars],
            "value_length": len(value),
            "action_taken": action_taken,
        }
        if matches:
            context["detected_patterns"] = [m.describe(max_chars) for m in matches]
        context.update(extra)

        if self.sink is not None:
            try:
                self.sink.log_security_event(event_type, context)
            except Exception:
                logger.exception("Failed to report security violation %s", violation)
        else:
            logger.warning("Security input validation violation: %s", violation)
        return context
