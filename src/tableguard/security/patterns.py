"""Threat signature rules.

Two rule tables live here:

- **Scored rules** used by the anomaly engine. Each rule carries a fixed
  confidence calibrated by how specific the signature is (``UNION SELECT``
  is far more telling than a bare quote).
- **Block rules** used by the input validator. Any match rejects the input.

All patterns are compiled once at import. Within a family the maximum
matching confidence wins, so rule order never changes a result.
"""

import re
from dataclasses import dataclass
from enum import StrEnum


class ThreatFamily(StrEnum):
    """Threat families recognised by the rule tables."""

    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"
    COMMAND_INJECTION = "command_injection"


# Event type reported when a family is detected
FAMILY_EVENT_TYPES = {
    ThreatFamily.SQL_INJECTION: "sql_injection_attempt",
    ThreatFamily.XSS: "xss_attempt",
    ThreatFamily.PATH_TRAVERSAL: "path_traversal_attempt",
    ThreatFamily.COMMAND_INJECTION: "command_injection_attempt",
}


@dataclass(frozen=True)
class PatternRule:
    """A compiled signature with its family and confidence."""

    name: str
    family: ThreatFamily
    pattern: re.Pattern
    confidence: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 < self.confidence <= 1.0:
            raise ValueError(f"Rule {self.name}: confidence must be in (0, 1]")


@dataclass(frozen=True)
class PatternMatch:
    """A rule that matched a value."""

    rule: PatternRule
    matched: str

    @property
    def family(self) -> ThreatFamily:
        return self.rule.family

    @property
    def confidence(self) -> float:
        return self.rule.confidence

    def describe(self, max_chars: int = 100) -> dict[str, object]:
        """Loggable description with the matched text truncated."""
        return {
            "rule": self.rule.name,
            "family": self.rule.family.value,
            "match": self.matched[:max_chars],
            "confidence": self.rule.confidence,
        }


def _rule(
    name: str, family: ThreatFamily, regex: str, confidence: float = 1.0, flags: int = 0
) -> PatternRule:
    return PatternRule(
        name=name, family=family, pattern=re.compile(regex, flags), confidence=confidence
    )


_I = re.IGNORECASE
_SQL = ThreatFamily.SQL_INJECTION
_XSS = ThreatFamily.XSS
_PATH = ThreatFamily.PATH_TRAVERSAL
_CMD = ThreatFamily.COMMAND_INJECTION


class RuleSet:
    """An immutable collection of rules evaluated in a single pass."""

    def __init__(self, rules: list[PatternRule] | tuple[PatternRule, ...]):
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[PatternRule, ...]:
        return self._rules

    def families(self) -> set[ThreatFamily]:
        return {rule.family for rule in self._rules}

    def only(self, *families: ThreatFamily) -> "RuleSet":
        """Subset restricted to the given families."""
        return RuleSet([r for r in self._rules if r.family in families])

    def match(self, value: str) -> list[PatternMatch]:
        """Return every rule matching value."""
        matches = []
        for rule in self._rules:
            found = rule.pattern.search(value)
            if found:
                matches.append(PatternMatch(rule=rule, matched=found.group(0)))
        return matches

    def matches_any(self, value: str) -> bool:
        return any(rule.pattern.search(value) for rule in self._rules)

    def max_confidence(self, value: str) -> float:
        """Highest confidence among matching rules (0.0 if none)."""
        return max((m.confidence for m in self.match(value)), default=0.0)

    def __len__(self) -> int:
        return len(self._rules)


SCORED_RULES = RuleSet(
    [
        # SQL injection, high confidence
        _rule("union_select", _SQL, r"(\s|^)(union\s+select|union\s+all\s+select)", 0.95, _I),
        _rule("numeric_tautology", _SQL, r"(\s|^)(or|and)\s+\d+\s*=\s*\d+(\s+--|\s*$)", 0.90, _I),
        _rule("destructive_statement", _SQL, r"(\s|^)(drop\s+table|truncate\s+table|delete\s+from)", 0.98, _I),
        _rule("exec_call", _SQL, r"(\s|^)(exec|execute)\s*\(", 0.92, _I),
        _rule("comment_then_statement", _SQL, r"/\*.*\*/.*(\s|^)(union|select|insert|update|delete)", 0.94, _I),
        # SQL injection, medium confidence
        _rule("string_tautology", _SQL, r"(\s|^)(or|and)\s+['\"].*['\"](\s*=\s*['\"].*['\"])?", 0.85, _I),
        _rule("stacked_statement", _SQL, r";\s*(union|select|insert|update|delete|drop)", 0.88, _I),
        _rule("line_comment", _SQL, r"--\s*.*$", 0.75, re.MULTILINE),
        _rule("schema_probe", _SQL, r"(\s|^)(information_schema|mysql\.user|sys\.)", 0.82, _I),
        _rule("file_access", _SQL, r"(\s|^)(load_file|into\s+outfile|into\s+dumpfile)", 0.89, _I),
        # SQL injection, low confidence
        _rule("sql_keyword", _SQL, r"\b(select|insert|update|delete|drop|create|alter)\b", 0.60, _I),
        _rule("quote_terminator", _SQL, r"['\"](\s*;\s*|\s*\|\|\s*|\s*&&\s*)", 0.65),
        _rule("script_keyword", _SQL, r"\b(script|javascript|vbscript)\b", 0.55, _I),
        # XSS, high confidence
        _rule("script_block", _XSS, r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", 0.95, _I | re.MULTILINE),
        _rule("javascript_uri", _XSS, r"javascript:\s*[^\"\s]+", 0.90, _I),
        _rule("iframe_javascript", _XSS, r"<iframe\b[^>]*src\s*=\s*['\"]?javascript:", 0.98, _I),
        _rule("event_handler_value", _XSS, r"on(load|error|click|focus|blur|change|submit)\s*=\s*['\"][^'\"]*", 0.85, _I),
        _rule("object_javascript", _XSS, r"<object\b[^>]*data\s*=\s*['\"]?javascript:", 0.92, _I),
        # XSS, medium confidence
        _rule("active_tag", _XSS, r"<(script|iframe|object|embed|form)\b[^>]*>", 0.75, _I),
        _rule("css_expression", _XSS, r"expression\s*\(", 0.80, _I),
        _rule("vbscript_uri", _XSS, r"vbscript:\s*[^\"\s]+", 0.85, _I),
        _rule("data_html_uri", _XSS, r"data:\s*text/html", 0.70, _I),
        _rule("tag_event_handler", _XSS, r"<[^>]*on\w+\s*=", 0.72, _I),
        # XSS, low confidence
        _rule("markup_characters", _XSS, r"[<>\"']", 0.50),
        _rule("escaped_markup", _XSS, r"&(lt|gt|quot|amp);", 0.45),
        # Path traversal
        _rule("dot_dot_slash", _PATH, r"\.\.[/\\]", 0.95),
        _rule("null_byte", _PATH, r"\x00", 0.98),
        _rule("encoded_dot_dot", _PATH, r"(\.\.%2f|\.\.%5c)", 0.92, _I),
        _rule("repeated_traversal", _PATH, r"(\.\./){2,}", 0.90),
        _rule("home_relative", _PATH, r"~/", 0.70),
        _rule("system_directory", _PATH, r"/(etc|proc|sys|var|tmp)/", 0.85, _I),
        # Command injection
        _rule("shell_metacharacter", _CMD, r"[;&|`$(){}]", 0.80),
        _rule("exec_function", _CMD, r"(exec|system|shell_exec|passthru|eval)\s*\(", 0.95, _I),
        _rule("piped_command", _CMD, r"\|\s*(cat|ls|dir|type|echo|ping|wget|curl)", 0.88, _I),
        _rule("chained_destructive", _CMD, r"&&\s*(rm|del|format|fdisk)", 0.92, _I),
    ]
)


BLOCK_RULES = RuleSet(
    [
        _rule("sql_statement_keyword", _SQL, r"(\s|^)(union|select|insert|update|delete|drop|create|alter|exec|execute)\s", flags=_I),
        _rule("numeric_tautology", _SQL, r"(\s|^)(or|and)\s+\d+\s*=\s*\d+", flags=_I),
        _rule("string_tautology", _SQL, r"(\s|^)(or|and)\s+['\"].*['\"](\s*=\s*['\"].*['\"])?", flags=_I),
        _rule("line_comment", _SQL, r"--\s*.*$", flags=re.MULTILINE),
        _rule("block_comment", _SQL, r"/\*.*\*/", flags=re.DOTALL),
        _rule("stacked_statement", _SQL, r";\s*(union|select|insert|update|delete|drop)", flags=_I),
        _rule("script_block", _XSS, r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", flags=_I | re.MULTILINE),
        _rule("script_keyword", _XSS, r"\b(script|javascript|vbscript|onload|onerror|onclick)\b", flags=_I),
        _rule("javascript_uri", _XSS, r"javascript:", flags=_I),
        _rule("event_handler", _XSS, r"\bon\w+\s*=", flags=_I),
        _rule("iframe_tag", _XSS, r"<iframe\b[^>]*>", flags=_I),
        _rule("object_tag", _XSS, r"<object\b[^>]*>", flags=_I),
        _rule("embed_tag", _XSS, r"<embed\b[^>]*>", flags=_I),
        _rule("css_expression", _XSS, r"expression\s*\(", flags=_I),
        _rule("vbscript_uri", _XSS, r"vbscript:", flags=_I),
        _rule("dot_dot_slash", _PATH, r"\.\.[/\\]"),
        _rule("null_byte", _PATH, r"\x00"),
        _rule("encoded_dot_dot", _PATH, r"(\.\.%2f|\.\.%5c)", flags=_I),
    ]
)
