"""Threat signature tables.

Each category owns an ordered list of (pattern id, compiled regex).
Categories are evaluated in CATEGORY_ORDER and patterns in list order;
the first match decides the reported category and pattern id.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Pattern, Tuple


class ThreatCategory(str, Enum):
    """Injection families the scanner can report."""
    SQL = "sql"
    NOSQL = "nosql"
    COMMAND = "command"
    PATH_TRAVERSAL = "path_traversal"
    LDAP = "ldap"


@dataclass(frozen=True)
class ThreatSignature:
    """A category with its ordered detection patterns.

    ``structural`` signatures are matched against JSON-serialized dicts and
    lists; the others against plain strings.
    """
    category: ThreatCategory
    patterns: Tuple[Tuple[str, Pattern[str]], ...]
    structural: bool = False
    event_code: str = ""


SQL_PATTERNS: List[Tuple[str, str]] = [
    ("sql.keyword", r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE|UNION|DECLARE)\b"),
    ("sql.comment", r"(--|;|/\*|\*/|\bxp_|\bsp_)"),
    ("sql.quote_escape", r"(\\['\"])|(['\"]\s*(\)|#|\bOR\b|\bAND\b))"),
    ("sql.tautology", r"\b(OR|AND)\b\s+['\"]?\w+['\"]?\s*(=|<>|!=|LIKE)\s*['\"]?\w+"),
    ("sql.hex_literal", r"\b0x[0-9a-f]+\b"),
]

# Matched against JSON text, so an operator only counts in key position.
NOSQL_PATTERNS: List[Tuple[str, str]] = [
    ("nosql.where", r"\"\$where\"\s*:"),
    ("nosql.ne", r"\"\$ne\"\s*:"),
    ("nosql.gt", r"\"\$gte?\"\s*:"),
    ("nosql.lt", r"\"\$lte?\"\s*:"),
    ("nosql.regex", r"\"\$regex\"\s*:"),
    ("nosql.nin", r"\"\$nin\"\s*:"),
    ("nosql.in", r"\"\$in\"\s*:"),
]

COMMAND_PATTERNS: List[Tuple[str, str]] = [
    ("command.metachar", r"[;&|`$()]"),
    ("command.newline", r"\n"),
    ("command.carriage_return", r"\r"),
]

PATH_TRAVERSAL_PATTERNS: List[Tuple[str, str]] = [
    ("path.dot_dot_slash", r"\.\.[/\\]"),
    ("path.encoded_dot_dot", r"%2e%2e(%2f|%5c|/|\\)"),
    ("path.double_encoded", r"%252e"),
    ("path.mixed_encoding", r"\.\.(%2f|%5c)"),
]

LDAP_PATTERNS: List[Tuple[str, str]] = [
    ("ldap.metachar", r"[*()\\]"),
    ("ldap.nul_byte", r"\x00"),
]


def _compile(table: List[Tuple[str, str]]) -> Tuple[Tuple[str, Pattern[str]], ...]:
    return tuple((pid, re.compile(expr, re.IGNORECASE)) for pid, expr in table)


SIGNATURES: Dict[ThreatCategory, ThreatSignature] = {
    ThreatCategory.SQL: ThreatSignature(
        ThreatCategory.SQL, _compile(SQL_PATTERNS),
        event_code="SECURITY_SQL_INJECTION_ATTEMPT",
    ),
    ThreatCategory.NOSQL: ThreatSignature(
        ThreatCategory.NOSQL, _compile(NOSQL_PATTERNS), structural=True,
        event_code="SECURITY_NOSQL_INJECTION_ATTEMPT",
    ),
    ThreatCategory.COMMAND: ThreatSignature(
        ThreatCategory.COMMAND, _compile(COMMAND_PATTERNS),
        event_code="SECURITY_COMMAND_INJECTION_ATTEMPT",
    ),
    ThreatCategory.PATH_TRAVERSAL: ThreatSignature(
        ThreatCategory.PATH_TRAVERSAL, _compile(PATH_TRAVERSAL_PATTERNS),
        event_code="SECURITY_PATH_TRAVERSAL_ATTEMPT",
    ),
    ThreatCategory.LDAP: ThreatSignature(
        ThreatCategory.LDAP, _compile(LDAP_PATTERNS),
        event_code="SECURITY_LDAP_INJECTION_ATTEMPT",
    ),
}

# Canonical evaluation order, independent of how callers list categories.
CATEGORY_ORDER: Tuple[ThreatCategory, ...] = (
    ThreatCategory.SQL,
    ThreatCategory.NOSQL,
    ThreatCategory.COMMAND,
    ThreatCategory.PATH_TRAVERSAL,
    ThreatCategory.LDAP,
)

ALL_CATEGORIES: Tuple[ThreatCategory, ...] = CATEGORY_ORDER
