"""Injection detection and best-effort sanitization."""
import html
import json
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from reqshield.app.core.logging import get_logger, log_security_event
from reqshield.app.exceptions import PathTraversalError
from reqshield.app.services.threat_scanner.models import ScanResult, ThreatFinding
from reqshield.app.services.threat_scanner.patterns import (
    CATEGORY_ORDER,
    SIGNATURES,
    ThreatCategory,
    ThreatSignature,
)

logger = get_logger(__name__)

CategoryLike = Union[ThreatCategory, str]

EXCERPT_LENGTH = 100

_SQL_LINE_COMMENT = re.compile(r"--.*$", re.MULTILINE)
_SQL_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


class ThreatScanner:
    """Stateless pattern-matching engine for injection attempts.

    Strings are checked against the text signatures (SQL, command, path
    traversal, LDAP). Dicts and lists are serialized to JSON and checked
    against the structural signatures (NoSQL operator keys). Any other
    value is safe.

    Detection never modifies input. The sanitize* methods are separate,
    explicit calls for callers that prefer a cleaned value to a rejection.
    """

    def __init__(
        self,
        signatures: Optional[Dict[ThreatCategory, ThreatSignature]] = None,
        log_violations: bool = True,
    ):
        self._signatures = signatures or SIGNATURES
        self.log_violations = log_violations

    @staticmethod
    def resolve_categories(
        categories: Optional[Iterable[CategoryLike]] = None,
    ) -> List[ThreatCategory]:
        """Normalize a category selection into canonical evaluation order."""
        if categories is None:
            return list(CATEGORY_ORDER)
        wanted = {ThreatCategory(c) for c in categories}
        return [c for c in CATEGORY_ORDER if c in wanted]

    def scan(
        self,
        value: Any,
        categories: Optional[Iterable[CategoryLike]] = None,
    ) -> ScanResult:
        """Classify a value as safe or report the first matching threat.

        Args:
            value: String, dict or list to inspect
            categories: Categories to check (default: all)

        Returns:
            ScanResult with the category and pattern id of the first match
        """
        if isinstance(value, str):
            text, structural = value, False
        elif isinstance(value, (dict, list)):
            text, structural = json.dumps(value, default=str, ensure_ascii=False), True
        else:
            return ScanResult.clean()

        for category in self.resolve_categories(categories):
            signature = self._signatures.get(category)
            if signature is None or signature.structural != structural:
                continue
            for pattern_id, regex in signature.patterns:
                if regex.search(text):
                    self._report_violation(signature, pattern_id, text)
                    return ScanResult(
                        safe=False, category=category, matched_pattern=pattern_id
                    )

        return ScanResult.clean()

    def scan_fields(
        self,
        data: Any,
        categories: Optional[Iterable[CategoryLike]] = None,
        field: str = "",
    ) -> List[ThreatFinding]:
        """Scan every string leaf of a request payload.

        The payload as a whole is also checked against the structural
        signatures, so operator objects nested anywhere are caught.

        Returns:
            One finding per offending field, in traversal order
        """
        selected = self.resolve_categories(categories)
        findings: List[ThreatFinding] = []

        if isinstance(data, (dict, list)):
            structural = [c for c in selected if self._signatures[c].structural]
            if structural:
                result = self.scan(data, structural)
                if not result.safe:
                    findings.append(
                        ThreatFinding(field or "$", result.category, result.matched_pattern)
                    )

        textual = [c for c in selected if not self._signatures[c].structural]
        if textual:
            self._walk(data, field, textual, findings)
        return findings

    def _walk(
        self,
        value: Any,
        field: str,
        categories: List[ThreatCategory],
        findings: List[ThreatFinding],
    ) -> None:
        if isinstance(value, dict):
            for key, item in value.items():
                self._walk(item, f"{field}.{key}" if field else str(key), categories, findings)
        elif isinstance(value, list):
            for index, item in enumerate(value):
                self._walk(item, f"{field}[{index}]", categories, findings)
        elif isinstance(value, str):
            result = self.scan(value, categories)
            if not result.safe:
                findings.append(
                    ThreatFinding(field or "$", result.category, result.matched_pattern)
                )

    def _report_violation(
        self, signature: ThreatSignature, pattern_id: str, text: str
    ) -> None:
        if not self.log_violations:
            return
        log_security_event(
            logger,
            logging.WARNING,
            signature.event_code,
            f"Security violation detected: {signature.category.value}",
            category=signature.category.value,
            pattern=pattern_id,
            excerpt=text[:EXCERPT_LENGTH],
        )

    # Convenience detectors, one per category

    def detect_sql_injection(self, value: Any) -> ScanResult:
        return self.scan(value, [ThreatCategory.SQL])

    def detect_nosql_injection(self, value: Any) -> ScanResult:
        return self.scan(value, [ThreatCategory.NOSQL])

    def detect_command_injection(self, value: Any) -> ScanResult:
        return self.scan(value, [ThreatCategory.COMMAND])

    def detect_path_traversal(self, value: Any) -> ScanResult:
        return self.scan(value, [ThreatCategory.PATH_TRAVERSAL])

    def detect_ldap_injection(self, value: Any) -> ScanResult:
        return self.scan(value, [ThreatCategory.LDAP])

    # Sanitization

    def sanitize(
        self,
        value: Any,
        categories: Optional[Iterable[CategoryLike]] = None,
    ) -> Any:
        """Cleanse a string, then rescan it.

        Cleansing doubles single quotes and strips SQL comments when SQL is
        selected, drops NUL bytes, and flattens line breaks when command
        injection is selected. Cleansing is not trusted to be complete: if
        the result still matches a selected signature, an empty string is
        returned instead of the partially cleaned value.
        """
        if not isinstance(value, str):
            return value

        selected = self.resolve_categories(categories)
        cleansed = value.replace("\x00", "")
        if ThreatCategory.SQL in selected:
            cleansed = cleansed.replace("'", "''")
            cleansed = _SQL_LINE_COMMENT.sub("", cleansed)
            cleansed = _SQL_BLOCK_COMMENT.sub("", cleansed)
        if ThreatCategory.COMMAND in selected:
            cleansed = cleansed.replace("\r", " ").replace("\n", " ")

        if not self.scan(cleansed, selected).safe:
            log_security_event(
                logger,
                logging.WARNING,
                "SECURITY_UNSAFE_AFTER_SANITIZATION",
                "Input still matches threat signatures after sanitization",
                excerpt=value[:EXCERPT_LENGTH],
            )
            return ""
        return cleansed

    def sanitize_sql(self, value: Any) -> Any:
        """Sanitize for SQL contexts (prefer parameterized queries)."""
        return self.sanitize(value, [ThreatCategory.SQL])

    @staticmethod
    def sanitize_markup(value: str) -> str:
        """HTML-escape a string for safe reflection into markup."""
        return html.escape(value, quote=True)

    def sanitize_value(self, value: Any) -> Any:
        """Recursively HTML-escape every string in a payload.

        Dict keys are kept as-is; non-string leaves pass through unchanged.
        """
        if isinstance(value, str):
            return self.sanitize_markup(value)
        if isinstance(value, dict):
            return {key: self.sanitize_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.sanitize_value(item) for item in value]
        return value

    def sanitize_file_path(self, path: Any, base_path: Optional[str] = None) -> str:
        """Validate a user-supplied file path.

        Args:
            path: Relative path from user input
            base_path: Directory the path must stay inside

        Returns:
            The normalized path, resolved against base_path when given

        Raises:
            PathTraversalError: On traversal sequences or a path that
                resolves outside base_path
        """
        if not isinstance(path, str):
            raise PathTraversalError(str(path), "Path must be a string")

        if not self.detect_path_traversal(path).safe:
            raise PathTraversalError(path)

        normalized = os.path.normpath(path)
        if base_path is None:
            return normalized

        base = os.path.realpath(base_path)
        resolved = os.path.realpath(os.path.join(base, normalized))
        if os.path.commonpath([base, resolved]) != base:
            log_security_event(
                logger,
                logging.WARNING,
                "SECURITY_PATH_OUTSIDE_BASE",
                "Path resolves outside the allowed directory",
                excerpt=path[:EXCERPT_LENGTH],
            )
            raise PathTraversalError(path, "Path is outside the allowed directory")
        return resolved
