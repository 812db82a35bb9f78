"""
Safety gate for raw SQL handed back by the intent pipeline.

Compiled queries never pass through here: the compiler only emits SELECTs
with bound parameters.  Free-form SQL does, and is rejected unless it is a
single read-only SELECT (or WITH ... SELECT) with a bounded LIMIT that does
not reach into system catalogs.

Each rule sees the statement with its string literals blanked out, so a
value like ``'DROP'`` or ``'--'`` inside quotes is not a violation.
"""
from __future__ import annotations

import re
from typing import Callable, Optional

from smartbi.core.logging import get_logger

logger = get_logger(__name__)

BLOCKED_SCHEMAS = ("pg_catalog", "information_schema", "mysql", "sys")

_LITERAL = re.compile(r"'(?:[^']|'')*'")

_WRITE_KEYWORDS = re.compile(
    r"\b(DROP|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|MERGE|GRANT|REVOKE|CREATE|REPLACE|"
    r"EXECUTE|EXEC|CALL|COPY|ATTACH|DETACH|PRAGMA|VACUUM|SET\s+ROLE|RESET\s+ROLE)\b",
    re.IGNORECASE,
)
_SECOND_STATEMENT = re.compile(r";\s*\S")
_LIMIT = re.compile(r"\bLIMIT\s+(\d+)", re.IGNORECASE)
_SCHEMA_REF = re.compile(
    r"\b(" + "|".join(BLOCKED_SCHEMAS) + r")\s*\.", re.IGNORECASE,
)

Rule = Callable[[str, int], Optional[str]]


def _read_only_statement(sql: str, _max_rows: int) -> Optional[str]:
    head = sql.lstrip("( \n\t").upper()
    if head.startswith("SELECT") or head.startswith("WITH"):
        return None
    return "SQL must be a SELECT statement."


def _single_statement(sql: str, _max_rows: int) -> Optional[str]:
    if _SECOND_STATEMENT.search(sql):
        return "Multi-statement SQL is not allowed (found ';' followed by another statement)."
    return None


def _no_write_keywords(sql: str, _max_rows: int) -> Optional[str]:
    m = _WRITE_KEYWORDS.search(sql)
    if m:
        keyword = " ".join(m.group(1).upper().split())
        return f"Dangerous keyword detected: '{keyword}'."
    return None


def _no_inline_comment(sql: str, _max_rows: int) -> Optional[str]:
    return "Inline comments (--) are not allowed." if "--" in sql else None


def _no_block_comment(sql: str, _max_rows: int) -> Optional[str]:
    return "Block comments (/* */) are not allowed." if "/*" in sql else None


def _no_system_schemas(sql: str, _max_rows: int) -> Optional[str]:
    found = sorted({m.group(1).lower() for m in _SCHEMA_REF.finditer(sql)})
    if found:
        return "Blocked schema referenced: " + ", ".join(f"'{s}'" for s in found) + "."
    return None


def _bounded_limit(sql: str, max_rows: int) -> Optional[str]:
    limits = [int(v) for v in _LIMIT.findall(sql)]
    if not limits:
        return f"SQL must include a LIMIT clause (max {max_rows})."
    # the last LIMIT belongs to the outermost SELECT
    if limits[-1] > max_rows:
        return f"LIMIT {limits[-1]} exceeds maximum allowed ({max_rows})."
    return None


RULES: tuple[Rule, ...] = (
    _read_only_statement,
    _single_statement,
    _no_write_keywords,
    _no_inline_comment,
    _no_block_comment,
    _no_system_schemas,
    _bounded_limit,
)


def check_sql_safety(sql: str, max_rows: int) -> list[str]:
    """Run every rule over *sql*; an empty list means it may be executed."""
    statement = _LITERAL.sub("''", sql.strip()).rstrip().rstrip(";").rstrip()
    violations = [msg for rule in RULES if (msg := rule(statement, max_rows))]
    if violations:
        logger.warning("Rejected SQL (%d violation(s)): %s", len(violations), violations)
    return violations
