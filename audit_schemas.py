#!/usr/bin/env python3
"""Audit generated *.schema.json artifacts for field-token syntax leaking into SQL.

Scans createSQL and every extraSQL statement for short flags left on identifiers
(``name!``), ``:type`` suffixes and ``->`` arrows, and reports artifacts that are
not valid JSON or lack one of the required keys.

Usage:
    python audit_schemas.py [DIR ...]
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import re
from pathlib import Path

from generate_schema import ARTIFACT_SUFFIX, DEFAULT_OUT_DIR

REQUIRED_KEYS = ("table", "version", "createSQL", "extraSQL")


@dataclasses.dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern
    hint: str


RULES = (
    Rule(
        name="dangling-short-flag",
        # Column names open each clause line, so only that position is checked.
        pattern=re.compile(r"^[ \t]+([A-Za-z_][A-Za-z0-9_]*[!+^#~]+)(?=[\s,]|$)", re.M),
        hint='Short flags must compile to keywords such as "NOT NULL" or "UNIQUE".',
    ),
    Rule(
        name="type-suffix-in-sql",
        pattern=re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*:[A-Za-z]+"),
        hint="Identifiers must not contain :type suffixes.",
    ),
    Rule(
        name="fk-arrow-in-sql",
        pattern=re.compile(r"->"),
        hint="FK shorthand must compile to a REFERENCES clause.",
    ),
)


@dataclasses.dataclass(frozen=True)
class Issue:
    path: Path
    rule: str
    hint: str
    line: int = 0
    col: int = 0
    snippet: str = ""

    def render(self) -> str:
        if not self.line:
            return f"  - {self.rule}: {self.hint}"
        return f"  - {self.rule} at SQL {self.line}:{self.col}  {self.hint}\n    ...{self.snippet}..."


def mask_string_literals(sql: str) -> str:
    """Blank out the inside of '...' literals, keeping offsets intact."""
    return re.sub(r"'(?:[^']|'')*'", lambda m: "'" + " " * (len(m.group(0)) - 2) + "'", sql)


def index_to_line_col(text: str, idx: int) -> tuple[int, int]:
    line = text.count("\n", 0, idx) + 1
    col = idx - (text.rfind("\n", 0, idx) + 1) + 1
    return line, col


def audit_sql(path: Path, sql: str) -> list[Issue]:
    issues: list[Issue] = []
    masked = mask_string_literals(sql)
    for rule in RULES:
        for m in rule.pattern.finditer(masked):
            # Rules with a group report the group, not the leading indentation.
            at = m.start(1) if rule.pattern.groups else m.start()
            line, col = index_to_line_col(sql, at)
            start = max(0, at - 40)
            end = min(len(sql), m.end() + 40)
            snippet = sql[start:end].replace("\n", "\\n")
            issues.append(Issue(path=path, rule=rule.name, hint=rule.hint, line=line, col=col, snippet=snippet))
    return issues


def audit_artifact(path: Path) -> list[Issue]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return [Issue(path=path, rule="unreadable-artifact", hint=str(exc))]
    if not isinstance(data, dict):
        return [Issue(path=path, rule="unreadable-artifact", hint="artifact is not a JSON object")]

    issues = [
        Issue(path=path, rule="missing-key", hint=f"artifact has no {key!r}")
        for key in REQUIRED_KEYS
        if key not in data
    ]

    statements: list[str] = []
    if isinstance(data.get("createSQL"), str):
        statements.append(data["createSQL"])
    extra = data.get("extraSQL", [])
    if isinstance(extra, list):
        statements.extend(s for s in extra if isinstance(s, str))
    for sql in statements:
        issues.extend(audit_sql(path, sql))
    return issues


def audit_dirs(dirs: list[Path]) -> list[Issue]:
    issues: list[Issue] = []
    for directory in dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob(f"*{ARTIFACT_SUFFIX}")):
            issues.extend(audit_artifact(path))
    return issues


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Audit generated schema artifacts for leaked field-token syntax")
    parser.add_argument("dirs", nargs="*", default=[DEFAULT_OUT_DIR], help=f"Artifact directories (default: {DEFAULT_OUT_DIR})")
    args = parser.parse_args(argv)

    issues = audit_dirs([Path(d) for d in args.dirs])
    if not issues:
        print("SQL audit: no offending tokens found.")
        return 0

    current: Path | None = None
    for issue in issues:
        if issue.path != current:
            print(f"\n[audit] {issue.path}")
            current = issue.path
        print(issue.render())
    print(f"\nFound {len(issues)} offending token(s).")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
