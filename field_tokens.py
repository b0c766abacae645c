"""Parse schema definition language field tokens into column descriptors.

Grammar:

    token        := indexOnly | fkField | plainField
    indexOnly    := "^" identifier
    fkField      := base ("->"|">") identifier ["(" identifier ")"] ["," attr]*
    plainField   := base ["," attr]*
    base         := identifier [":" typeAndFlags] | identifier shortflags?
    shortflags   := ("!"|"+"|"^"|"#"|"~")*
    attr         := "notnull"|"nn"|"unique"|"u"|"index"|"idx"|"pk"|"primary"
                  | "ai"|"autoincrement"|"default=" expr
                  | "ondelete=" action | "onupdate=" action | "defer"|"deferrable"
    action       := "cascade"|"restrict"|"setnull"|"setdefault"|"noaction"

A type segment of the form ``fk(table.column)`` declares an inline foreign key.
"""

from __future__ import annotations

import dataclasses
import enum
import re
from typing import Iterable, Union

from schema_errors import InvalidConstraint, MalformedFieldSpec

IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
FK_TARGET_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)(?:\(\s*([A-Za-z_][A-Za-z0-9_]*)\s*\))?")
INLINE_FK_RE = re.compile(r"fk\(\s*([A-Za-z_][A-Za-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_]*)\s*\)", flags=re.I)
TYPE_START_RE = re.compile(r"[A-Za-z_]")
QUOTED_RE = re.compile(r"'(?:[^']|'')*'")
# Field grammar characters that may not appear in a type outside parentheses.
TYPE_METACHARS = ":,>!+^#~"


class StorageClass(enum.Enum):
    INTEGER = "INTEGER"
    TEXT = "TEXT"
    REAL = "REAL"
    NUMERIC = "NUMERIC"
    BLOB = "BLOB"

    @property
    def sql(self) -> str:
        return self.value


@dataclasses.dataclass(frozen=True)
class OtherType:
    """Engine-specific type kept as written (uppercased)."""

    raw: str

    @property
    def sql(self) -> str:
        return self.raw


ColumnType = Union[StorageClass, OtherType]


TYPE_ALIASES: dict[str, StorageClass] = {
    "int": StorageClass.INTEGER,
    "integer": StorageClass.INTEGER,
    "bool": StorageClass.INTEGER,
    "text": StorageClass.TEXT,
    "string": StorageClass.TEXT,
    "datetime": StorageClass.TEXT,
    "timestamp": StorageClass.TEXT,
    "real": StorageClass.REAL,
    "float": StorageClass.REAL,
    "number": StorageClass.NUMERIC,
    "numeric": StorageClass.NUMERIC,
    "blob": StorageClass.BLOB,
}


class Flag(enum.Enum):
    NOT_NULL = "notnull"
    UNIQUE = "unique"
    INDEX = "index"
    PRIMARY_KEY = "pk"
    AUTOINCREMENT = "ai"


SHORT_FLAGS: dict[str, Flag] = {
    "!": Flag.NOT_NULL,
    "+": Flag.UNIQUE,
    "^": Flag.INDEX,
    "#": Flag.PRIMARY_KEY,
    "~": Flag.AUTOINCREMENT,
}

LONG_FLAGS: dict[str, Flag] = {
    "notnull": Flag.NOT_NULL,
    "nn": Flag.NOT_NULL,
    "!": Flag.NOT_NULL,
    "unique": Flag.UNIQUE,
    "u": Flag.UNIQUE,
    "+": Flag.UNIQUE,
    "index": Flag.INDEX,
    "idx": Flag.INDEX,
    "^": Flag.INDEX,
    "pk": Flag.PRIMARY_KEY,
    "primary": Flag.PRIMARY_KEY,
    "#": Flag.PRIMARY_KEY,
    "ai": Flag.AUTOINCREMENT,
    "autoincrement": Flag.AUTOINCREMENT,
    "~": Flag.AUTOINCREMENT,
}

# "=<expr>" partitions into an empty key.
DEFAULT_KEYS = {"default", "def", ""}
DEFER_KEYS = {"defer", "deferrable"}

ACTIONS: dict[str, str] = {
    "cascade": "CASCADE",
    "restrict": "RESTRICT",
    "setnull": "SET NULL",
    "setdefault": "SET DEFAULT",
    "noaction": "NO ACTION",
}


@dataclasses.dataclass(frozen=True)
class ForeignKeyRef:
    table: str
    column: str = "id"
    on_delete: str | None = None
    on_update: str | None = None
    deferred: bool = False


@dataclasses.dataclass(frozen=True)
class FieldDescriptor:
    name: str
    col_type: ColumnType
    flags: frozenset[Flag] = frozenset()
    default: str | None = None
    fk: ForeignKeyRef | None = None

    def has(self, flag: Flag) -> bool:
        return flag in self.flags


@dataclasses.dataclass(frozen=True)
class IndexOnly:
    column: str


ParsedField = Union[FieldDescriptor, IndexOnly]


def resolve_type(token: str) -> ColumnType:
    key = token.strip().lower()
    if key in TYPE_ALIASES:
        return TYPE_ALIASES[key]
    raw = " ".join(token.split())
    # Quoted literals such as enum labels keep their case.
    parts = QUOTED_RE.split(raw)
    literals = QUOTED_RE.findall(raw)
    out = [parts[0].upper()]
    for literal, part in zip(literals, parts[1:]):
        out += [literal, part.upper()]
    return OtherType("".join(out))


def is_type_token(text: str) -> bool:
    """Return True when ``text`` can stand as a column type in a field token.

    A type starts with a letter or underscore and may carry a balanced
    ``(...)`` body with any content, e.g. ``varchar(max)``, ``enum('a','b')``
    or ``text[]``. Outside parentheses it may not contain field grammar
    characters.
    """
    text = text.strip()
    if not TYPE_START_RE.match(text):
        return False
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
        elif depth == 0 and ch in TYPE_METACHARS:
            return False
    return depth == 0 and quote is None


def lookup_action(value: str) -> str | None:
    """Map an action spelling (``setnull``, ``set_null``, ``SET NULL``) to its key in ACTIONS."""
    key = re.sub(r"[\s_-]", "", value).lower()
    return key if key in ACTIONS else None


def split_top_level(text: str) -> list[str]:
    """Split on commas that are outside parentheses and quoted literals."""
    out: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch == "," and depth == 0:
            out.append("".join(buf).strip())
            buf = []
            continue
        buf.append(ch)
    out.append("".join(buf).strip())
    return out


def split_short_flags(segment: str) -> tuple[str, set[Flag]]:
    segment = segment.strip()
    body = segment.rstrip("".join(SHORT_FLAGS))
    flags = {SHORT_FLAGS[ch] for ch in segment[len(body) :]}
    return body.strip(), flags


def resolve_flags(name: str, col_type: ColumnType, *flag_sets: Iterable[Flag]) -> frozenset[Flag]:
    """Union short flags and long attributes, then check they are consistent."""
    flags: frozenset[Flag] = frozenset().union(*flag_sets)
    if Flag.AUTOINCREMENT in flags and (
        Flag.PRIMARY_KEY not in flags or col_type is not StorageClass.INTEGER
    ):
        raise InvalidConstraint(
            f"column {name!r}: AUTOINCREMENT requires an INTEGER PRIMARY KEY (got {col_type.sql})"
        )
    return flags


def _parse_base(base: str, token: str) -> tuple[str, str | None, set[Flag]]:
    name_part, sep, rest = base.partition(":")
    name, flags = split_short_flags(name_part)
    type_token = None
    if sep:
        type_token, type_flags = split_short_flags(rest)
        flags |= type_flags
        type_token = type_token or None
    if not IDENTIFIER_RE.fullmatch(name):
        raise MalformedFieldSpec(f"invalid column name {name!r} in field token {token!r}")
    return name, type_token, flags


def _column_type(type_token: str, token: str) -> ColumnType:
    if not is_type_token(type_token):
        raise MalformedFieldSpec(f"invalid type {type_token!r} in field token {token!r}")
    return resolve_type(type_token)


def _find_arrow(head: str) -> str | None:
    if "->" in head:
        return "->"
    if ">" in head and ":fk(" not in head.lower():
        return ">"
    return None


def _require_fk(fk: ForeignKeyRef | None, attr: str, token: str) -> ForeignKeyRef:
    if fk is None:
        raise InvalidConstraint(f"attribute {attr!r} needs a foreign key in field token {token!r}")
    return fk


def _apply_attributes(
    attrs: list[str], fk: ForeignKeyRef | None, token: str
) -> tuple[set[Flag], str | None, ForeignKeyRef | None]:
    flags: set[Flag] = set()
    default = None
    for attr in attrs:
        if not attr:
            continue
        key, has_value, value = attr.partition("=")
        key = key.strip().lower()
        value = value.strip()
        if key in LONG_FLAGS and not has_value:
            flags.add(LONG_FLAGS[key])
        elif key in DEFAULT_KEYS and has_value:
            if not value:
                raise MalformedFieldSpec(f"empty default expression in field token {token!r}")
            default = value
        elif key in ("ondelete", "onupdate") and has_value:
            action = lookup_action(value)
            if action is None:
                raise MalformedFieldSpec(f"unknown {key} action {value!r} in field token {token!r}")
            fk = _require_fk(fk, key, token)
            if key == "ondelete":
                fk = dataclasses.replace(fk, on_delete=action)
            else:
                fk = dataclasses.replace(fk, on_update=action)
        elif key in DEFER_KEYS and not has_value:
            fk = dataclasses.replace(_require_fk(fk, key, token), deferred=True)
        else:
            raise MalformedFieldSpec(f"unknown attribute {attr!r} in field token {token!r}")
    return flags, default, fk


def parse_field_token(token: str) -> ParsedField:
    token = token.strip()
    if not token:
        raise MalformedFieldSpec("empty field token")

    if token.startswith("^") and not any(ch in token for ch in ":,>"):
        column = token[1:].strip()
        if not IDENTIFIER_RE.fullmatch(column):
            raise MalformedFieldSpec(f"invalid index column {column!r} in field token {token!r}")
        return IndexOnly(column=column)

    head, *attrs = split_top_level(token)
    arrow = _find_arrow(head)
    fk = None
    if arrow:
        left, right = head.split(arrow, 1)
        name, type_token, short_flags = _parse_base(left, token)
        m = FK_TARGET_RE.fullmatch(right.strip())
        if not m:
            raise MalformedFieldSpec(f"malformed foreign key target {right.strip()!r} in field token {token!r}")
        fk = ForeignKeyRef(table=m.group(1), column=m.group(2) or "id")
        col_type = _column_type(type_token, token) if type_token else StorageClass.INTEGER
    else:
        name, type_token, short_flags = _parse_base(head, token)
        inline = INLINE_FK_RE.fullmatch(type_token) if type_token else None
        if inline:
            fk = ForeignKeyRef(table=inline.group(1), column=inline.group(2))
            col_type = StorageClass.INTEGER
        elif type_token:
            col_type = _column_type(type_token, token)
        else:
            col_type = StorageClass.TEXT

    long_flags, default, fk = _apply_attributes(attrs, fk, token)
    flags = resolve_flags(name, col_type, short_flags, long_flags)
    return FieldDescriptor(name=name, col_type=col_type, flags=flags, default=default, fk=fk)
