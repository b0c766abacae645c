#!/usr/bin/env python3
"""Generate <table>.schema.json DDL artifacts from field tokens or a batch config document."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import enum
import json
import os
import sys
from pathlib import Path
from typing import Iterator

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from field_tokens import (
    ACTIONS,
    IDENTIFIER_RE,
    INLINE_FK_RE,
    FieldDescriptor,
    Flag,
    ForeignKeyRef,
    IndexOnly,
    StorageClass,
    is_type_token,
    lookup_action,
    parse_field_token,
)
from schema_errors import (
    FileSystemError,
    InvalidArgument,
    InvalidConstraint,
    MalformedConfig,
    MalformedFieldSpec,
    NameCollision,
    SchemaError,
)

DEFAULT_OUT_DIR = "schemas"
ARTIFACT_SUFFIX = ".schema.json"
FORCE_ENV = "SDL_FORCE"
TRUTHY_VALUES = {"1", "true", "yes", "on"}

ID_COLUMN = FieldDescriptor(
    name="id",
    col_type=StorageClass.INTEGER,
    flags=frozenset({Flag.PRIMARY_KEY, Flag.AUTOINCREMENT}),
)
STAMP_COLUMNS = (
    FieldDescriptor(name="created_at", col_type=StorageClass.TEXT, flags=frozenset({Flag.NOT_NULL})),
    FieldDescriptor(name="updated_at", col_type=StorageClass.TEXT, flags=frozenset({Flag.NOT_NULL})),
    FieldDescriptor(name="deleted_at", col_type=StorageClass.TEXT),
)

FIELD_SYNTAX_HELP = """\
field syntax:
  name[:type][!+^#~][->target[(col)]]      e.g. email:text!+  user_id:text->users
  name[:type][!+^#~],attr[=value],...      e.g. slug:text,unique  age:int,default=0
  ^name                                    standalone index on an existing column

short flags: ! not null, + unique, ^ index, # primary key, ~ autoincrement
"""

ACTION_CHOICES = sorted(ACTIONS)

CONFIG_JSON_SCHEMA: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Schema compiler batch config",
    "type": "object",
    "properties": {
        "outDir": {"type": "string"},
        "defaultOnDelete": {"enum": ACTION_CHOICES + [None]},
        "defaultOnUpdate": {"enum": ACTION_CHOICES + [None]},
        "tables": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "stamps": {"type": "boolean"},
                    "version": {"type": "integer", "minimum": 1},
                    "fields": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["name"],
                            "properties": {
                                "name": {"type": "string"},
                                "type": {"type": "string"},
                                "unique": {"type": "boolean"},
                                "notnull": {"type": "boolean"},
                                "index": {"type": "boolean"},
                                "pk": {"type": "boolean"},
                                "autoincrement": {"type": "boolean"},
                                "default": {"type": ["string", "number", "boolean"]},
                                "fk": {
                                    "type": ["object", "string", "null"],
                                    "properties": {
                                        "table": {"type": "string"},
                                        "column": {"type": "string", "default": "id"},
                                        "onDelete": {"enum": ACTION_CHOICES},
                                        "onUpdate": {"enum": ACTION_CHOICES},
                                        "deferrable": {"type": "boolean"},
                                    },
                                },
                            },
                        },
                    },
                },
                "required": ["name", "fields"],
            },
        },
    },
    "required": ["tables"],
}


@dataclasses.dataclass(frozen=True)
class TableOptions:
    stamps: bool = False
    on_delete: str | None = None
    on_update: str | None = None
    fk_index: bool = True
    version: int = 1


@dataclasses.dataclass
class TableSpec:
    name: str
    version: int = 1
    columns: list[FieldDescriptor] = dataclasses.field(default_factory=list)
    indexed_columns: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class SchemaArtifact:
    table: str
    version: int
    create_sql: str
    extra_sql: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "version": self.version,
            "createSQL": self.create_sql,
            "extraSQL": list(self.extra_sql),
        }

    def render(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"


class WritePolicy(enum.Enum):
    """How an artifact write treats a file that is already on disk."""

    REFUSE_EXISTING = "refuse-existing"
    REPLACE = "replace"
    WRITE_ONCE = "write-once"


# ---------------------------------------------------------------------------
# Table assembly
# ---------------------------------------------------------------------------


def build_table_spec(name: str, tokens: list[str], options: TableOptions) -> TableSpec:
    if not IDENTIFIER_RE.fullmatch(name or ""):
        raise InvalidArgument(f"invalid table name: {name!r}")
    if options.version < 1:
        raise InvalidArgument(f"table version must be >= 1, got {options.version}")

    spec = TableSpec(name=name, version=options.version)
    for token in tokens:
        parsed = parse_field_token(token)
        if isinstance(parsed, IndexOnly):
            spec.indexed_columns.append(parsed.column)
        elif isinstance(parsed, FieldDescriptor):
            spec.columns.append(parsed)
        else:  # pragma: no cover
            raise TypeError(f"unexpected parse result: {parsed!r}")

    pk_columns = [c.name for c in spec.columns if c.has(Flag.PRIMARY_KEY)]
    if len(pk_columns) > 1:
        raise InvalidConstraint(f"table {name!r} declares more than one primary key: {pk_columns}")
    if not pk_columns:
        if any(c.name.lower() == ID_COLUMN.name for c in spec.columns):
            raise InvalidConstraint(
                f"table {name!r}: column 'id' clashes with the implicit primary key; mark it with '#'"
            )
        spec.columns.insert(0, ID_COLUMN)
    if options.stamps:
        spec.columns.extend(STAMP_COLUMNS)

    # SQLite identifiers are case-insensitive.
    seen: set[str] = set()
    for col in spec.columns:
        if col.name.lower() in seen:
            raise InvalidConstraint(f"table {name!r} defines column {col.name!r} more than once")
        seen.add(col.name.lower())

    for column in spec.indexed_columns:
        if column.lower() not in seen:
            raise InvalidConstraint(f"table {name!r}: cannot index unknown column {column!r}")
    return spec


def foreign_key_clause(fk: ForeignKeyRef, options: TableOptions) -> str:
    clause = f"REFERENCES {fk.table}({fk.column})"
    on_delete = fk.on_delete or options.on_delete
    on_update = fk.on_update or options.on_update
    if on_delete:
        clause += f" ON DELETE {ACTIONS[on_delete]}"
    if on_update:
        clause += f" ON UPDATE {ACTIONS[on_update]}"
    if fk.deferred:
        clause += " DEFERRABLE INITIALLY DEFERRED"
    return clause


def column_clause(col: FieldDescriptor, options: TableOptions) -> str:
    # Fixed order regardless of how the token spelled its flags.
    parts = [col.name, col.col_type.sql]
    if col.has(Flag.PRIMARY_KEY):
        parts.append("PRIMARY KEY")
    if col.has(Flag.AUTOINCREMENT):
        parts.append("AUTOINCREMENT")
    if col.has(Flag.UNIQUE):
        parts.append("UNIQUE")
    if col.has(Flag.NOT_NULL):
        parts.append("NOT NULL")
    if col.fk:
        parts.append(foreign_key_clause(col.fk, options))
    if col.default is not None:
        parts.append(f"DEFAULT {col.default}")
    return " ".join(parts)


def index_statement(table: str, column: str, suffix: str = "") -> str:
    return f"CREATE INDEX IF NOT EXISTS idx_{table}_{column}{suffix} ON {table}({column});"


def assemble(spec: TableSpec, options: TableOptions) -> SchemaArtifact:
    lines: list[str] = [f"CREATE TABLE IF NOT EXISTS {spec.name} ("]
    clauses = [column_clause(col, options) for col in spec.columns]
    for idx, clause in enumerate(clauses):
        trailing = "," if idx < len(clauses) - 1 else ""
        lines.append(f"  {clause}{trailing}")
    lines.append(");")

    extra: list[str] = []
    for col in spec.columns:
        if col.has(Flag.INDEX):
            extra.append(index_statement(spec.name, col.name))
        if col.fk and options.fk_index:
            extra.append(index_statement(spec.name, col.name, "_fk"))
    for column in spec.indexed_columns:
        extra.append(index_statement(spec.name, column))

    return SchemaArtifact(
        table=spec.name,
        version=spec.version,
        create_sql="\n".join(lines),
        extra_sql=tuple(dict.fromkeys(extra)),
    )


def compile_table(name: str, tokens: list[str], options: TableOptions) -> tuple[TableSpec, SchemaArtifact]:
    spec = build_table_spec(name, tokens, options)
    return spec, assemble(spec, options)


# ---------------------------------------------------------------------------
# Foreign-key targets and stubs
# ---------------------------------------------------------------------------


def foreign_key_targets(spec: TableSpec) -> list[str]:
    targets = [c.fk.table for c in spec.columns if c.fk and c.fk.table != spec.name]
    return list(dict.fromkeys(targets))


def stub_artifact(table: str) -> SchemaArtifact:
    return assemble(TableSpec(name=table, columns=[ID_COLUMN]), TableOptions())


def ensure_stubs(spec: TableSpec, out_dir: Path, skip: frozenset[str] = frozenset()) -> list[Path]:
    """Write a stub for each missing FK target, except tables named in ``skip``."""
    written: list[Path] = []
    for target in foreign_key_targets(spec):
        if target in skip:
            continue
        path = persist(stub_artifact(target), out_dir, WritePolicy.WRITE_ONCE)
        if path is not None:
            print(f"Wrote stub {path}")
            written.append(path)
    return written


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def artifact_path(out_dir: Path, table: str) -> Path:
    return out_dir / f"{table}{ARTIFACT_SUFFIX}"


def write_text(path: Path, content: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise FileSystemError(f"failed to write {path}: {exc}") from exc


def persist(artifact: SchemaArtifact, out_dir: Path, policy: WritePolicy) -> Path | None:
    """Write an artifact under the given policy; returns None when a write-once file already exists."""
    path = artifact_path(out_dir, artifact.table)
    if path.exists():
        if policy is WritePolicy.WRITE_ONCE:
            return None
        if policy is WritePolicy.REFUSE_EXISTING:
            raise NameCollision(f"Refusing to overwrite existing file: {path} (use -f or {FORCE_ENV}=1)")
    write_text(path, artifact.render())
    return path


def generate_table(
    name: str,
    tokens: list[str],
    options: TableOptions,
    out_dir: Path,
    force: bool,
    skip_stubs: frozenset[str] = frozenset(),
) -> Path:
    spec, artifact = compile_table(name, tokens, options)
    policy = WritePolicy.REPLACE if force else WritePolicy.REFUSE_EXISTING
    path = persist(artifact, out_dir, policy)
    print(f"Wrote {path}")
    ensure_stubs(spec, out_dir, skip_stubs)
    return path


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for line in diff:
        print(line, file=sys.stderr)
    return False


def check_table(name: str, tokens: list[str], options: TableOptions, out_dir: Path) -> bool:
    _, artifact = compile_table(name, tokens, options)
    return check_equal(artifact_path(out_dir, name), artifact.render())


def env_force_enabled(environ: dict[str, str] | None = None) -> bool:
    value = (os.environ if environ is None else environ).get(FORCE_ENV, "")
    return value.strip().lower() in TRUTHY_VALUES


# ---------------------------------------------------------------------------
# Batch config
# ---------------------------------------------------------------------------


class ConfigObject:
    """Case-insensitive view of one mapping from the batch document."""

    def __init__(self, raw: dict) -> None:
        self._values = {str(k).lower(): v for k, v in raw.items()}

    def get(self, *names: str, default=None):
        for name in names:
            value = self._values.get(name)
            if value is not None:
                return value
        return default


@dataclasses.dataclass(frozen=True)
class BatchTable:
    index: int
    name: str
    tokens: list[str]
    options: TableOptions


def load_config(path: Path) -> dict:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FileSystemError(f"cannot read config {path}: {exc}") from exc
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedConfig(f"invalid config document {path}: {exc}") from exc
    if not isinstance(doc, dict):
        raise MalformedConfig(f"config document {path} must be a mapping")
    return doc


def config_action(value, key: str) -> str | None:
    if value is None:
        return None
    action = lookup_action(str(value))
    if action is None:
        raise MalformedConfig(f"invalid {key} value: {value!r}")
    return action


def default_expr(value) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def config_field_token(raw_field, table_index: int, field_index: int) -> str:
    """Serialize one config field object into a field token."""
    where = f"table #{table_index} field #{field_index}"
    if not isinstance(raw_field, dict):
        raise MalformedConfig(f"{where} must be an object", table_index, field_index)
    field = ConfigObject(raw_field)

    name = field.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MalformedConfig(f'{where} is missing "name"', table_index, field_index)
    token = name.strip()
    if not IDENTIFIER_RE.fullmatch(token):
        raise MalformedConfig(f'{where} has an invalid "name": {name!r}', table_index, field_index)

    col_type = field.get("type")
    if col_type is not None:
        # Inline fk(...) types go through the "fk" key instead.
        if (
            not isinstance(col_type, str)
            or not is_type_token(col_type)
            or INLINE_FK_RE.fullmatch(col_type.strip())
        ):
            raise MalformedConfig(f'{where} has an invalid "type": {col_type!r}', table_index, field_index)
        token += f":{col_type.strip()}"

    if field.get("notnull"):
        token += "!"
    if field.get("unique"):
        token += "+"
    if field.get("index"):
        token += "^"
    if field.get("pk", "primarykey"):
        token += "#"
    if field.get("autoincrement", "ai"):
        token += "~"

    attrs: list[str] = []
    fk_raw = field.get("fk")
    if fk_raw is not None:
        fk = ConfigObject(fk_raw) if isinstance(fk_raw, dict) else ConfigObject({"table": fk_raw})
        fk_table = fk.get("table")
        if not isinstance(fk_table, str) or not fk_table.strip():
            raise MalformedConfig(f'{where} has an "fk" without "table"', table_index, field_index)
        if not IDENTIFIER_RE.fullmatch(fk_table.strip()):
            raise MalformedConfig(f"{where} has an invalid fk table: {fk_table!r}", table_index, field_index)
        token += f"->{fk_table.strip()}"
        fk_column = fk.get("column")
        if fk_column is not None and (not isinstance(fk_column, str) or not IDENTIFIER_RE.fullmatch(fk_column)):
            raise MalformedConfig(f"{where} has an invalid fk column: {fk_column!r}", table_index, field_index)
        if fk_column and fk_column != "id":
            token += f"({fk_column})"
        on_delete = config_action(fk.get("ondelete"), f"{where} fk.onDelete")
        on_update = config_action(fk.get("onupdate"), f"{where} fk.onUpdate")
        if on_delete:
            attrs.append(f"ondelete={on_delete}")
        if on_update:
            attrs.append(f"onupdate={on_update}")
        if fk.get("deferrable", "defer"):
            attrs.append("deferrable")

    default = field.get("default")
    if default is not None:
        attrs.append(f"default={default_expr(default)}")

    return ",".join([token, *attrs])


def resolve_out_dir(cli_dir: str | None, doc: dict) -> Path:
    return Path(cli_dir or ConfigObject(doc).get("outdir") or DEFAULT_OUT_DIR)


def iter_config_tables(doc: dict, fk_index: bool = True) -> Iterator[BatchTable]:
    """Yield validated table entries one at a time, so earlier tables can be written first."""
    root = ConfigObject(doc)
    on_delete = config_action(root.get("defaultondelete"), "defaultOnDelete")
    on_update = config_action(root.get("defaultonupdate"), "defaultOnUpdate")

    tables = root.get("tables")
    if not isinstance(tables, list):
        raise MalformedConfig('config must have a "tables" array')

    for ti, raw_table in enumerate(tables):
        if not isinstance(raw_table, dict):
            raise MalformedConfig(f"table #{ti} must be an object", ti)
        table = ConfigObject(raw_table)

        name = table.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedConfig(f'table #{ti} is missing "name"', ti)
        name = name.strip()

        fields = table.get("fields", "columns")
        if not isinstance(fields, list):
            raise MalformedConfig(f'table #{ti} ({name}) must have a "fields" (or "columns") array', ti)

        version = table.get("version", default=1)
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise MalformedConfig(f"table #{ti} ({name}) has an invalid version: {version!r}", ti)

        tokens: list[str] = []
        for fi, raw_field in enumerate(fields):
            token = config_field_token(raw_field, ti, fi)
            try:
                parse_field_token(token)
            except (MalformedFieldSpec, InvalidConstraint) as exc:
                raise MalformedConfig(f"table #{ti} field #{fi}: {exc}", ti, fi) from exc
            tokens.append(token)

        yield BatchTable(
            index=ti,
            name=name,
            tokens=tokens,
            options=TableOptions(
                stamps=bool(table.get("stamps")),
                on_delete=on_delete,
                on_update=on_update,
                fk_index=fk_index,
                version=version,
            ),
        )


def batch_table_names(doc: dict) -> frozenset[str]:
    """Names of the well-formed table entries in a batch document."""
    tables = ConfigObject(doc).get("tables")
    if not isinstance(tables, list):
        return frozenset()
    names = (ConfigObject(t).get("name") for t in tables if isinstance(t, dict))
    return frozenset(n.strip() for n in names if isinstance(n, str) and n.strip())


def run_batch(doc: dict, out_dir: Path, force: bool, fk_index: bool = True, check: bool = False) -> bool:
    # Tables defined later in the batch get their real artifact, not a stub.
    defined = batch_table_names(doc)
    ok = True
    for entry in iter_config_tables(doc, fk_index=fk_index):
        try:
            if check:
                ok = check_table(entry.name, entry.tokens, entry.options, out_dir) and ok
            else:
                generate_table(entry.name, entry.tokens, entry.options, out_dir, force, skip_stubs=defined)
        except (InvalidArgument, MalformedFieldSpec, InvalidConstraint) as exc:
            raise MalformedConfig(f"table #{entry.index} ({entry.name}): {exc}", entry.index) from exc
    return ok


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="generate-schema",
        description="Compile field tokens into <table>.schema.json DDL artifacts",
        epilog=FIELD_SYNTAX_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        usage=(
            "%(prog)s create table <name> [fields...] [options]\n"
            "       %(prog)s from-json <config> [options]\n"
            "       %(prog)s --print-json-schema"
        ),
    )
    parser.add_argument("command", nargs="?", help="create | from-json")
    parser.add_argument("args", nargs="*", help="'table <name> [fields...]' or '<config>'")
    parser.add_argument("--dir", default=None, help=f"Output directory (default: {DEFAULT_OUT_DIR})")
    parser.add_argument("--stamps", action="store_true", help="Append created_at, updated_at, deleted_at")
    parser.add_argument("--onDelete", dest="on_delete", help=f"ON DELETE for all FKs ({'|'.join(ACTION_CHOICES)})")
    parser.add_argument("--onUpdate", dest="on_update", help=f"ON UPDATE for all FKs ({'|'.join(ACTION_CHOICES)})")
    parser.add_argument("--table-version", type=int, default=1, help="Schema version recorded in the artifact")
    parser.add_argument("-f", "--force", action="store_true", help=f"Overwrite existing artifacts (or {FORCE_ENV}=1)")
    parser.add_argument("--no-fk-index", dest="fk_index", action="store_false", help="Skip per-FK indexes")
    parser.add_argument("--check", action="store_true", help="Verify artifacts are up-to-date without writing")
    parser.add_argument("--print-json-schema", action="store_true", help="Print the batch config JSON Schema")
    return parser


def cli_action(value: str | None, option: str) -> str | None:
    if value is None:
        return None
    action = lookup_action(value)
    if action is None:
        raise InvalidArgument(f"Invalid {option} value: {value} (expected {'|'.join(ACTION_CHOICES)})")
    return action


def run_create(args: argparse.Namespace, force: bool) -> int:
    if len(args.args) < 2 or args.args[0] != "table":
        raise InvalidArgument("Expected: create table <name> [fields...]")
    name, tokens = args.args[1], args.args[2:]
    options = TableOptions(
        stamps=args.stamps,
        on_delete=cli_action(args.on_delete, "--onDelete"),
        on_update=cli_action(args.on_update, "--onUpdate"),
        fk_index=args.fk_index,
        version=args.table_version,
    )
    out_dir = Path(args.dir or DEFAULT_OUT_DIR)
    if args.check:
        return 0 if check_table(name, tokens, options, out_dir) else 1
    generate_table(name, tokens, options, out_dir, force)
    return 0


def run_from_json(args: argparse.Namespace, force: bool) -> int:
    if len(args.args) != 1:
        raise InvalidArgument("from-json requires a single <config> path")
    doc = load_config(Path(args.args[0]))
    out_dir = resolve_out_dir(args.dir, doc)
    ok = run_batch(doc, out_dir, force, fk_index=args.fk_index, check=args.check)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    # Read before argv so the override never shifts positional parsing.
    env_force = env_force_enabled()
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)
    force = args.force or env_force

    try:
        if args.print_json_schema:
            print(json.dumps(CONFIG_JSON_SCHEMA, indent=2))
            return 0
        if args.command is None:
            parser.print_help()
            return 0
        if args.command == "create":
            return run_create(args, force)
        if args.command == "from-json":
            return run_from_json(args, force)
        raise InvalidArgument(f"Unknown command: {args.command} (expected 'create table' or 'from-json')")
    except SchemaError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
