"""Error types raised by the schema compiler."""

from __future__ import annotations


class SchemaError(Exception):
    """Base class for every error the compiler reports to the caller."""


class InvalidArgument(SchemaError, ValueError):
    pass


class MalformedFieldSpec(SchemaError, ValueError):
    pass


class InvalidConstraint(SchemaError, ValueError):
    pass


class MalformedConfig(SchemaError, ValueError):
    def __init__(self, message: str, table_index: int | None = None, field_index: int | None = None) -> None:
        super().__init__(message)
        self.table_index = table_index
        self.field_index = field_index


class NameCollision(SchemaError):
    pass


class FileSystemError(SchemaError):
    pass
