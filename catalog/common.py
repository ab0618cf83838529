# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Sequence
from importlib.resources import files
from logging import getLogger
from typing import Any, Final, Literal, NamedTuple, TypeAlias

# 3p
from jsonschema import ValidationError, validate
from yaml import YAMLError, safe_load

log = getLogger(__name__)

CATALOG_FILE_NAME: Final = "tables.yaml"

ColumnType: TypeAlias = Literal["datetime", "string", "int", "long", "real"]
COLUMN_TYPES: Final[tuple[ColumnType, ...]] = ("datetime", "string", "int", "long", "real")

ALL_TABLES_SELECTIONS: Final = frozenset({"", "*", "all"})


class Column(NamedTuple):
    name: str
    type: ColumnType


class TableDefinition(NamedTuple):
    name: str
    display_name: str
    description: str
    columns: tuple[Column, ...]


CATALOG_SCHEMA: dict[str, Any] = {
    "type": "array",
    "minItems": 1,
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "pattern": "^[A-Za-z][A-Za-z0-9_]{0,44}$"},
            "display_name": {"type": "string"},
            "description": {"type": "string"},
            "columns": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"},
                        "type": {"enum": list(COLUMN_TYPES)},
                    },
                    "required": ["name", "type"],
                    "additionalProperties": False,
                },
            },
        },
        "required": ["name", "columns"],
        "additionalProperties": False,
    },
}


class InvalidCatalogError(Exception):
    pass


def to_table_definition(entry: dict[str, Any]) -> TableDefinition:
    return TableDefinition(
        name=entry["name"],
        display_name=entry.get("display_name") or entry["name"],
        description=entry.get("description", ""),
        columns=tuple(Column(column["name"], column["type"]) for column in entry["columns"]),
    )


def has_unique_names(tables: Sequence[TableDefinition]) -> bool:
    """Table names must be unique within the catalog, column names unique within a table"""
    if len({table.name.casefold() for table in tables}) != len(tables):
        return False
    return all(len({column.name.casefold() for column in table.columns}) == len(table.columns) for table in tables)


def deserialize_catalog(raw_catalog: str) -> list[TableDefinition] | None:
    try:
        entries = safe_load(raw_catalog)
        validate(instance=entries, schema=CATALOG_SCHEMA)
    except (YAMLError, ValidationError):
        log.exception("Table catalog failed validation")
        return None
    tables = [to_table_definition(entry) for entry in entries]
    if not has_unique_names(tables):
        log.error("Table catalog contains duplicate table or column names")
        return None
    return tables


def load_catalog(path: str | None = None) -> list[TableDefinition]:
    """Load the table catalog from `path`, or the catalog bundled with this package"""
    if path:
        with open(path) as f:
            raw_catalog = f.read()
    else:
        raw_catalog = files(__package__).joinpath(CATALOG_FILE_NAME).read_text()
    if (catalog := deserialize_catalog(raw_catalog)) is None:
        raise InvalidCatalogError(f"Invalid table catalog: {path or CATALOG_FILE_NAME}")
    return catalog


def column_schema(table: TableDefinition) -> list[dict[str, str]]:
    return [column._asdict() for column in table.columns]


def parse_selection(selection: str, count: int) -> list[int]:
    """Parse a selection such as "1,3" or "2-4" into 0-based indices, preserving the order given.

    Indices are 1-based. Repeated entries are kept."""
    indices: list[int] = []
    for part in (p.strip() for p in selection.split(",")):
        if not part:
            continue
        start, sep, end = part.partition("-")
        first = int(start)
        last = int(end) if sep else first
        if first > last:
            raise ValueError(f"Invalid range '{part}'")
        for index in range(first, last + 1):
            if not 1 <= index <= count:
                raise ValueError(f"Table number {index} is out of range (1-{count})")
            indices.append(index - 1)
    if not indices:
        raise ValueError(f"No tables selected by '{selection}'")
    return indices


def select_tables(catalog: Sequence[TableDefinition], selection: str) -> list[TableDefinition]:
    if selection.strip().lower() in ALL_TABLES_SELECTIONS:
        return list(catalog)
    return [catalog[index] for index in parse_selection(selection, len(catalog))]
