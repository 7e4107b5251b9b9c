from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from mysql_purge.connections import Connection, quote_identifier
from mysql_purge.errors import PurgeConfigError

LOG = logging.getLogger(__name__)

Row = Sequence[Any]
Quoter = Callable[[Any, Optional[str]], str]

# ============================== Column / index descriptors ===============================

@dataclass(frozen=True, eq=False)
class ColumnSchema:
    name: str
    select_position: int
    data_type: str | None = None
    dest_name: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ColumnSchema):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)

    @property
    def quoted_name(self) -> str:
        return quote_identifier(self.name)

    @property
    def quoted_dest_name(self) -> str:
        return quote_identifier(self.dest_name or self.name)

    def value(self, row: Row) -> Any:
        return row[self.select_position]

    def quoted_value(self, row: Row, quote: Quoter) -> str:
        return quote(self.value(row), self.data_type)


@dataclass(frozen=True)
class IndexSchema:
    name: str
    columns: Tuple[ColumnSchema, ...]
    unique: bool = False
    ascending: bool = True
    first_only: bool = False

    @property
    def primary(self) -> bool:
        return self.name.upper() == "PRIMARY"

    def _ordered_columns(self) -> Tuple[ColumnSchema, ...]:
        return self.columns[:1] if self.first_only else self.columns

    def order_clause(self) -> str:
        direction = "ASC" if self.ascending else "DESC"
        return ",".join(f"{col.quoted_name} {direction}" for col in self._ordered_columns())

    def chunk_clause(self, last_row: Row, quote: Quoter) -> str:
        """Keyset predicate selecting the rows that come after `last_row` in traversal order."""
        if self.first_only:
            # inclusive: rows sharing the boundary value may not all have been seen yet
            first = self.columns[0]
            op = ">=" if self.ascending else "<="
            return f"{first.quoted_name} {op} {first.quoted_value(last_row, quote)}"
        return self._add_term(list(self.columns), last_row, quote)

    def _add_term(self, columns: List[ColumnSchema], last_row: Row, quote: Quoter) -> str:
        column = columns.pop(0)
        value = column.quoted_value(last_row, quote)
        clause = f"{column.quoted_name} {'>' if self.ascending else '<'} {value}"
        if columns:
            clause += f" OR ({column.quoted_name} = {value} AND {self._add_term(columns, last_row, quote)})"
        return clause

# ============================== Chunk query value ===============================

@dataclass(frozen=True)
class ChunkQuery:
    """A SELECT rendered fresh for every chunk; holds no cursor."""
    select: str
    source: str
    filters: Tuple[str, ...] = ()
    order_by: str | None = None
    limit: int | None = None

    def where(self, clause: str) -> "ChunkQuery":
        return replace(self, filters=self.filters + (clause,))

    def with_limit(self, limit: int | None) -> "ChunkQuery":
        return replace(self, limit=limit)

    def to_sql(self) -> str:
        parts = [f"SELECT {self.select}", f"FROM {self.source}"]
        if self.filters:
            parts.append("WHERE " + " AND ".join(f"({f})" for f in self.filters))
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by}")
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        return " ".join(parts)

# ============================== Catalog helpers ===============================

@dataclass
class _CatalogIndex:
    name: str
    unique: bool
    columns: List[Tuple[int, str]] = field(default_factory=list)

    def column_names(self) -> List[str]:
        return [name for _, name in sorted(self.columns)]


def _read_catalog(rows: Iterable[Dict[str, Any]], table: str) -> Dict[str, _CatalogIndex]:
    """Group SHOW INDEX rows by index (encounter order kept); only PRIMARY and BTREE survive."""
    indexes: Dict[str, _CatalogIndex] = {}
    skipped = set()
    for r in rows:
        key_name = str(r["Key_name"])
        index_type = str(r.get("Index_type") or "BTREE").upper()
        if key_name.upper() != "PRIMARY" and index_type != "BTREE":
            skipped.add((key_name, index_type))
            continue
        idx = indexes.setdefault(
            key_name.lower(),
            _CatalogIndex(name=key_name, unique=int(r["Non_unique"]) == 0),
        )
        idx.columns.append((int(r["Seq_in_index"]), str(r["Column_name"])))
    for key_name, index_type in sorted(skipped):
        LOG.debug("Skipping %s index %s on %s (only BTREE indexes can be traversed)", index_type, key_name, table)
    return indexes


def _find_primary_key(indexes: Dict[str, _CatalogIndex]) -> Optional[_CatalogIndex]:
    candidates = list(indexes.values())
    return (
        next((i for i in candidates if i.name.upper() == "PRIMARY"), None)
        or next((i for i in candidates if i.unique), None)
        or next(iter(candidates), None)
    )

# ============================== Table schema ===============================

@dataclass(frozen=True)
class TableSchema:
    """
    Snapshot of what a purge needs to know about one table:
    • primary_key     : identifies rows in DELETE statements
    • traversing_key  : index whose order drives the chunk iteration (None: untraversed)
    • columns         : every column fetched, in row-tuple order
    """
    name: str
    primary_key: IndexSchema
    traversing_key: IndexSchema | None
    columns: Tuple[ColumnSchema, ...]
    dest_name: str
    quote: Quoter = field(repr=False, compare=False)

    @classmethod
    def load(
        cls,
        connection: Connection,
        table: str,
        key_name: str | None = None,
        ascending: bool = True,
        first_only: bool = False,
        non_traversing: bool = False,
        extra_columns: Sequence[str] = (),
        dest_table: str | None = None,
        dest_columns: Dict[str, str] | None = None,
    ) -> "TableSchema":
        indexes = _read_catalog(connection.index_catalog(table), table)
        table_types = {name.lower(): (name, data_type) for name, data_type in connection.table_columns(table)}

        primary = _find_primary_key(indexes)
        if primary is None:
            raise PurgeConfigError(f"Table {table} must have a primary key")

        if key_name:
            traversing = indexes.get(key_name.lower())
            if traversing is None:
                raise PurgeConfigError(f"BTREE Index {key_name} not found in {table}")
        elif non_traversing:
            traversing = None
        else:
            traversing = primary

        # phase one: ordered, de-duplicated column names
        names: List[str] = []
        seen = set()
        for extra in extra_columns:
            if extra.lower() not in table_types:
                raise PurgeConfigError(f"Can't find {extra} in {table}")
        ordered = [table_types[e.lower()][0] for e in extra_columns] + primary.column_names()
        if traversing is not None:
            ordered += traversing.column_names()
        for name in ordered:
            if name.lower() not in seen:
                seen.add(name.lower())
                names.append(name)

        # phase two: resolve positions against the final list
        renames = {str(k).lower(): str(v) for k, v in (dest_columns or {}).items()}
        columns = tuple(
            ColumnSchema(
                name=name,
                select_position=pos,
                data_type=table_types.get(name.lower(), (name, None))[1],
                dest_name=renames.get(name.lower()),
            )
            for pos, name in enumerate(names)
        )
        by_name = {c.name.lower(): c for c in columns}

        def _index(raw: _CatalogIndex, **flags: bool) -> IndexSchema:
            return IndexSchema(
                name=raw.name,
                columns=tuple(by_name[n.lower()] for n in raw.column_names()),
                unique=raw.unique,
                **flags,
            )

        schema = cls(
            name=table,
            primary_key=_index(primary),
            traversing_key=_index(traversing, ascending=ascending, first_only=first_only) if traversing else None,
            columns=columns,
            dest_name=dest_table or table,
            quote=connection.quote,
        )
        LOG.info(
            "Schema for %s: primary key %s(%s), traversing %s, columns %s",
            table, schema.primary_key.name, ",".join(c.name for c in schema.primary_key.columns),
            schema.traversing_key.name if schema.traversing_key else "<none>", schema.column_names,
        )
        return schema

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def _quoted_table(self) -> str:
        return quote_identifier(self.name)

    def initial_scope(self, limit: int | None = None, where: str | None = None) -> ChunkQuery:
        qt = self._quoted_table()
        source = qt
        order_by = None
        if self.traversing_key is not None:
            source += f" FORCE INDEX({self.traversing_key.name})"
            order_by = self.traversing_key.order_clause()
        return ChunkQuery(
            select=",".join(f"{qt}.{c.quoted_name}" for c in self.columns),
            source=source,
            filters=(where,) if where else (),
            order_by=order_by,
            limit=limit,
        )

    def scope_to_next_chunk(self, scope: ChunkQuery, last_row: Row) -> ChunkQuery:
        if self.traversing_key is None:
            return scope
        return scope.where(self.traversing_key.chunk_clause(last_row, self.quote))

    def insert_statement(self, rows: Sequence[Row]) -> str:
        cols = ",".join(c.quoted_dest_name for c in self.columns)
        values = ",".join(
            "(" + ",".join(c.quoted_value(row, self.quote) for c in self.columns) + ")" for row in rows
        )
        return f"INSERT INTO {quote_identifier(self.dest_name)} ({cols}) VALUES {values}"

    def delete_statement(self, rows: Sequence[Row]) -> str:
        criteria = " OR ".join(
            "(" + " AND ".join(
                f"{c.quoted_name} = {c.quoted_value(row, self.quote)}" for c in self.primary_key.columns
            ) + ")"
            for row in rows
        )
        return f"DELETE FROM {self._quoted_table()} WHERE {criteria}"
