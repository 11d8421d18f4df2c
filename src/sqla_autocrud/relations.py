from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache

from .datastructures import frozendict
from .models import ForeignKeyInfo, TableInfo


@dataclass(slots=True, frozen=True)
class Relation:
    """A relation reachable from ``source`` through one declared foreign key.

    ``many`` is ``False`` for a forward (many-to-one) relation, where
    ``source`` holds the foreign key, and ``True`` for a reverse
    (one-to-many) relation, where ``target`` holds it.
    """

    name: str
    source: str
    target: str
    foreign_key: ForeignKeyInfo
    many: bool

    @property
    def local_columns(self) -> tuple[str, ...]:
        """Columns of ``source`` whose values are looked up in ``target``."""
        fk = self.foreign_key
        return fk.referenced_columns if self.many else fk.columns

    @property
    def remote_columns(self) -> tuple[str, ...]:
        """Columns of ``target`` matched against the local values."""
        fk = self.foreign_key
        return fk.columns if self.many else fk.referenced_columns


@lru_cache(maxsize=1024)
def _resolve_relation(
    table_info: TableInfo,
    name: str,
    schema: frozendict[str, TableInfo],
) -> Relation | None:
    # Forward: this table references ``name`` (matched by table or constraint name).
    for fk in table_info.foreign_keys:
        if name in (fk.referenced_table, fk.name) and fk.referenced_table in schema:
            return Relation(
                name=name,
                source=table_info.name,
                target=fk.referenced_table,
                foreign_key=fk,
                many=False,
            )

    # Reverse: table ``name`` references this table.
    other = schema.get(name)
    if other is not None:
        for fk in other.foreign_keys:
            if fk.referenced_table == table_info.name:
                return Relation(
                    name=name,
                    source=table_info.name,
                    target=other.name,
                    foreign_key=fk,
                    many=True,
                )

    return None


def resolve_relation(
    table_info: TableInfo,
    name: str,
    schema: Mapping[str, TableInfo],
) -> Relation | None:
    """Find the relation called *name* starting at *table_info*.

    Forward foreign keys declared on *table_info* win over reverse ones, so a
    self-referencing table resolves its own name to the parent row. Results are
    cached per catalog snapshot.

    Args:
        table_info: Table the expansion starts from.
        name: Related table name, or the foreign key constraint name.
        schema: Catalog snapshot used to find reverse relations.

    Returns:
        The resolved :class:`Relation`, or ``None`` if nothing matches.
    """
    if not isinstance(schema, frozendict):
        schema = frozendict(schema)
    return _resolve_relation(table_info, name, schema)


def relation_names(table_info: TableInfo, schema: Mapping[str, TableInfo]) -> list[str]:
    """List every relation name that can be expanded from *table_info*."""
    names = [fk.referenced_table for fk in table_info.foreign_keys]
    names.extend(
        other.name
        for other in schema.values()
        if any(fk.referenced_table == table_info.name for fk in other.foreign_keys)
    )
    return list(dict.fromkeys(names))


def relations_cache_clear() -> None:
    _resolve_relation.cache_clear()
