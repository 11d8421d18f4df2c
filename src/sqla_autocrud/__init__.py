"""Schema-driven CRUD queries for SQLAlchemy.

sqla_autocrud reflects a database schema once, then turns generic request
parameters (``select=``, ``column=op.value`` filters, ``order=``, offset or
cursor pages, embedded relations) into parameterized SQLAlchemy statements.
Register a ``SchemaCatalog`` at startup with ``init_catalog``, then serve
reads and writes through ``RecordService`` inside a ``RequestScope`` so
related rows are fetched in batches, one query per relation.
"""

from ._version import __version__, __version_tuple__
from .builder import QueryBuilder
from .catalog import SchemaCatalog, classify_type, get_catalog, init_catalog
from .complexity import QueryAnalysis, QueryComplexityAnalyzer
from .config import Settings
from .cursor import CursorCodec
from .datastructures import CacheEntry, TTLCache, frozendict
from .errors import (
    AutocrudError,
    ComplexityError,
    CursorError,
    DataAccessError,
    LoadCancelledError,
    ValidationError,
)
from .loader import RelationshipLoader, RequestScope, request_scope
from .models import (
    ColumnInfo,
    ColumnType,
    Comparison,
    CompiledStatement,
    CursorPage,
    ExpandNode,
    ForeignKeyInfo,
    Group,
    InList,
    OffsetPage,
    SelectField,
    SortSpec,
    Statement,
    TableInfo,
    TypeKind,
)
from .parsing import (
    parse_embedded_filters,
    parse_expand,
    parse_filters,
    parse_order,
    parse_select,
    parse_sort,
)
from .relations import Relation, resolve_relation
from .service import RecordService
from .tools import autocrud_cache_clear, get_primary_key, to_sa_table
from .validation import IdentifierValidator


__all__ = (
    "AutocrudError",
    "CacheEntry",
    "ColumnInfo",
    "ColumnType",
    "Comparison",
    "CompiledStatement",
    "ComplexityError",
    "CursorCodec",
    "CursorError",
    "CursorPage",
    "DataAccessError",
    "ExpandNode",
    "ForeignKeyInfo",
    "Group",
    "IdentifierValidator",
    "InList",
    "LoadCancelledError",
    "OffsetPage",
    "QueryAnalysis",
    "QueryBuilder",
    "QueryComplexityAnalyzer",
    "RecordService",
    "Relation",
    "RelationshipLoader",
    "RequestScope",
    "SchemaCatalog",
    "SelectField",
    "Settings",
    "SortSpec",
    "Statement",
    "TTLCache",
    "TableInfo",
    "TypeKind",
    "ValidationError",
    "__version__",
    "__version_tuple__",
    "autocrud_cache_clear",
    "classify_type",
    "frozendict",
    "get_catalog",
    "get_primary_key",
    "init_catalog",
    "parse_embedded_filters",
    "parse_expand",
    "parse_filters",
    "parse_order",
    "parse_select",
    "parse_sort",
    "request_scope",
    "resolve_relation",
    "to_sa_table",
)
