"""JSON column that uses JSONB where the dialect has it.

PostgreSQL gets JSONB (indexable, containment queries); every other
dialect, SQLite in the test suite included, gets plain JSON.
"""

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONDocument(TypeDecorator):
    """Dialect-aware JSON document column."""

    impl = sa.JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: sa.Dialect) -> sa.types.TypeEngine:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(sa.JSON())
