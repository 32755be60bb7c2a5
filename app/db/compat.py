"""
Dialect-portable SQL functions for PostgreSQL and SQLite.

Each function compiles to the right SQL for the active dialect
(PostgreSQL in production, SQLite in tests).
"""
from sqlalchemy import Float
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import GenericFunction


class seconds_between(GenericFunction):
    """Seconds elapsed from the second timestamp to the first: seconds_between(end, start)"""
    type = Float()
    name = "seconds_between"
    inherit_cache = True


@compiles(seconds_between, "postgresql")
def _pg_seconds_between(element, compiler, **kw):
    """PostgreSQL: EXTRACT(EPOCH FROM (end - start))"""
    end, start = (compiler.process(c, **kw) for c in element.clauses.clauses)
    return f"EXTRACT(EPOCH FROM ({end} - {start}))"


@compiles(seconds_between, "sqlite")
def _sqlite_seconds_between(element, compiler, **kw):
    """SQLite: (julianday(end) - julianday(start)) * 86400"""
    end, start = (compiler.process(c, **kw) for c in element.clauses.clauses)
    return f"((julianday({end}) - julianday({start})) * 86400.0)"
