"""
Database section capture and replay.

Two encodings share the database.sql entry:

* a file-backed SQLite store is captured as the raw database file and
  restored by atomically replacing that file;
* any other store is dumped as single-row INSERT statements over a fixed
  allow-list of tables and restored by replaying them after every
  statement has passed validation.

Archive contents are untrusted. Replayed statements must match a strict
grammar (INSERT INTO <allowed table> (<columns>) VALUES (<literals>)) and a
single bad statement rejects the whole section before anything executes.
"""

import os
import re
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import Boolean, select

from sourdough import db
from .errors import InvalidArchive, UnsafeStatementRejected

logger = logging.getLogger(__name__)

# Tables captured by the statement dump, in no particular order;
# dump and replay both follow foreign-key order from the model metadata.
ALLOWED_TABLES = ('users', 'settings', 'notifications', 'social_accounts', 'ai_providers')

SQLITE_HEADER = b'SQLite format 3\x00'

_NAME = r'[A-Za-z_][A-Za-z0-9_]*'
_IDENT = rf'(?:"{_NAME}"|`{_NAME}`|{_NAME})'
_NUMBER = r'[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?'
_HEX = r"[xX]'(?:[0-9A-Fa-f]{2})*'"
_KEYWORD_LITERAL = r'(?i:NULL|TRUE|FALSE)'

# Quotes are escaped by doubling; MySQL additionally doubles backslashes,
# so a lone backslash there is refused.
_STRING = r"'(?:[^']|'')*'"
_STRING_BACKSLASH = r"'(?:[^'\\]|''|\\\\)*'"


def _insert_pattern(string_literal: str):
    literal = rf'(?:{string_literal}|{_NUMBER}|{_KEYWORD_LITERAL}|{_HEX})'
    return re.compile(
        rf'\s*(?i:INSERT)\s+(?i:INTO)\s+(?P<table>{_IDENT})\s*'
        rf'\(\s*(?P<columns>{_IDENT}(?:\s*,\s*{_IDENT})*)\s*\)\s*'
        rf'(?i:VALUES)\s*\(\s*{literal}(?:\s*,\s*{literal})*\s*\)\s*'
    )


_INSERT_RE = _insert_pattern(_STRING)
_INSERT_BACKSLASH_RE = _insert_pattern(_STRING_BACKSLASH)


def _unquote(identifier: str) -> str:
    if identifier[:1] in ('"', '`'):
        return identifier[1:-1]
    return identifier


def ordered_tables():
    """Allow-listed Table objects, parents before children."""
    return [table for table in db.metadata.sorted_tables if table.name in ALLOWED_TABLES]


def embedded_database_path(engine=None) -> Optional[str]:
    """Path of the SQLite file behind the engine, or None for other stores."""
    engine = engine or db.engine
    url = engine.url
    if url.get_backend_name() != 'sqlite':
        return None
    database = url.database
    if not database or database == ':memory:' or database.startswith('file:'):
        return None
    return os.path.abspath(database)


def is_embedded_dump(data: bytes) -> bool:
    return data.startswith(SQLITE_HEADER)


def dump_database() -> bytes:
    """
    Capture the database section. Must run in an application context.

    Returns:
        Raw SQLite file bytes, or UTF-8 INSERT statements each terminated
        by ";" and a newline
    """
    path = embedded_database_path()
    if path is not None:
        logger.info(f"Capturing embedded database file {path}")
        with open(path, 'rb') as f:
            return f.read()

    dialect = db.engine.dialect
    statements = []
    for table in ordered_tables():
        count = 0
        for row in db.session.execute(select(table)).mappings():
            statements.append(render_insert(table, row, dialect))
            count += 1
        logger.debug(f"Dumped {count} rows from {table.name}")

    return ''.join(f"{statement};\n" for statement in statements).encode('utf-8')


def render_insert(table, row, dialect) -> str:
    """Render one row as a literal-only INSERT statement."""
    preparer = dialect.identifier_preparer
    columns = [column.name for column in table.columns]
    names = ', '.join(preparer.quote_identifier(name) for name in columns)
    values = ', '.join(render_literal(row[name], dialect) for name in columns)
    return f"INSERT INTO {preparer.quote_identifier(table.name)} ({names}) VALUES ({values})"


def render_literal(value, dialect) -> str:
    """Render a Python value as a SQL literal for the dialect."""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return Boolean().literal_processor(dialect)(value)
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, datetime):
        value = value.isoformat(sep=' ')
    elif isinstance(value, (date, time)):
        value = value.isoformat()
    return quote_string(str(value), dialect)


def quote_string(value: str, dialect) -> str:
    """
    Single-quoted SQL string literal. Statements are replayed without
    bound parameters, so percent signs are left as they are.
    """
    value = value.replace("'", "''")
    if _uses_backslash_escapes(dialect):
        value = value.replace('\\', '\\\\')
    return f"'{value}'"


def parse_statements(sql: str) -> List[str]:
    """
    Split a dump on semicolons that are not inside a quoted string or
    quoted identifier. Empty statements are dropped.
    """
    statements = []
    current = []
    quote = None

    for char in sql:
        if quote:
            current.append(char)
            if char == quote:
                # A doubled quote re-enters the string on the next char
                quote = None
        elif char in ("'", '"', '`'):
            quote = char
            current.append(char)
        elif char == ';':
            statements.append(''.join(current))
            current = []
        else:
            current.append(char)

    statements.append(''.join(current))
    return [s.strip() for s in statements if s.strip()]


def validate_statement(statement: str, index: int = 0, backslash_escapes: bool = False) -> str:
    """
    Check a statement against the INSERT allow-list grammar.

    Args:
        statement: One statement from parse_statements()
        index: Position in the dump, reported on rejection
        backslash_escapes: True for dialects that treat backslash as an
            escape character inside strings

    Returns:
        The target table name

    Raises:
        UnsafeStatementRejected: If the statement is anything else
    """
    pattern = _INSERT_BACKSLASH_RE if backslash_escapes else _INSERT_RE
    match = pattern.fullmatch(statement)
    if not match:
        raise UnsafeStatementRejected(
            f"Rejected statement {index}: only INSERT INTO an allowed table with literal values is permitted",
            statement, index,
        )

    table_name = _unquote(match.group('table'))
    if table_name not in ALLOWED_TABLES:
        raise UnsafeStatementRejected(
            f"Rejected statement {index}: table '{table_name}' is not allowed",
            statement, index,
        )

    known_columns = _known_columns(table_name)
    if known_columns is not None:
        columns = [_unquote(c.strip()) for c in match.group('columns').split(',')]
        unknown = [c for c in columns if c not in known_columns]
        if unknown:
            raise UnsafeStatementRejected(
                f"Rejected statement {index}: unknown column(s) {', '.join(unknown)} for table '{table_name}'",
                statement, index,
            )

    return table_name


def _known_columns(table_name: str) -> Optional[set]:
    table = db.metadata.tables.get(table_name)
    if table is None:
        return None
    return {column.name for column in table.columns}


def _uses_backslash_escapes(dialect) -> bool:
    return dialect.name in ('mysql', 'mariadb')


def validate_dump(data: bytes, dialect=None) -> List[Tuple[str, str]]:
    """
    Validate every statement of a statement dump.

    Returns:
        (table, statement) pairs in dump order

    Raises:
        InvalidArchive: If the section is not UTF-8 text
        UnsafeStatementRejected: On the first statement that fails validation
    """
    dialect = dialect or db.engine.dialect
    try:
        sql = data.decode('utf-8')
    except UnicodeDecodeError:
        raise InvalidArchive("Invalid backup: database section is neither SQLite nor UTF-8 SQL", section='database')

    backslash_escapes = _uses_backslash_escapes(dialect)
    return [
        (validate_statement(statement, index, backslash_escapes), statement)
        for index, statement in enumerate(parse_statements(sql))
    ]


def restore_database(data: bytes) -> dict:
    """
    Apply a database section. Must run in an application context.

    Statement dumps execute on the current session's connection and are
    committed or rolled back by the caller. An embedded file dump replaces
    the database file immediately and cannot be rolled back.

    Returns:
        {'mode': 'embedded' | 'statements', 'statements': count}

    Raises:
        InvalidArchive: Embedded dump for a non-file store, or undecodable dump
        UnsafeStatementRejected: If any statement fails validation; nothing
            is executed in that case
    """
    if is_embedded_dump(data):
        replace_embedded_database(data)
        return {'mode': 'embedded', 'statements': 0}

    validated = validate_dump(data)
    rank = {table.name: position for position, table in enumerate(ordered_tables())}
    ordered = sorted(validated, key=lambda item: rank.get(item[0], len(rank)))

    connection = db.session.connection()
    for _, statement in ordered:
        connection.exec_driver_sql(statement)

    logger.info(f"Replayed {len(ordered)} database statements")
    return {'mode': 'statements', 'statements': len(ordered)}


def replace_embedded_database(data: bytes):
    """
    Swap the live SQLite file for data, then bring its schema up to date.

    Raises:
        InvalidArchive: If the current store is not a file-backed SQLite database
    """
    from sourdough.migrations import upgrade_schema

    path = embedded_database_path()
    if path is None:
        raise InvalidArchive(
            f"Backup holds an embedded SQLite database but the current store is "
            f"'{db.engine.url.get_backend_name()}'; it cannot be restored here",
            section='database',
        )

    logger.warning(f"Replacing embedded database file {path}")
    db.session.remove()
    db.engine.dispose()

    staging = f"{path}.restore-{os.getpid()}"
    try:
        with open(staging, 'wb') as f:
            f.write(data)
        os.replace(staging, path)
    finally:
        if os.path.exists(staging):
            os.remove(staging)

    applied = upgrade_schema()
    if applied:
        logger.info(f"Applied migrations to restored database: {', '.join(applied)}")

