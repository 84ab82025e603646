"""
SQL Helper utilities for splitting and classifying SQL scripts.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
from typing import List

import sqlparse
from sqlparse.tokens import Comment, DML, Keyword

_FETCH_STATEMENT = "fetch"
_EXECUTE_STATEMENT = "execute"

# Leading keywords of statements that return rows in SQLite
_FETCH_KEYWORDS = frozenset({"SELECT", "VALUES", "PRAGMA", "EXPLAIN", "SHOW", "DESCRIBE", "DESC"})
_MODIFY_KEYWORDS = frozenset({"INSERT", "UPDATE", "DELETE", "REPLACE"})


def remove_sql_comments(sql_text: str) -> str:
    """
    Remove SQL comments from a SQL string using sqlparse.
    Handles:
    - Single-line comments (-- comment)
    - Multi-line comments (/* comment */)
    - Preserves comments within string literals
    Args:
        sql_text: SQL string that may contain comments
    Returns:
        SQL string with comments removed
    """
    if not sql_text:
        return sql_text
    return sqlparse.format(sql_text, strip_comments=True)


def parse_sql_statements(sql_text: str) -> List[str]:
    """
    Split a SQL script into individual statements using sqlparse.
    Comments are removed first, empty statements and bare semicolons dropped.
    Args:
        sql_text: SQL string that may contain multiple statements
    Returns:
        List of individual SQL statements
    """
    if not sql_text:
        return []
    clean_sql = remove_sql_comments(sql_text)
    stmts = [str(stmt).strip() for stmt in sqlparse.parse(clean_sql)]
    filtered_stmts = []
    for stmt in stmts:
        tokens = list(sqlparse.parse(stmt)[0].flatten()) if stmt else []
        if not tokens:
            continue
        if all(t.is_whitespace or t.ttype in Comment for t in tokens):
            continue
        if stmt.strip() == ';':
            continue
        filtered_stmts.append(stmt)
    return filtered_stmts


def detect_statement_type(sql: str) -> str:
    """
    Classify a single statement as 'fetch' (returns rows) or 'execute'.

    A CTE (WITH ...) is classified by the first top-level statement keyword
    that follows the common table expressions.
    """
    clean_sql = remove_sql_comments(sql or "").strip()
    if not clean_sql:
        return _EXECUTE_STATEMENT

    parsed = sqlparse.parse(clean_sql)
    if not parsed:
        return _EXECUTE_STATEMENT

    leaves = [t for t in parsed[0].flatten() if not t.is_whitespace and t.ttype not in Comment]
    if not leaves:
        return _EXECUTE_STATEMENT

    first = leaves[0].value.upper()
    if first in _FETCH_KEYWORDS:
        return _FETCH_STATEMENT
    if first != "WITH":
        return _EXECUTE_STATEMENT

    tokens = [t for t in parsed[0].tokens if not t.is_whitespace and t.ttype not in Comment]
    for token in tokens[1:]:
        if token.ttype in DML or token.ttype in Keyword:
            keyword = token.value.upper()
            if keyword in _MODIFY_KEYWORDS:
                return _EXECUTE_STATEMENT
            if keyword in _FETCH_KEYWORDS:
                return _FETCH_STATEMENT
    return _EXECUTE_STATEMENT
