"""
Tests for sql_helper module.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from jpy_sqlite_stress.schema import DATATYPE_TABLE_SQL, SCHEMA_SQL
from jpy_sqlite_stress.sql_helper import (
    detect_statement_type,
    parse_sql_statements,
    remove_sql_comments,
)


class TestSqlHelper(unittest.TestCase):

    def test_remove_sql_comments_single_line(self):
        """Test removing single-line comments."""
        sql = """
        SELECT * FROM users; -- This is a comment
        INSERT INTO users VALUES (1, 'John'); -- Another comment
        """
        clean_sql = remove_sql_comments(sql)
        self.assertNotIn('--', clean_sql)
        self.assertIn('SELECT * FROM users;', clean_sql)
        self.assertIn("INSERT INTO users VALUES (1, 'John');", clean_sql)

    def test_remove_sql_comments_multi_line(self):
        """Test removing multi-line comments."""
        sql = """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY, /* This is a multi-line
            comment that spans multiple lines */
            name TEXT NOT NULL
        );
        """
        clean_sql = remove_sql_comments(sql)
        self.assertNotIn('/*', clean_sql)
        self.assertNotIn('*/', clean_sql)
        self.assertIn('name TEXT NOT NULL', clean_sql)

    def test_remove_sql_comments_preserves_string_literals(self):
        """Comment markers inside string literals are kept."""
        sql = "INSERT INTO logs (message) VALUES ('-- not a comment');"
        clean_sql = remove_sql_comments(sql)
        self.assertIn("'-- not a comment'", clean_sql)

    def test_remove_sql_comments_empty(self):
        self.assertEqual(remove_sql_comments(''), '')
        self.assertIsNone(remove_sql_comments(None))

    def test_parse_sql_statements_multiple(self):
        """Test splitting a script into statements."""
        sql = """
        CREATE TABLE a (id INTEGER);
        INSERT INTO a VALUES (1);
        ;
        SELECT * FROM a;
        """
        statements = parse_sql_statements(sql)
        self.assertEqual(len(statements), 3)
        self.assertTrue(statements[0].startswith('CREATE TABLE a'))
        self.assertTrue(statements[2].startswith('SELECT'))

    def test_parse_sql_statements_only_comments(self):
        self.assertEqual(parse_sql_statements("-- nothing here\n/* or here */"), [])
        self.assertEqual(parse_sql_statements(''), [])

    def test_parse_schema_script(self):
        """The schema script splits into three tables and five indexes."""
        statements = parse_sql_statements(SCHEMA_SQL)
        self.assertEqual(len(statements), 8)
        self.assertEqual(sum(1 for s in statements if s.startswith('CREATE TABLE')), 3)
        self.assertEqual(sum(1 for s in statements if s.startswith('CREATE INDEX')), 5)

    def test_parse_datatype_table_script(self):
        statements = parse_sql_statements(DATATYPE_TABLE_SQL)
        self.assertEqual(len(statements), 2)
        self.assertTrue(statements[0].startswith('DROP TABLE'))

    def test_detect_statement_type_fetch(self):
        for sql in (
            "SELECT * FROM users",
            "  select count(*) from users",
            "VALUES (1, 2)",
            "PRAGMA page_count",
            "EXPLAIN QUERY PLAN SELECT * FROM users",
            "-- leading comment\nSELECT 1",
        ):
            with self.subTest(sql=sql):
                self.assertEqual(detect_statement_type(sql), 'fetch')

    def test_detect_statement_type_execute(self):
        for sql in (
            "INSERT INTO users (username) VALUES ('a')",
            "UPDATE users SET age = 1",
            "DELETE FROM users",
            "CREATE TABLE t (id INTEGER)",
            "DROP TABLE IF EXISTS t",
            "VACUUM",
            "",
        ):
            with self.subTest(sql=sql):
                self.assertEqual(detect_statement_type(sql), 'execute')

    def test_detect_statement_type_cte(self):
        fetch_cte = "WITH recent AS (SELECT * FROM users) SELECT * FROM recent"
        modify_cte = "WITH old AS (SELECT id FROM users) DELETE FROM users WHERE id IN (SELECT id FROM old)"
        self.assertEqual(detect_statement_type(fetch_cte), 'fetch')
        self.assertEqual(detect_statement_type(modify_cte), 'execute')


if __name__ == '__main__':
    unittest.main()
