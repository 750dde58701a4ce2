"""Tests for splitting SQL scripts into statements."""

import pytest

from src.dbfast.errors import MalformedSqlError
from src.dbfast.sql_splitter import split


def test_dollar_quoted_block_keeps_embedded_semicolons():
    """Test the DO block example splits into exactly two statements."""
    statements = split("DO $$ BEGIN x:=1; END $$; SELECT 1;")

    assert statements == ["DO $$ BEGIN x:=1; END $$", "SELECT 1"]


def test_tagged_dollar_quotes_nest_other_tags():
    """Test that only the opening tag closes a tagged block."""
    sql = (
        "CREATE FUNCTION f() RETURNS text AS $body$\n"
        "BEGIN RETURN $$inner; text$$; END;\n"
        "$body$ LANGUAGE plpgsql;\n"
        "SELECT f();"
    )

    statements = split(sql)

    assert len(statements) == 2
    assert statements[0].endswith("$body$ LANGUAGE plpgsql")
    assert statements[1] == "SELECT f()"


def test_semicolons_in_literals_and_identifiers_do_not_split():
    statements = split(
        "INSERT INTO t VALUES ('a;b', 'it''s; fine');\n"
        'SELECT "weird;name" FROM t;\n'
        "SELECT E'escaped \\' quote;';"
    )

    assert statements == [
        "INSERT INTO t VALUES ('a;b', 'it''s; fine')",
        'SELECT "weird;name" FROM t',
        "SELECT E'escaped \\' quote;'",
    ]


def test_comments_do_not_split_and_comment_only_chunks_are_dropped():
    sql = (
        "-- header; with semicolon\n"
        "CREATE TABLE a (id int); /* block; /* nested; */ still comment; */\n"
        "-- trailing comment only;\n"
    )

    statements = split(sql)

    assert statements == ["-- header; with semicolon\nCREATE TABLE a (id int)"]


def test_positional_parameters_are_not_dollar_quotes():
    """Test that $1 placeholders do not open a quoted block."""
    statements = split("PREPARE q AS SELECT $1; EXECUTE q(1);")

    assert statements == ["PREPARE q AS SELECT $1", "EXECUTE q(1)"]


def test_empty_and_whitespace_input():
    assert split("") == []
    assert split("  ;\n ; ") == []


def test_last_statement_without_semicolon_is_kept():
    assert split("SELECT 1; SELECT 2") == ["SELECT 1", "SELECT 2"]


def test_unterminated_dollar_quote_raises_with_location():
    """Test that an unclosed block reports where it started."""
    sql = "SELECT 1;\nDO $fn$ BEGIN PERFORM 1; END;"

    with pytest.raises(MalformedSqlError) as excinfo:
        split(sql, source="0_schema/bad.sql")

    error = excinfo.value
    assert error.offset == sql.index("$fn$")
    assert error.statement_index == 1
    assert error.source == "0_schema/bad.sql"


@pytest.mark.parametrize(
    ("sql", "opener", "what"),
    [
        ("SELECT 1;\nINSERT INTO t VALUES ('oops);\nSELECT 2;", "'oops", "string literal"),
        ('SELECT 1;\nSELECT "col FROM t;\nSELECT 2;', '"col', "quoted identifier"),
        ("SELECT 1;\nSELECT E'tail\\';", "'tail", "string literal"),
        ("SELECT 1;\n/* outer /* inner */ SELECT 2;", "/* outer", "block comment"),
    ],
)
def test_unclosed_regions_raise_instead_of_swallowing_the_file(sql, opener, what):
    with pytest.raises(MalformedSqlError, match=f"Unterminated {what}") as excinfo:
        split(sql, source="0_schema/bad.sql")

    assert excinfo.value.offset == sql.index(opener)
    assert excinfo.value.statement_index == 1


def test_doubled_quote_at_end_is_still_unterminated():
    with pytest.raises(MalformedSqlError):
        split("SELECT 'it''")
