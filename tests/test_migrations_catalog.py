"""Tests for the schema migration catalog"""

import pytest

from folioapi.migrations_catalog import (
    MigrationCatalog,
    MigrationDefinition,
    checksum_of,
    split_sql_statements,
    version_key,
)


def noop(session):
    return None


def test_version_key_orders_numbers_numerically():
    versions = ["10", "2", "1", "0003", "20_b", "baseline"]
    assert sorted(versions, key=version_key) == [
        "1",
        "2",
        "0003",
        "10",
        "20_b",
        "baseline",
    ]


def test_checksum_is_stable_and_content_sensitive():
    assert checksum_of("SELECT 1;") == checksum_of("SELECT 1;")
    assert checksum_of("SELECT 1;") != checksum_of("SELECT 2;")


def test_split_sql_statements_drops_comments():
    sql = """
    -- first index
    CREATE INDEX a ON t (x);
    CREATE INDEX b
        ON t (y);
    """
    statements = split_sql_statements(sql)
    assert len(statements) == 2
    assert statements[0] == "CREATE INDEX a ON t (x)"
    assert statements[1].startswith("CREATE INDEX b")


def test_split_sql_statements_keeps_quoted_semicolons():
    sql = """
    INSERT INTO notes (body) VALUES ('a;b'), ('it''s; fine'); -- trailing; note
    CREATE FUNCTION touch() RETURNS trigger AS $body$
    BEGIN
        NEW.updated_at = now();
        RETURN NEW;
    END;
    $body$ LANGUAGE plpgsql;
    /* block; comment */ SELECT "odd;name" FROM t
    """
    statements = split_sql_statements(sql)
    assert statements[0] == "INSERT INTO notes (body) VALUES ('a;b'), ('it''s; fine')"
    assert statements[1].startswith("CREATE FUNCTION touch()")
    assert statements[1].endswith("$body$ LANGUAGE plpgsql")
    assert "RETURN NEW;" in statements[1]
    assert statements[2] == 'SELECT "odd;name" FROM t'
    assert len(statements) == 3


def test_split_sql_statements_ignores_positional_dollars():
    statements = split_sql_statements("SELECT $1; SELECT price$ FROM t;")
    assert statements == ["SELECT $1", "SELECT price$ FROM t"]


def test_catalog_iterates_in_version_order():
    catalog = MigrationCatalog()
    catalog.add_sql("10", "ten", "SELECT 10;")
    catalog.add_sql("9", "nine", "SELECT 9;")
    assert [d.version for d in catalog] == ["9", "10"]
    assert len(catalog) == 2


def test_duplicate_version_is_rejected():
    catalog = MigrationCatalog()
    catalog.add_sql("1", "first", "SELECT 1;")
    with pytest.raises(ValueError):
        catalog.add_sql("1", "again", "SELECT 1;")


def test_definition_requires_version_and_apply():
    with pytest.raises(ValueError):
        MigrationDefinition("", "empty", "abc", noop)
    with pytest.raises(ValueError):
        MigrationDefinition("1", "no apply", "abc", None)


def test_callable_checksum_covers_definition_text():
    first = MigrationDefinition.from_callable("1", "backfill", "v1", noop)
    second = MigrationDefinition.from_callable("1", "backfill", "v2", noop)
    assert first.checksum != second.checksum
    assert first.serialize() == {
        "version": "1",
        "name": "backfill",
        "checksum": checksum_of("v1"),
    }


def test_from_directory(tmp_path):
    (tmp_path / "0002_second.sql").write_text("SELECT 2;")
    (tmp_path / "0001_first.sql").write_text("SELECT 1;")
    (tmp_path / "README.md").write_text("not a migration")

    catalog = MigrationCatalog.from_directory(str(tmp_path))

    assert [(d.version, d.name) for d in catalog] == [
        ("0001", "first"),
        ("0002", "second"),
    ]
    assert catalog.get("0001").checksum == checksum_of("SELECT 1;")


def test_from_missing_directory_is_empty(tmp_path):
    catalog = MigrationCatalog.from_directory(str(tmp_path / "missing"))
    assert len(catalog) == 0
