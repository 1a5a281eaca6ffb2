"""Tests for the in-memory schema catalog."""

import pytest

from pitr.catalog import SchemaCatalog, split_top_level, unquote
from pitr.errors import ExecutionError
from pitr.schemas import SchemaJob


@pytest.fixture
def catalog():
    cat = SchemaCatalog()
    cat.apply_statement("", "CREATE DATABASE shop")
    cat.apply_statement("shop", "CREATE TABLE orders (id INT PRIMARY KEY, item VARCHAR(20), qty INT)")
    return cat


class TestHelpers:

    def test_unquote(self):
        assert unquote("`my``table`") == "my`table"
        assert unquote('"col"') == "col"
        assert unquote("plain") == "plain"

    def test_split_top_level(self):
        assert split_top_level("a INT, b DECIMAL(10,2), c ENUM('x,y')") == [
            "a INT", "b DECIMAL(10,2)", "c ENUM('x,y')",
        ]


    def test_split_top_level_escaped_quotes(self):
        assert split_top_level(r"a INT COMMENT 'it\'s, ok', b INT") == [r"a INT COMMENT 'it\'s, ok'", "b INT"]
        assert split_top_level(r'a TEXT DEFAULT "x\"y", b INT') == [r'a TEXT DEFAULT "x\"y"', "b INT"]


class TestDatabases:

    def test_create_and_drop(self, catalog):
        catalog.apply_statement("", "CREATE SCHEMA IF NOT EXISTS crm")
        assert catalog.databases() == ["crm", "shop"]
        catalog.apply_statement("", "DROP DATABASE crm;")
        assert catalog.databases() == ["shop"]

    def test_create_existing(self, catalog):
        with pytest.raises(ExecutionError, match="already exists"):
            catalog.apply_statement("", "CREATE DATABASE shop")
        catalog.apply_statement("", "CREATE DATABASE IF NOT EXISTS shop")

    def test_drop_missing(self, catalog):
        with pytest.raises(ExecutionError, match="unknown database"):
            catalog.apply_statement("", "DROP DATABASE nope")
        catalog.apply_statement("", "DROP DATABASE IF EXISTS nope")

    def test_use_selects_namespace(self, catalog):
        catalog.apply_statement("", "USE `shop`")
        catalog.apply_statement("", "CREATE TABLE items (sku TEXT)")
        assert catalog.columns("shop", "items") == ["sku"]

    def test_no_database_selected(self):
        with pytest.raises(ExecutionError, match="no database selected"):
            SchemaCatalog().apply_statement("", "CREATE TABLE t (a INT)")


class TestTables:

    def test_columns_skip_key_clauses(self, catalog):
        catalog.apply_statement(
            "shop",
            "CREATE TABLE `Users` (`id` INT, `key` TEXT, name TEXT, PRIMARY KEY (id), "
            "UNIQUE KEY uk_name (name), CONSTRAINT fk FOREIGN KEY (id) REFERENCES orders (id))",
        )
        assert catalog.columns("shop", "users") == ["id", "key", "name"]
        assert catalog.has_table("SHOP", "USERS")

    def test_escaped_quote_in_comment(self, catalog):
        catalog.apply_statement("shop", r"CREATE TABLE t (a INT COMMENT 'it\'s', b INT, c INT COMMENT 'x(\\')")
        assert catalog.columns("shop", "t") == ["a", "b", "c"]

    def test_unknown_table_columns(self, catalog):
        assert catalog.columns("shop", "missing") is None

    def test_create_like(self, catalog):
        catalog.apply_statement("shop", "CREATE TABLE orders_copy LIKE orders")
        assert catalog.columns("shop", "orders_copy") == ["id", "item", "qty"]

    def test_create_existing_table(self, catalog):
        with pytest.raises(ExecutionError, match="already exists"):
            catalog.apply_statement("shop", "CREATE TABLE orders (a INT)")
        catalog.apply_statement("shop", "CREATE TABLE IF NOT EXISTS orders (a INT)")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty"]

    def test_duplicate_column(self, catalog):
        with pytest.raises(ExecutionError, match="duplicate column"):
            catalog.apply_statement("shop", "CREATE TABLE t (a INT, A INT)")

    def test_drop_tables(self, catalog):
        catalog.apply_statement("shop", "CREATE TABLE t1 (a INT)")
        catalog.apply_statement("shop", "DROP TABLE IF EXISTS t1, shop.orders, nope")
        assert catalog.tables("shop") == []

    def test_drop_missing_table(self, catalog):
        with pytest.raises(ExecutionError, match="unknown table"):
            catalog.apply_statement("shop", "DROP TABLE nope")

    def test_truncate_requires_table(self, catalog):
        catalog.apply_statement("shop", "TRUNCATE TABLE orders")
        with pytest.raises(ExecutionError, match="doesn't exist"):
            catalog.apply_statement("shop", "TRUNCATE nope")

    def test_rename_table_across_databases(self, catalog):
        catalog.apply_statement("", "CREATE DATABASE archive")
        catalog.apply_statement("shop", "RENAME TABLE orders TO archive.orders_2023")
        assert catalog.tables("shop") == []
        assert catalog.columns("archive", "orders_2023") == ["id", "item", "qty"]


class TestAlterTable:

    def test_add_column_positions(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders ADD COLUMN note TEXT, ADD created INT FIRST, "
                                        "ADD price INT AFTER item")
        assert catalog.columns("shop", "orders") == ["created", "id", "item", "price", "qty", "note"]

    def test_add_multiple_columns(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE shop.orders ADD (a INT, b DECIMAL(5,2))")
        assert catalog.columns("shop", "orders")[-2:] == ["a", "b"]

    def test_drop_change_modify_rename(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders DROP COLUMN qty")
        catalog.apply_statement("shop", "ALTER TABLE orders CHANGE item product VARCHAR(40)")
        catalog.apply_statement("shop", "ALTER TABLE orders MODIFY product TEXT FIRST")
        catalog.apply_statement("shop", "ALTER TABLE orders RENAME COLUMN id TO order_id")
        assert catalog.columns("shop", "orders") == ["product", "order_id"]

    def test_add_column_if_not_exists(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders ADD COLUMN IF NOT EXISTS note TEXT")
        catalog.apply_statement("shop", "ALTER TABLE orders ADD COLUMN IF NOT EXISTS qty BIGINT")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty", "note"]

    def test_add_columns_if_not_exists(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders ADD COLUMN IF NOT EXISTS (item TEXT, price INT)")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty", "price"]

    def test_drop_column_if_exists(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders DROP COLUMN IF EXISTS qty")
        catalog.apply_statement("shop", "ALTER TABLE orders DROP COLUMN IF EXISTS qty")
        assert catalog.columns("shop", "orders") == ["id", "item"]
        catalog.apply_statement("shop", "ALTER TABLE orders ADD COLUMN qty INT")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty"]

    def test_index_clauses_ignored(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders ADD INDEX idx_item (item), DROP PRIMARY KEY")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty"]

    def test_rename_to(self, catalog):
        catalog.apply_statement("shop", "ALTER TABLE orders RENAME TO purchases")
        assert catalog.tables("shop") == ["purchases"]

    def test_unknown_column(self, catalog):
        with pytest.raises(ExecutionError, match="unknown column"):
            catalog.apply_statement("shop", "ALTER TABLE orders DROP COLUMN nope")

    def test_failed_alter_leaves_table_unchanged(self, catalog):
        with pytest.raises(ExecutionError):
            catalog.apply_statement("shop", "ALTER TABLE orders ADD note TEXT, DROP COLUMN nope")
        assert catalog.columns("shop", "orders") == ["id", "item", "qty"]


class TestNoops:

    @pytest.mark.parametrize("sql", [
        "SET NAMES utf8mb4",
        "/*!40101 SET character_set_client = utf8 */;",
        "-- comment",
        "",
        "   ",
        "LOCK TABLES orders WRITE",
        "UNLOCK TABLES",
        "CREATE UNIQUE INDEX idx ON orders (item)",
        "CREATE OR REPLACE ALGORITHM=UNDEFINED DEFINER=`root`@`%` SQL SECURITY DEFINER VIEW v AS SELECT 1",
        "DROP VIEW v",
    ])
    def test_accepted_without_effect(self, catalog, sql):
        before = catalog.snapshot()
        catalog.apply_statement("shop", sql)
        assert catalog.snapshot() == before

    def test_unsupported_statement(self, catalog):
        with pytest.raises(ExecutionError, match="unsupported statement"):
            catalog.apply_statement("shop", "INSERT INTO orders VALUES (1, 'a', 2)")

    def test_view_keyword_in_table_name_is_not_a_view(self, catalog):
        catalog.apply_statement("shop", "CREATE TABLE view_counts (n INT)")
        assert catalog.has_table("shop", "view_counts")


class TestApplyJobs:

    def _job(self, job_id, query, state="synced", schema="shop"):
        return SchemaJob(job_id=job_id, schema_version=job_id, finished_ts=job_id,
                         schema_name=schema, state=state, query=query)

    def test_applies_committed_jobs_only(self):
        catalog = SchemaCatalog()
        jobs = [
            self._job(1, "CREATE DATABASE shop", schema=""),
            self._job(2, "CREATE TABLE t (a INT)"),
            self._job(3, "ALTER TABLE t ADD b INT", state="rollback done"),
            self._job(4, "ALTER TABLE t ADD c INT", state="done"),
            self._job(5, "DROP TABLE t", state="cancelled"),
        ]
        assert catalog.apply_jobs(jobs) == 3
        assert catalog.columns("shop", "t") == ["a", "c"]

    def test_failure_names_job(self):
        with pytest.raises(ExecutionError, match="schema job 7 .schema version 7."):
            SchemaCatalog().apply_jobs([self._job(7, "CREATE TABLE t (a INT)")])

    def test_reset(self, catalog):
        catalog.reset()
        assert catalog.databases() == []
        assert catalog.statements_applied == 0
