"""Database structure verification tests.

Tests verify:
- Table existence checking works correctly
- Missing tables are created automatically
- Database initialization is idempotent
- Column constraints reject invalid check statuses
"""
import logging

import pytest
from asserts import assert_equal, assert_false, assert_true
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from rcelect import schema

logger = logging.getLogger(__name__)


class TestTableVerification:
    """Test table existence verification."""

    def test_verify_tables_exist_all_present(self, postgres):
        status = schema.verify_tables_exist(postgres, 'rc_')

        for table_key in ['Session', 'KV', 'Check']:
            assert_true(status[table_key], f'{table_key} should exist')

    def test_verify_tables_detects_missing(self, postgres):
        tables = schema.get_table_names('rc_')
        with postgres.connect() as conn:
            conn.execute(text(f'DROP TABLE {tables["KV"]}'))
            conn.commit()

        status = schema.verify_tables_exist(postgres, 'rc_')

        assert_false(status['KV'])
        assert_true(status['Session'])
        assert_true(status['Check'])

    def test_other_appname_has_no_tables(self, postgres):
        status = schema.verify_tables_exist(postgres, 'other_')
        assert_equal(set(status.values()), {False})


class TestTableCreation:
    """Test automatic table creation."""

    def test_missing_table_recreated(self, postgres):
        tables = schema.get_table_names('rc_')
        with postgres.connect() as conn:
            conn.execute(text(f'DROP TABLE {tables["Session"]}'))
            conn.commit()

        schema.ensure_database_ready(postgres, 'rc_')

        assert_true(schema.verify_tables_exist(postgres, 'rc_')['Session'])

    def test_initialization_is_idempotent(self, postgres):
        tables = schema.get_table_names('rc_')
        with postgres.connect() as conn:
            conn.execute(text(f"""
            INSERT INTO {tables["KV"]} (key, value, modify_index) VALUES ('leader', 'node1', 1)
            """))
            conn.commit()

        schema.ensure_database_ready(postgres, 'rc_')
        schema.ensure_database_ready(postgres, 'rc_')

        with postgres.connect() as conn:
            count = conn.execute(text(f'SELECT COUNT(*) FROM {tables["KV"]}')).scalar()
        assert_equal(count, 1, 'Existing rows should survive re-initialization')

    def test_modify_index_sequence_created(self, postgres):
        tables = schema.get_table_names('rc_')
        with postgres.connect() as conn:
            first = conn.execute(text(f"SELECT nextval('{tables['KVIndex']}')")).scalar()
            second = conn.execute(text(f"SELECT nextval('{tables['KVIndex']}')")).scalar()
        assert_true(second > first)


class TestConstraints:
    """Test column constraints."""

    def test_check_status_constrained(self, postgres):
        tables = schema.get_table_names('rc_')
        with pytest.raises(IntegrityError), postgres.connect() as conn:
            conn.execute(text(f"""
            INSERT INTO {tables["Check"]} (node, check_id, status, updated_at)
            VALUES ('node1', 'serfHealth', 'unknown', NOW())
            """))
            conn.commit()

    def test_check_primary_key_per_node(self, postgres):
        tables = schema.get_table_names('rc_')
        with postgres.connect() as conn:
            for node in ['node1', 'node2']:
                conn.execute(text(f"""
                INSERT INTO {tables["Check"]} (node, check_id, updated_at)
                VALUES (:node, 'serfHealth', NOW())
                """), {'node': node})
            conn.commit()
            statuses = conn.execute(text(f'SELECT DISTINCT status FROM {tables["Check"]}')).scalars().all()
        assert_equal(statuses, ['passing'])


class TestTableNames:
    """Test table name generation."""

    def test_names_use_appname_prefix(self):
        tables = schema.get_table_names('app_')
        assert_equal(tables, {
            'Session': 'app_session',
            'KV': 'app_kv',
            'Check': 'app_check',
            'KVIndex': 'app_kv_index',
        })
