"""
PostgreSQL Storage Tests
asyncpg is mocked, these tests check the statements and the transaction scope
"""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from models import (
    BlockData,
    CrawlerState,
    Fee,
    IbcTokenAction,
    IbcTokenFlow,
    TransactionExitStatus,
    TransactionKindName,
    WrapperTransaction,
)
from pg_storage import PostgresStore

T0 = datetime(2024, 11, 2, 10, 0, tzinfo=timezone.utc)


def async_cm(value=None):
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=value)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.executemany = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.transaction = MagicMock(return_value=async_cm())
    return conn


@pytest.fixture
def store(conn):
    store = PostgresStore("postgresql://indexer@localhost/indexer")
    store.pool = MagicMock()
    store.pool.acquire = MagicMock(return_value=async_cm(conn))
    store.pool.close = AsyncMock()
    return store


def block_data(height, wrappers=(), token_flows=()):
    return BlockData(
        height=height,
        wrappers=list(wrappers),
        inners=[],
        ibc_sequences=[],
        ibc_acks=[],
        token_flows=list(token_flows),
        gas_estimates=[],
        crawler_state=CrawlerState("transactions", height, T0),
    )


def wrapper(tx_id="w1"):
    return WrapperTransaction(
        tx_id=tx_id,
        index=0,
        fee=Fee(payer="tnam1payer", token="tnam1token", gas_limit=10, gas_used=5, amount_per_gas_unit="1"),
        atomic=False,
        block_height=3,
        exit_code=TransactionExitStatus.APPLIED,
        total_signatures=1,
        size=100,
    )


class TestInitialize:
    """Test pool and schema setup"""

    def test_initialize_creates_pool_and_schema(self, conn):
        store = PostgresStore("postgresql://indexer@localhost/indexer")
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=async_cm(conn))

        with patch("pg_storage.asyncpg.create_pool", AsyncMock(return_value=pool)) as create_pool:
            asyncio.run(store.initialize())

        create_pool.assert_awaited_once()
        schema = conn.execute.await_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS crawler_state" in schema
        assert "CREATE TABLE IF NOT EXISTS cometbft_block" in schema

    def test_close(self, store):
        pool = store.pool
        asyncio.run(store.close())

        pool.close.assert_awaited_once()
        assert store.pool is None


class TestCommitBlock:
    """Test the per-block transaction"""

    def test_commit_runs_in_one_transaction(self, store, conn):
        flows = [IbcTokenFlow(IbcTokenAction.DEPOSIT, "ibc/ABC", Decimal(3))]
        asyncio.run(store.commit_block(block_data(3, [wrapper()], flows)))

        conn.transaction.assert_called_once()
        statements = [call.args[0] for call in conn.executemany.await_args_list]
        assert len(statements) == 2
        assert "ON CONFLICT (id) DO NOTHING" in statements[0]
        assert "$12" in statements[0]
        assert "ibc_token_flows" in statements[1]

        wrapper_rows = conn.executemany.await_args_list[0].args[1]
        assert wrapper_rows[0][0] == "w1"
        flow_rows = conn.executemany.await_args_list[1].args[1]
        assert flow_rows == [(3, 0, "deposit", "ibc/ABC", Decimal(3))]

    def test_checkpoint_guard(self, store, conn):
        asyncio.run(store.commit_block(block_data(3)))

        conn.executemany.assert_not_awaited()
        statement, name, height, timestamp = conn.execute.await_args.args
        assert "WHERE EXCLUDED.last_processed_block >= crawler_state.last_processed_block" in statement
        assert (name, height, timestamp) == ("transactions", 3, T0)

    def test_errors_propagate(self, store, conn):
        conn.execute.side_effect = asyncpg.PostgresError("boom")

        with pytest.raises(asyncpg.PostgresError):
            asyncio.run(store.commit_block(block_data(3)))

    def test_touch_updates_timestamp_only(self, store, conn):
        asyncio.run(store.touch_crawler_state("transactions", T0))

        statement, timestamp, name = conn.execute.await_args.args
        assert statement.startswith("UPDATE crawler_state SET timestamp = $1")
        assert (timestamp, name) == (T0, "transactions")


class TestReads:
    """Test read accessors"""

    def test_crawler_state(self, store, conn):
        conn.fetchrow.return_value = {
            "name": "transactions",
            "last_processed_block": 42,
            "timestamp": T0,
        }

        state = asyncio.run(store.get_crawler_state("transactions"))

        assert state == CrawlerState("transactions", 42, T0)

    def test_missing_wrapper(self, store, conn):
        assert asyncio.run(store.find_wrapper_tx("AB")) is None
        assert conn.fetchrow.await_args.args[1] == "ab"

    def test_matching_wrappers_arguments(self, store, conn):
        asyncio.run(
            store.find_recent_matching_wrappers(
                offset=20, size=10, kinds=[TransactionKindName.BOND], tokens=["tnam1nam"]
            )
        )

        query, *args = conn.fetch.await_args.args
        assert args[0] == ["bond"]
        assert args[3] == ["tnam1nam"]
        assert args[-2:] == [10, 20]
        assert "LIMIT $5 OFFSET $6" in query
        assert "#>> '{sources,0,token}'" in query

    def test_token_flow_totals(self, store, conn):
        conn.fetch.return_value = [
            {"token": "ibc/ABC", "action": "deposit", "amount": Decimal(4)},
            {"token": "ibc/ABC", "action": "withdraw", "amount": Decimal(1)},
        ]

        assert asyncio.run(store.get_token_flows()) == [
            {"token": "ibc/ABC", "deposit": Decimal(4), "withdraw": Decimal(1)}
        ]

    def test_block_payload(self, store, conn):
        conn.fetchrow.return_value = {
            "encoded_block": '{"a": 1}',
            "encoded_block_result": '{"b": 2}',
        }
        assert asyncio.run(store.get_block_payload(9)) == ({"a": 1}, {"b": 2})
