"""
Indexer Storage (PostgreSQL)
asyncpg-backed store with the same write unit and read accessors as SqliteStore
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from models import BlockData, CrawlerState, TransactionKindName
from storage import (
    GAS_COLUMNS,
    IBC_TRANSFER_KINDS,
    INNER_COLUMNS,
    REGULAR_TRANSFER_KINDS,
    WRAPPER_COLUMNS,
    ack_rows,
    flow_rows,
    sequence_rows,
    sum_token_flows,
)

logger = logging.getLogger(__name__)


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


class PostgresStore:
    """PostgreSQL store for indexed transactions"""

    def __init__(self, db_url: str, min_size: int = 2, max_size: int = 10):
        self.db_url = db_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Open the connection pool and create the schema"""
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.db_url, min_size=self.min_size, max_size=self.max_size
            )
        await self.create_schema()
        logger.info("PostgreSQL store initialized")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def create_schema(self) -> None:
        """Create database schema if not exists"""
        gas_columns = ",\n".join(
            f"{column} INTEGER NOT NULL DEFAULT 0" for column in GAS_COLUMNS
        )
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS wrapper_transactions (
                    id TEXT PRIMARY KEY,
                    fee_payer TEXT,
                    fee_token TEXT,
                    gas_limit BIGINT NOT NULL,
                    gas_used BIGINT,
                    amount_per_gas_unit TEXT,
                    atomic BOOLEAN NOT NULL,
                    block_height BIGINT NOT NULL,
                    exit_code TEXT NOT NULL,
                    tx_index INTEGER NOT NULL,
                    total_signatures INTEGER NOT NULL,
                    size INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS inner_transactions (
                    id TEXT PRIMARY KEY,
                    wrapper_id TEXT NOT NULL REFERENCES wrapper_transactions(id),
                    tx_index INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    data TEXT,
                    extra_sections TEXT,
                    memo TEXT,
                    notes INTEGER NOT NULL DEFAULT 0,
                    exit_code TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ibc_ack (
                    id TEXT PRIMARY KEY,
                    tx_hash TEXT NOT NULL,
                    timeout BIGINT NOT NULL,
                    status TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ibc_token_flows (
                    block_height BIGINT NOT NULL,
                    idx INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    token TEXT NOT NULL,
                    amount NUMERIC(78, 0) NOT NULL,
                    PRIMARY KEY (block_height, idx)
                );

                CREATE TABLE IF NOT EXISTS gas_estimations (
                    wrapper_id TEXT PRIMARY KEY,
                    signatures INTEGER NOT NULL,
                    size INTEGER NOT NULL,
                    {gas_columns}
                );

                CREATE TABLE IF NOT EXISTS crawler_state (
                    name TEXT PRIMARY KEY,
                    last_processed_block BIGINT NOT NULL,
                    timestamp TIMESTAMPTZ NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cometbft_block (
                    id BIGINT PRIMARY KEY,
                    encoded_block TEXT NOT NULL,
                    encoded_block_result TEXT NOT NULL,
                    epoch BIGINT
                );

                -- Indexes for performance
                CREATE INDEX IF NOT EXISTS idx_wrapper_height ON wrapper_transactions(block_height DESC);
                CREATE INDEX IF NOT EXISTS idx_inner_wrapper ON inner_transactions(wrapper_id);
                CREATE INDEX IF NOT EXISTS idx_inner_kind ON inner_transactions(kind);
                CREATE INDEX IF NOT EXISTS idx_ibc_ack_tx ON ibc_ack(tx_hash);
                CREATE INDEX IF NOT EXISTS idx_token_flows_token ON ibc_token_flows(token);
            """
            )
        logger.info("Database schema created/verified")

    # ==================== WRITES ====================

    async def commit_block(self, block: BlockData) -> None:
        """Write a block's rows and advance the crawler checkpoint in one transaction"""
        state = block.crawler_state

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if block.wrappers:
                        await conn.executemany(
                            f"""
                            INSERT INTO wrapper_transactions ({", ".join(WRAPPER_COLUMNS)})
                            VALUES ({_placeholders(len(WRAPPER_COLUMNS))})
                            ON CONFLICT (id) DO NOTHING
                        """,
                            [wrapper.to_row() for wrapper in block.wrappers],
                        )
                    if block.inners:
                        await conn.executemany(
                            f"""
                            INSERT INTO inner_transactions ({", ".join(INNER_COLUMNS)})
                            VALUES ({_placeholders(len(INNER_COLUMNS))})
                            ON CONFLICT (id) DO UPDATE SET
                                kind = EXCLUDED.kind,
                                data = EXCLUDED.data
                        """,
                            [inner.to_row() for inner in block.inners],
                        )
                    if block.ibc_sequences:
                        await conn.executemany(
                            """
                            INSERT INTO ibc_ack (id, tx_hash, timeout, status)
                            VALUES ($1, $2, $3, $4)
                            ON CONFLICT (id) DO NOTHING
                        """,
                            sequence_rows(block),
                        )
                    if block.ibc_acks:
                        await conn.executemany(
                            "UPDATE ibc_ack SET status = $1 WHERE id = $2",
                            ack_rows(block),
                        )
                    if block.token_flows:
                        await conn.executemany(
                            """
                            INSERT INTO ibc_token_flows (block_height, idx, action, token, amount)
                            VALUES ($1, $2, $3, $4, $5)
                            ON CONFLICT (block_height, idx) DO NOTHING
                        """,
                            flow_rows(block),
                        )
                    if block.gas_estimates:
                        await conn.executemany(
                            f"""
                            INSERT INTO gas_estimations (wrapper_id, signatures, size, {", ".join(GAS_COLUMNS)})
                            VALUES ({_placeholders(len(GAS_COLUMNS) + 3)})
                            ON CONFLICT (wrapper_id) DO NOTHING
                        """,
                            [estimate.to_row() for estimate in block.gas_estimates],
                        )
                    await conn.execute(
                        """
                        INSERT INTO crawler_state (name, last_processed_block, timestamp)
                        VALUES ($1, $2, $3)
                        ON CONFLICT (name) DO UPDATE SET
                            timestamp = EXCLUDED.timestamp,
                            last_processed_block = EXCLUDED.last_processed_block
                        WHERE EXCLUDED.last_processed_block >= crawler_state.last_processed_block
                    """,
                        state.name,
                        state.last_processed_block,
                        state.timestamp,
                    )
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to commit block {block.height}: {e}")
            raise

        logger.debug(
            f"Committed block {block.height}: {len(block.wrappers)} wrappers, "
            f"{len(block.inners)} inner txs"
        )

    async def touch_crawler_state(self, name: str, timestamp: datetime) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE crawler_state SET timestamp = $1 WHERE name = $2", timestamp, name
            )

    async def save_block_payload(
        self,
        height: int,
        block: Dict[str, Any],
        block_result: Dict[str, Any],
        epoch: Optional[int] = None,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO cometbft_block (id, encoded_block, encoded_block_result, epoch)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO NOTHING
            """,
                height,
                json.dumps(block),
                json.dumps(block_result),
                epoch,
            )

    # ==================== READS ====================

    async def _fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return dict(row) if row else None

    async def _fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [dict(row) for row in rows]

    async def get_crawler_state(self, name: str) -> Optional[CrawlerState]:
        row = await self._fetchrow(
            "SELECT name, last_processed_block, timestamp FROM crawler_state WHERE name = $1",
            name,
        )
        if row is None:
            return None
        return CrawlerState(
            name=row["name"],
            last_processed_block=row["last_processed_block"],
            timestamp=row["timestamp"],
        )

    async def get_block_payload(
        self, height: int
    ) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        row = await self._fetchrow(
            "SELECT encoded_block, encoded_block_result FROM cometbft_block WHERE id = $1",
            height,
        )
        if row is None:
            return None
        return json.loads(row["encoded_block"]), json.loads(row["encoded_block_result"])

    async def find_wrapper_tx(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            "SELECT * FROM wrapper_transactions WHERE id = $1", tx_id.lower()
        )

    async def find_inner_tx(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            "SELECT * FROM inner_transactions WHERE id = $1", tx_id.lower()
        )

    async def find_inners_by_wrapper_tx(self, wrapper_id: str) -> List[Dict[str, Any]]:
        return await self._fetch(
            "SELECT * FROM inner_transactions WHERE wrapper_id = $1 ORDER BY tx_index",
            wrapper_id.lower(),
        )

    async def find_txs_by_block_height(self, block_height: int) -> List[Dict[str, Any]]:
        return await self._fetch(
            "SELECT * FROM wrapper_transactions WHERE block_height = $1 ORDER BY tx_index",
            block_height,
        )

    async def find_most_recent_transactions(
        self, offset: int = 0, size: int = 10
    ) -> List[Dict[str, Any]]:
        return await self._fetch(
            """
            SELECT * FROM wrapper_transactions
            ORDER BY block_height DESC, tx_index ASC
            LIMIT $1 OFFSET $2
        """,
            size,
            offset,
        )

    async def find_recent_matching_wrappers(
        self,
        offset: int = 0,
        size: int = 10,
        kinds: Sequence[TransactionKindName] = (),
        tokens: Sequence[str] = (),
    ) -> List[Dict[str, Any]]:
        """Most recent wrappers containing an inner tx of the given kinds / tokens"""
        clauses = []
        args: List[Any] = []

        if kinds:
            args.append([kind.value for kind in kinds])
            clauses.append(f"""
                EXISTS (
                    SELECT 1 FROM inner_transactions i
                    WHERE i.wrapper_id = w.id AND i.kind = ANY(${len(args)}::text[])
                )
            """)

        if tokens:
            args.append([kind.value for kind in REGULAR_TRANSFER_KINDS])
            regular = len(args)
            args.append([kind.value for kind in IBC_TRANSFER_KINDS])
            ibc = len(args)
            args.append(list(tokens))
            token_arg = len(args)
            clauses.append(f"""
                EXISTS (
                    SELECT 1 FROM inner_transactions i
                    WHERE i.wrapper_id = w.id
                    AND (
                        (i.kind = ANY(${regular}::text[]) AND (
                            (i.data::jsonb #>> '{{sources,0,token}}') = ANY(${token_arg}::text[])
                            OR (i.data::jsonb #>> '{{targets,0,token}}') = ANY(${token_arg}::text[])
                        ))
                        OR (i.kind = ANY(${ibc}::text[])
                            AND (i.data::jsonb #>> '{{token}}') = ANY(${token_arg}::text[]))
                    )
                )
            """)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.extend([size, offset])
        return await self._fetch(
            f"""
            SELECT w.* FROM wrapper_transactions w
            {where}
            ORDER BY w.block_height DESC, w.tx_index ASC
            LIMIT ${len(args) - 1} OFFSET ${len(args)}
        """,
            *args,
        )

    async def find_ibc_ack_by_tx_id(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            "SELECT id, tx_hash, timeout, status FROM ibc_ack WHERE tx_hash = $1",
            tx_id.lower(),
        )

    async def get_token_flows(self, token: Optional[str] = None) -> List[Dict[str, Any]]:
        if token:
            rows = await self._fetch(
                "SELECT token, action, amount FROM ibc_token_flows WHERE token = $1", token
            )
        else:
            rows = await self._fetch("SELECT token, action, amount FROM ibc_token_flows")
        return sum_token_flows([(row["token"], row["action"], row["amount"]) for row in rows])

    async def find_gas_estimate(self, wrapper_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(
            "SELECT * FROM gas_estimations WHERE wrapper_id = $1", wrapper_id.lower()
        )
