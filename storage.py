"""
Indexer Storage (SQLite)
Writes each block's derived rows and the crawler checkpoint as one transaction,
and exposes read accessors for the query layer
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from models import (
    BlockData,
    CrawlerState,
    GasEstimation,
    IbcAckStatus,
    TransactionKindName,
)

logger = logging.getLogger(__name__)

REGULAR_TRANSFER_KINDS = (
    TransactionKindName.TRANSPARENT_TRANSFER,
    TransactionKindName.SHIELDED_TRANSFER,
    TransactionKindName.SHIELDING_TRANSFER,
    TransactionKindName.UNSHIELDING_TRANSFER,
    TransactionKindName.MIXED_TRANSFER,
)

IBC_TRANSFER_KINDS = (
    TransactionKindName.IBC_SEND_TRANSPARENT_TRANSFER,
    TransactionKindName.IBC_RECV_TRANSPARENT_TRANSFER,
    TransactionKindName.IBC_SHIELDING_TRANSFER,
    TransactionKindName.IBC_UNSHIELDING_TRANSFER,
)

GAS_COLUMNS = GasEstimation.COUNTERS

WRAPPER_COLUMNS = (
    "id",
    "fee_payer",
    "fee_token",
    "gas_limit",
    "gas_used",
    "amount_per_gas_unit",
    "atomic",
    "block_height",
    "exit_code",
    "tx_index",
    "total_signatures",
    "size",
)

INNER_COLUMNS = (
    "id",
    "wrapper_id",
    "tx_index",
    "kind",
    "data",
    "extra_sections",
    "memo",
    "notes",
    "exit_code",
)


def sequence_rows(block: BlockData) -> List[tuple]:
    return [
        (sequence.packet_id(), sequence.tx_id, sequence.timeout, IbcAckStatus.UNKNOWN.value)
        for sequence in block.ibc_sequences
    ]


def ack_rows(block: BlockData) -> List[tuple]:
    return [(ack.status.value, ack.packet_id()) for ack in block.ibc_acks]


def flow_rows(block: BlockData) -> List[tuple]:
    return [
        (block.height, idx, flow.action.value, flow.denom, flow.amount)
        for idx, flow in enumerate(block.token_flows)
    ]


def sum_token_flows(rows: Sequence[Tuple[str, str, Any]]) -> List[Dict[str, Any]]:
    """Aggregate (token, action, amount) rows into per-token totals"""
    totals: Dict[str, Dict[str, Decimal]] = defaultdict(
        lambda: {"deposit": Decimal(0), "withdraw": Decimal(0)}
    )
    for token, action, amount in rows:
        totals[token][action] += Decimal(str(amount))
    return [
        {"token": token, "deposit": sums["deposit"], "withdraw": sums["withdraw"]}
        for token, sums in sorted(totals.items())
    ]


class SqliteStore:
    """
    SQLite store for indexed transactions with per-block atomic commits

    File databases run in WAL mode with a separate reader connection, so
    reads see the last committed block while a commit is in progress.
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize database"""
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self.reader: Optional[sqlite3.Connection] = None
        self.lock = threading.RLock()
        self.read_lock = threading.RLock()
        self._init_database()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self) -> None:
        """Initialize database schema"""
        try:
            self.conn = self._connect()
            if not self.in_memory:
                self.conn.execute("PRAGMA journal_mode=WAL")
            cursor = self.conn.cursor()


            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wrapper_transactions (
                    id TEXT PRIMARY KEY,
                    fee_payer TEXT,
                    fee_token TEXT,
                    gas_limit INTEGER NOT NULL,
                    gas_used INTEGER,
                    amount_per_gas_unit TEXT,
                    atomic BOOLEAN NOT NULL,
                    block_height INTEGER NOT NULL,
                    exit_code TEXT NOT NULL,
                    tx_index INTEGER NOT NULL,
                    total_signatures INTEGER NOT NULL,
                    size INTEGER NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_wrapper_height ON wrapper_transactions(block_height)"
            )

            cursor.execute("""
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
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_inner_wrapper ON inner_transactions(wrapper_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_inner_kind ON inner_transactions(kind)"
            )

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ibc_ack (
                    id TEXT PRIMARY KEY,
                    tx_hash TEXT NOT NULL,
                    timeout INTEGER NOT NULL,
                    status TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_ibc_ack_tx ON ibc_ack(tx_hash)")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ibc_token_flows (
                    block_height INTEGER NOT NULL,
                    idx INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    token TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    PRIMARY KEY (block_height, idx)
                )
            """)

            gas_columns = ",\n".join(
                f"{column} INTEGER NOT NULL DEFAULT 0" for column in GAS_COLUMNS
            )
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS gas_estimations (
                    wrapper_id TEXT PRIMARY KEY,
                    signatures INTEGER NOT NULL,
                    size INTEGER NOT NULL,
                    {gas_columns}
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS crawler_state (
                    name TEXT PRIMARY KEY,
                    last_processed_block INTEGER NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)

            # Raw node payloads, replayed when reindexing
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cometbft_block (
                    id INTEGER PRIMARY KEY,
                    encoded_block TEXT NOT NULL,
                    encoded_block_result TEXT NOT NULL,
                    epoch INTEGER
                )
            """)

            self.conn.commit()
            # An in-memory database only exists on the connection that created it
            self.reader = self.conn if self.in_memory else self._connect()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization error: {e}")
            raise

    async def initialize(self) -> None:
        """Create database schema if not exists"""
        with self.lock:
            if self.conn is None:
                self._init_database()

    async def close(self) -> None:
        with self.lock, self.read_lock:
            if self.reader is not None and self.reader is not self.conn:
                self.reader.close()
            self.reader = None
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    # ==================== WRITES ====================

    async def commit_block(self, block: BlockData) -> None:
        """
        Write a block's rows and advance the crawler checkpoint atomically

        On any error the transaction is rolled back, the previous checkpoint
        stays in place and the block is processed again after a restart.
        """
        wrapper_placeholders = ", ".join("?" for _ in WRAPPER_COLUMNS)
        inner_placeholders = ", ".join("?" for _ in INNER_COLUMNS)
        gas_placeholders = ", ".join("?" for _ in range(len(GAS_COLUMNS) + 3))
        state = block.crawler_state

        try:
            with self.lock, self.conn:
                cursor = self.conn.cursor()
                cursor.executemany(
                    f"""
                    INSERT INTO wrapper_transactions ({", ".join(WRAPPER_COLUMNS)})
                    VALUES ({wrapper_placeholders})
                    ON CONFLICT (id) DO NOTHING
                    """,
                    [wrapper.to_row() for wrapper in block.wrappers],
                )
                # Kind and data may change when a newer classifier replays the block
                cursor.executemany(
                    f"""
                    INSERT INTO inner_transactions ({", ".join(INNER_COLUMNS)})
                    VALUES ({inner_placeholders})
                    ON CONFLICT (id) DO UPDATE SET
                        kind = excluded.kind,
                        data = excluded.data
                    """,
                    [inner.to_row() for inner in block.inners],
                )
                cursor.executemany(
                    """
                    INSERT INTO ibc_ack (id, tx_hash, timeout, status)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    sequence_rows(block),
                )
                cursor.executemany(
                    "UPDATE ibc_ack SET status = ? WHERE id = ?", ack_rows(block)
                )
                cursor.executemany(
                    """
                    INSERT INTO ibc_token_flows (block_height, idx, action, token, amount)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (block_height, idx) DO NOTHING
                    """,
                    [row[:4] + (str(row[4]),) for row in flow_rows(block)],
                )
                cursor.executemany(
                    f"""
                    INSERT INTO gas_estimations (wrapper_id, signatures, size, {", ".join(GAS_COLUMNS)})
                    VALUES ({gas_placeholders})
                    ON CONFLICT (wrapper_id) DO NOTHING
                    """,
                    [estimate.to_row() for estimate in block.gas_estimates],
                )
                cursor.execute(
                    """
                    INSERT INTO crawler_state (name, last_processed_block, timestamp)
                    VALUES (?, ?, ?)
                    ON CONFLICT (name) DO UPDATE SET
                        timestamp = excluded.timestamp,
                        last_processed_block = excluded.last_processed_block
                    WHERE excluded.last_processed_block >= crawler_state.last_processed_block
                    """,
                    (state.name, state.last_processed_block, state.timestamp.isoformat()),
                )
        except sqlite3.Error as e:
            logger.error(f"Failed to commit block {block.height}: {e}")
            raise

        logger.debug(
            f"Committed block {block.height}: {len(block.wrappers)} wrappers, "
            f"{len(block.inners)} inner txs"
        )

    async def touch_crawler_state(self, name: str, timestamp: datetime) -> None:
        """Update the crawler timestamp only, the block cursor stays"""
        with self.lock, self.conn:
            self.conn.execute(
                "UPDATE crawler_state SET timestamp = ? WHERE name = ?",
                (timestamp.isoformat(), name),
            )

    async def save_block_payload(
        self,
        height: int,
        block: Dict[str, Any],
        block_result: Dict[str, Any],
        epoch: Optional[int] = None,
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO cometbft_block (id, encoded_block, encoded_block_result, epoch)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO NOTHING
                """,
                (height, json.dumps(block), json.dumps(block_result), epoch),
            )

    # ==================== READS ====================

    def _read_lock(self):
        # The in-memory reader is the writer connection
        return self.lock if self.in_memory else self.read_lock

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self._read_lock():
            row = self.reader.execute(query, params).fetchone()
        return dict(row) if row else None

    def _fetchall(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._read_lock():
            rows = self.reader.execute(query, params).fetchall()
        return [dict(row) for row in rows]


    @staticmethod
    def _wrapper(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is not None:
            row["atomic"] = bool(row["atomic"])
        return row

    async def get_crawler_state(self, name: str) -> Optional[CrawlerState]:
        row = self._fetchone(
            "SELECT name, last_processed_block, timestamp FROM crawler_state WHERE name = ?",
            (name,),
        )
        if row is None:
            return None
        return CrawlerState(
            name=row["name"],
            last_processed_block=row["last_processed_block"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    async def get_block_payload(
        self, height: int
    ) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        row = self._fetchone(
            "SELECT encoded_block, encoded_block_result FROM cometbft_block WHERE id = ?",
            (height,),
        )
        if row is None:
            return None
        return json.loads(row["encoded_block"]), json.loads(row["encoded_block_result"])

    async def find_wrapper_tx(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return self._wrapper(
            self._fetchone("SELECT * FROM wrapper_transactions WHERE id = ?", (tx_id.lower(),))
        )

    async def find_inner_tx(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM inner_transactions WHERE id = ?", (tx_id.lower(),))

    async def find_inners_by_wrapper_tx(self, wrapper_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM inner_transactions WHERE wrapper_id = ? ORDER BY tx_index",
            (wrapper_id.lower(),),
        )

    async def find_txs_by_block_height(self, block_height: int) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            "SELECT * FROM wrapper_transactions WHERE block_height = ? ORDER BY tx_index",
            (block_height,),
        )
        return [self._wrapper(row) for row in rows]

    async def find_most_recent_transactions(
        self, offset: int = 0, size: int = 10
    ) -> List[Dict[str, Any]]:
        rows = self._fetchall(
            """
            SELECT * FROM wrapper_transactions
            ORDER BY block_height DESC, tx_index ASC
            LIMIT ? OFFSET ?
            """,
            (size, offset),
        )
        return [self._wrapper(row) for row in rows]

    async def find_recent_matching_wrappers(
        self,
        offset: int = 0,
        size: int = 10,
        kinds: Sequence[TransactionKindName] = (),
        tokens: Sequence[str] = (),
    ) -> List[Dict[str, Any]]:
        """Most recent wrappers containing an inner tx of the given kinds / tokens"""
        clauses = []
        params: List[Any] = []

        if kinds:
            clauses.append(f"""
                EXISTS (
                    SELECT 1 FROM inner_transactions i
                    WHERE i.wrapper_id = w.id
                    AND i.kind IN ({", ".join("?" for _ in kinds)})
                )
            """)
            params.extend(kind.value for kind in kinds)

        if tokens:
            token_marks = ", ".join("?" for _ in tokens)
            regular_marks = ", ".join("?" for _ in REGULAR_TRANSFER_KINDS)
            ibc_marks = ", ".join("?" for _ in IBC_TRANSFER_KINDS)
            clauses.append(f"""
                EXISTS (
                    SELECT 1 FROM inner_transactions i
                    WHERE i.wrapper_id = w.id
                    AND (
                        (i.kind IN ({regular_marks}) AND (
                            COALESCE(json_extract(i.data, '$.sources[0].token'), '') IN ({token_marks})
                            OR COALESCE(json_extract(i.data, '$.targets[0].token'), '') IN ({token_marks})
                        ))
                        OR (i.kind IN ({ibc_marks})
                            AND COALESCE(json_extract(i.data, '$.token'), '') IN ({token_marks}))
                    )
                )
            """)
            params.extend(kind.value for kind in REGULAR_TRANSFER_KINDS)
            params.extend(tokens)
            params.extend(tokens)
            params.extend(kind.value for kind in IBC_TRANSFER_KINDS)
            params.extend(tokens)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"""
            SELECT w.* FROM wrapper_transactions w
            {where}
            ORDER BY w.block_height DESC, w.tx_index ASC
            LIMIT ? OFFSET ?
            """,
            tuple(params) + (size, offset),
        )
        return [self._wrapper(row) for row in rows]

    async def find_ibc_ack_by_tx_id(self, tx_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT id, tx_hash, timeout, status FROM ibc_ack WHERE tx_hash = ?",
            (tx_id.lower(),),
        )

    async def get_token_flows(self, token: Optional[str] = None) -> List[Dict[str, Any]]:
        if token:
            rows = self._fetchall(
                "SELECT token, action, amount FROM ibc_token_flows WHERE token = ?", (token,)
            )
        else:
            rows = self._fetchall("SELECT token, action, amount FROM ibc_token_flows")
        return sum_token_flows([(row["token"], row["action"], row["amount"]) for row in rows])

    async def find_gas_estimate(self, wrapper_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT * FROM gas_estimations WHERE wrapper_id = ?", (wrapper_id.lower(),)
        )
