"""
Transactions Crawler
Indexes blocks strictly in height order: decodes, classifies, correlates IBC
packets, estimates gas and commits each block with its checkpoint
"""

import asyncio
import logging
import signal
import sqlite3
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

import asyncpg
import requests

from block_result import Block, PayloadDecodeError, decode_block
from checksums import ChecksumRegistry
from config import config
from gas import get_gas_estimates
from ibc import IbcCorrelationError, get_ibc_ack_packets, get_ibc_packets, get_ibc_token_flows
from models import BlockData, CrawlerState
from node_client import NodeClient
from pg_storage import PostgresStore
from storage import SqliteStore
from tx_decoder import TransactionClassifier

logger = logging.getLogger(__name__)

# Retried with backoff, the block is processed again from scratch
TRANSIENT_ERRORS = (
    requests.RequestException,
    sqlite3.OperationalError,
    asyncpg.PostgresConnectionError,
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.TooManyConnectionsError,
    asyncio.TimeoutError,
    OSError,
)

# Stop the crawler, the block must not be skipped
FATAL_ERRORS = (PayloadDecodeError, IbcCorrelationError)


@dataclass
class CrawlerProgress:
    """Current crawler progress"""

    latest_indexed_height: int
    chain_latest_height: int
    is_syncing: bool
    blocks_per_second: float


class TransactionsCrawler:
    """
    Block crawler for inner/wrapper transactions, IBC packets and gas profiles

    The next height always comes from the committed checkpoint, so a restart
    resumes right after the last fully written block.
    """

    def __init__(
        self,
        store: Any,
        client: NodeClient,
        registry: Optional[ChecksumRegistry] = None,
        name: Optional[str] = None,
        start_height: Optional[int] = None,
        poll_interval: Optional[float] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        retry_max_attempts: Optional[int] = None,
        checksums_refresh_interval: Optional[float] = None,
        cache_payloads: Optional[bool] = None,
        internal_addresses: Optional[Iterable[str]] = None,
    ):
        self.store = store
        self.client = client
        self.registry = registry if registry is not None else ChecksumRegistry()
        self.classifier = TransactionClassifier(self.registry)
        self.name = name or config.CRAWLER_NAME
        self.start_height = start_height or config.START_HEIGHT
        self.poll_interval = config.POLL_INTERVAL if poll_interval is None else poll_interval
        self.retry_base_delay = (
            config.RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = (
            config.RETRY_MAX_DELAY if retry_max_delay is None else retry_max_delay
        )
        self.retry_max_attempts = (
            config.RETRY_MAX_ATTEMPTS if retry_max_attempts is None else retry_max_attempts
        )
        self.checksums_refresh_interval = (
            config.CHECKSUMS_REFRESH_INTERVAL
            if checksums_refresh_interval is None
            else checksums_refresh_interval
        )
        self.cache_payloads = (
            config.CACHE_BLOCK_PAYLOADS if cache_payloads is None else cache_payloads
        )
        self.internal_addresses = (
            list(internal_addresses)
            if internal_addresses is not None
            else list(config.INTERNAL_ADDRESSES)
        )
        self.running = False
        self.progress = CrawlerProgress(0, 0, False, 0.0)
        self._checksums_loaded_at: Optional[float] = None

    async def initialize(self):
        """Prepare the store and seed the checksum registry"""
        await self.store.initialize()
        await self.with_retry("load checksums", self.load_checksums)
        logger.info(f"Crawler {self.name} initialized")

    # ==================== CHECKSUMS ====================

    async def load_checksums(self):
        published = self.client.get_checksums()
        self.registry.load(published)
        self._checksums_loaded_at = time.monotonic()

    async def refresh_checksums_if_due(self):
        """Reload published checksums, keeping the current table when the node fails"""
        if self._checksums_loaded_at is not None and (
            time.monotonic() - self._checksums_loaded_at < self.checksums_refresh_interval
        ):
            return
        try:
            await self.load_checksums()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Checksum refresh failed, keeping current table: {e}")

    # ==================== RETRY ====================

    def backoff_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * 2 ** (attempt - 1), self.retry_max_delay)

    async def with_retry(self, label: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run an operation, retrying transient errors with exponential backoff

        Fatal errors and anything unexpected propagate on the first attempt.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except FATAL_ERRORS:
                raise
            except TRANSIENT_ERRORS as e:
                if self.retry_max_attempts and attempt >= self.retry_max_attempts:
                    logger.error(f"{label} failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{label} failed (attempt {attempt}): {e}, retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    # ==================== BLOCKS ====================

    async def next_height(self) -> int:
        state = await self.store.get_crawler_state(self.name)
        if state is None:
            return self.start_height
        return state.last_processed_block + 1

    async def fetch_block(self, height: int) -> Block:
        """Decode a block, from the payload cache when present"""
        cached = await self.store.get_block_payload(height)
        if cached is not None:
            block_payload, results_payload = cached
            return decode_block(block_payload, results_payload)

        block_payload = self.client.get_block(height)
        results_payload = self.client.get_block_results(height)
        block = decode_block(block_payload, results_payload)
        if self.cache_payloads:
            await self.store.save_block_payload(
                height, block_payload, results_payload, block.epoch
            )
        return block

    def process_block(self, block: Block) -> BlockData:
        """Derive every row of a block, without touching the store"""
        txs = self.classifier.classify_block(block)
        inners = [inner for _, batch in txs for inner in batch]

        return BlockData(
            height=block.height,
            wrappers=[wrapper for wrapper, _ in txs],
            inners=inners,
            ibc_sequences=get_ibc_packets(block.result, txs, self.internal_addresses),
            ibc_acks=get_ibc_ack_packets(inners),
            token_flows=get_ibc_token_flows(block.result),
            gas_estimates=get_gas_estimates(txs),
            crawler_state=CrawlerState(
                name=self.name,
                last_processed_block=block.height,
                timestamp=datetime.now(timezone.utc),
            ),
        )

    async def index_block(self, height: int) -> BlockData:
        """Index a single block and advance the checkpoint"""
        block = await self.fetch_block(height)
        block_data = self.process_block(block)
        await self.store.commit_block(block_data)
        self.progress.latest_indexed_height = height

        if height % 100 == 0:
            progress = self.progress
            logger.info(
                f"Indexed block {height}, "
                f"{max(progress.chain_latest_height - height, 0)} behind the chain, "
                f"{progress.blocks_per_second:.2f} blocks/s"
            )
        return block_data

    async def index_block_with_retry(self, height: int) -> BlockData:
        try:
            return await self.with_retry(f"Block {height}", lambda: self.index_block(height))
        except FATAL_ERRORS as e:
            logger.critical(f"Block {height} cannot be indexed: {e}")
            raise

    async def chain_latest_height(self) -> int:
        return self.client.get_latest_height()

    # ==================== LOOP ====================

    async def run(self, until_height: Optional[int] = None):
        """
        Main crawler loop

        Args:
            until_height: Return once this height is committed (runs forever when None)
        """
        self.running = True
        await self.initialize()

        while self.running:
            await self.refresh_checksums_if_due()

            height = await self.next_height()
            if until_height is not None and height > until_height:
                logger.info(f"Reached height {until_height}, stopping")
                break

            chain_latest = await self.with_retry("Chain status", self.chain_latest_height)
            self.progress.chain_latest_height = chain_latest

            if height > chain_latest:
                self.progress.is_syncing = False
                await self.store.touch_crawler_state(self.name, datetime.now(timezone.utc))
                await asyncio.sleep(self.poll_interval)
                continue

            self.progress.is_syncing = True
            start_time = time.monotonic()
            await self.index_block_with_retry(height)
            elapsed = time.monotonic() - start_time
            self.progress.blocks_per_second = 1 / elapsed if elapsed > 0 else 0.0

        self.running = False

    def request_stop(self):
        self.running = False

    async def stop(self):
        """Stop the crawler"""
        logger.info("Stopping crawler...")
        self.running = False
        await self.store.close()
        logger.info("Crawler stopped")


def create_store(settings=config):
    """PostgreSQL when DATABASE_URL is set, SQLite otherwise"""
    if settings.uses_postgres():
        return PostgresStore(settings.DATABASE_URL)
    return SqliteStore(settings.DB_PATH)


async def main():
    """Main entry point"""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT,
    )

    client = NodeClient(
        config.NODE_RPC_URL,
        config.NODE_API_URL,
        timeout=config.REQUEST_TIMEOUT,
        retry_count=config.NODE_RETRY_COUNT,
    )
    registry = ChecksumRegistry.with_bundled_fallback(config.CHECKSUMS_FALLBACK_PATH or None)
    crawler = TransactionsCrawler(create_store(), client, registry)

    # Handle graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        crawler.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        await crawler.run()
    except FATAL_ERRORS as e:
        logger.critical(f"Crawler halted: {e}")
        exit_code = 1
    except Exception as e:
        logger.error(f"Crawler error: {e}")
        exit_code = 1
    finally:
        await crawler.stop()

    if exit_code:
        sys.exit(exit_code)


def run_main():
    """Console script entry point"""
    asyncio.run(main())


if __name__ == "__main__":
    run_main()
