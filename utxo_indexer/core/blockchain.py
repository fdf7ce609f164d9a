import asyncio
import logging
from contextlib import asynccontextmanager

from utxo_indexer.core.config import settings
from utxo_indexer.core.errors import ValidationError
from utxo_indexer.core.height import HeightTracker
from utxo_indexer.core.ledger_store import LedgerStore
from utxo_indexer.core.models import Block
from utxo_indexer.core.validation import validate_block, validate_rollback_height

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Entry point for the API layer: submit a block, roll back, read balances
    and the current height.

    Block submission and rollback are serialised by a single lock, because
    reading the height, validating against it and moving it is not atomic on
    its own. Reads take the same lock, so they see the ledger either before or
    after a write and never in between.
    """

    def __init__(self, store: LedgerStore, max_rollback_depth: int = settings.MAX_ROLLBACK_DEPTH):
        self.store = store
        self.max_rollback_depth = max_rollback_depth
        self._height = HeightTracker()
        self._lock = asyncio.Lock()
        self.initialized = False

    async def initialize(self):
        if self.initialized:
            return
        discarded = await self.store.open()
        if discarded:
            logger.warning("Discarded %d unfinished blocks left by an earlier run.", discarded)
        height = await self._height.load(self.store)
        self.initialized = True
        logger.info("Ledger initialized at height %d.", height)

    def get_current_height(self) -> int:
        return self._height.value

    @asynccontextmanager
    async def reading(self):
        """Hold writers off while the caller reads several values from the store."""
        async with self._lock:
            yield self.store

    async def get_balance(self, address: str) -> int:
        async with self.reading() as store:
            return await store.get_address_balance(address)

    async def submit_block(self, block: Block) -> int:
        async with self._lock:
            try:
                await validate_block(block, self._height.value, self.store)
            except ValidationError as e:
                logger.warning("Rejected block %s at height %d: %s: %s", block.id, block.height, e.code, e)
                raise

            await self.store.apply_block(block)
            self._height.commit(block.height)

        logger.info("Block %d (%s) added with %d transactions.", block.height, block.id, len(block.transactions))
        return block.height

    async def rollback(self, target_height: int) -> int:
        async with self._lock:
            current = self._height.value
            try:
                validate_rollback_height(target_height, current, self.max_rollback_depth)
            except ValidationError as e:
                logger.warning("Rejected rollback from %d to %s: %s", current, target_height, e)
                raise

            undone = await self.store.rollback_to_height(target_height)
            self._height.commit(target_height)

        logger.info("Rolled back from height %d to %d (%d blocks undone).", current, target_height, undone)
        return target_height
