import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from utxo_indexer.core import database
from utxo_indexer.core.database import (
    get_balances_collection,
    get_blocks_collection,
    get_effects_collection,
    get_inputs_collection,
    get_outputs_collection,
    get_transactions_collection,
)
from utxo_indexer.core.effects import (
    AdjustBalance,
    CommitJournals,
    CreateBlock,
    CreateInput,
    CreateOutput,
    CreateTransaction,
    Effect,
    RecordJournal,
    SpendOutput,
    input_key,
    output_key,
)
from utxo_indexer.core.errors import InvalidInputReference, OutputNotFound, StorageFailure
from utxo_indexer.core.models import Block

logger = logging.getLogger(__name__)


class AtomicUnit:
    """
    One all-or-nothing group of effects.

    Effects may run forwards (``run``) or backwards (``undo``). The unit keeps
    the order it ran them in so that, without a database transaction, it can
    restore the starting state by compensating in reverse.
    """

    def __init__(self, db, session=None):
        self.db = db
        self.session = session
        self._done: List[Tuple[Effect, bool]] = []

    @property
    def session_kwargs(self) -> Dict:
        return {"session": self.session} if self.session is not None else {}

    def __len__(self) -> int:
        return len(self._done)

    async def run(self, effect: Effect):
        await effect.apply(self)
        self._done.append((effect, True))

    async def undo(self, effect: Effect):
        await effect.revert(self)
        self._done.append((effect, False))

    async def compensate(self):
        while self._done:
            effect, forward = self._done.pop()
            if forward:
                await effect.revert(self)
            else:
                await effect.apply(self)


class LedgerStore:
    """
    The only writer of persisted ledger state.

    ``apply_block`` and ``rollback_to_height`` each execute as one atomic unit:
    inside a MongoDB transaction when ``use_transactions`` is set, otherwise by
    compensating through the effect journal on failure. A unit cut short by a
    crash leaves a pending journal that ``open`` discards on the next start.
    """

    def __init__(self, db, use_transactions: bool = False):
        self._db = db
        self._use_transactions = use_transactions

    async def ensure_indexes(self):
        await database.ensure_indexes(self._db)

    async def open(self) -> int:
        """Prepare the store for writes. Returns the number of unfinished blocks discarded."""
        await self.ensure_indexes()
        if self._use_transactions:
            await self._check_transactions_supported()
        return await self.recover()

    async def _check_transactions_supported(self):
        hello = await self._db.client.admin.command("hello")
        if "setName" not in hello and hello.get("msg") != "isdbgrid":
            raise StorageFailure("MONGO_TRANSACTIONS needs a replica set or a sharded cluster")

    @asynccontextmanager
    async def atomic(self):
        if self._use_transactions:
            async with await self._db.client.start_session() as session:
                try:
                    async with session.start_transaction():
                        yield AtomicUnit(self._db, session)
                except PyMongoError as e:
                    logger.error("Atomic unit aborted by the database: %s", e)
                    raise StorageFailure(str(e)) from e
            return

        unit = AtomicUnit(self._db)
        try:
            yield unit
        except BaseException as e:
            logger.error("Atomic unit aborted after %d effects, compensating: %s", len(unit), e)
            try:
                await unit.compensate()
            except (PyMongoError, StorageFailure) as compensation_error:
                logger.critical("Compensation failed, ledger state needs repair.", exc_info=True)
                raise StorageFailure(f"compensation failed: {compensation_error}") from e
            if isinstance(e, PyMongoError):
                raise StorageFailure(str(e)) from e
            raise

    # --- Writes ---

    async def apply_block(self, block: Block):
        """
        Persist the block, then for each transaction in declared order: the
        transaction row, each input (row, spent flag, debit) and each output
        (row, credit) in ascending index.

        The effects are planned up front and journaled as pending before the
        first of them runs; the journal is flagged committed after the last.
        """
        async with self.atomic() as unit:
            journal = RecordJournal(block_id=block.id, height=block.height, effects=await self._plan(block, unit))
            await unit.run(journal)
            for effect in journal.effects:
                await unit.run(effect)
            await unit.run(CommitJournals(above=block.height - 1))

        logger.debug("Applied block %s with %d effects.", block.id, len(journal.effects))

    async def _plan(self, block: Block, unit: AtomicUnit) -> List[Effect]:
        effects: List[Effect] = [CreateBlock(block_id=block.id, height=block.height)]
        created: Dict[str, Dict] = {}
        consumed = set()
        tx_ids = set()

        for position, tx in enumerate(block.transactions):
            stored = await get_transactions_collection(self._db).find_one({"_id": tx.id}, **unit.session_kwargs)
            if stored is not None or tx.id in tx_ids:
                raise StorageFailure(f"Transaction {tx.id} is already stored")
            tx_ids.add(tx.id)
            effects.append(CreateTransaction(tx_id=tx.id, block_id=block.id, position=position))

            for input_position, tin in enumerate(tx.inputs):
                key = output_key(tin.tx_id, tin.index)
                spent = created.get(key) or await self._find_output(tin.tx_id, tin.index, unit)
                if spent is None:
                    raise InvalidInputReference(tin.tx_id, tin.index)
                if spent["spent"] or key in consumed:
                    raise InvalidInputReference(tin.tx_id, tin.index, "already spent")
                consumed.add(key)
                effects.append(CreateInput(
                    tx_id=tx.id, position=input_position, ref_tx_id=tin.tx_id, ref_index=tin.index
                ))
                effects.append(SpendOutput(
                    tx_id=tin.tx_id,
                    index=tin.index,
                    address=spent["address"],
                    value=spent["value"],
                    spent_by=input_key(tx.id, input_position),
                ))
                effects.append(AdjustBalance(address=spent["address"], delta=-spent["value"]))

            for index, tout in enumerate(tx.outputs):
                created[output_key(tx.id, index)] = {"address": tout.address, "value": tout.value, "spent": False}
                effects.append(CreateOutput(tx_id=tx.id, index=index, address=tout.address, value=tout.value))
                effects.append(AdjustBalance(address=tout.address, delta=tout.value))

        return effects

    async def rollback_to_height(self, target_height: int) -> int:
        """
        Undo every block above ``target_height``, highest first. Within a
        block the journal is replayed backwards, so the block row goes last.
        Returns the number of blocks undone.
        """
        async with self.atomic() as unit:
            blocks = await get_blocks_collection(self._db).find(
                {"height": {"$gt": target_height}},
                sort=[("height", DESCENDING)],
                **unit.session_kwargs,
            ).to_list(length=None)
            if not blocks:
                return 0

            await unit.undo(CommitJournals(above=target_height))
            for block in blocks:
                journal = await self._load_journal(block["_id"], unit)
                for effect in reversed(journal.effects):
                    await unit.undo(effect)
                await unit.undo(journal)
                logger.debug("Rolled back block %s at height %d.", block["_id"], block["height"])

        return len(blocks)

    async def recover(self) -> int:
        """
        Discard every block whose journal is still pending, highest first, and
        recount the balances those blocks touched. Safe to run again if it is
        itself interrupted. Returns the number of blocks discarded.
        """
        async with self.atomic() as unit:
            pending = await get_effects_collection(self._db).find(
                {"committed": False},
                sort=[("height", DESCENDING)],
                **unit.session_kwargs,
            ).to_list(length=None)

            touched = set()
            for doc in pending:
                journal = RecordJournal.from_document(doc)
                logger.warning("Discarding unfinished block %s at height %d.", journal.block_id, journal.height)
                for effect in reversed(journal.effects):
                    await effect.discard(unit)
                    if isinstance(effect, AdjustBalance):
                        touched.add(effect.address)
                await journal.discard(unit)

            for address in sorted(touched):
                await self._recount_balance(address, unit)

        return len(pending)

    async def _recount_balance(self, address: str, unit: AtomicUnit):
        outputs = await get_outputs_collection(self._db).find(
            {"address": address, "spent": False}, **unit.session_kwargs
        ).to_list(length=None)
        await get_balances_collection(self._db).update_one(
            {"_id": address},
            {"$set": {"balance": sum(output["value"] for output in outputs)}},
            upsert=True,
            **unit.session_kwargs,
        )

    async def _load_journal(self, block_id: str, unit: AtomicUnit) -> RecordJournal:
        doc = await get_effects_collection(self._db).find_one({"_id": block_id}, **unit.session_kwargs)
        if doc is None:
            raise StorageFailure(f"No effect journal recorded for block {block_id}")
        return RecordJournal.from_document(doc)

    # --- Reads ---

    async def _find_output(self, tx_id: str, index: int, unit: Optional[AtomicUnit] = None) -> Optional[Dict]:
        kwargs = unit.session_kwargs if unit is not None else {}
        return await get_outputs_collection(self._db).find_one({"_id": output_key(tx_id, index)}, **kwargs)

    async def get_output(self, tx_id: str, index: int) -> Optional[Dict]:
        return await self._find_output(tx_id, index)

    async def get_output_value(self, tx_id: str, index: int) -> int:
        """Value of a stored output, spent or not. Callers that need the spent flag read ``get_output``."""
        output = await self._find_output(tx_id, index)
        if output is None:
            raise OutputNotFound(tx_id, index)
        return output["value"]

    async def get_address_balance(self, address: str) -> int:
        doc = await get_balances_collection(self._db).find_one({"_id": address})
        return int(doc["balance"]) if doc else 0

    async def get_max_height(self) -> int:
        doc = await get_blocks_collection(self._db).find_one({}, sort=[("height", DESCENDING)])
        return doc["height"] if doc else 0

    async def get_unspent_outputs(self, address: str) -> List[Dict]:
        return await get_outputs_collection(self._db).find(
            {"address": address, "spent": False},
            sort=[("transaction_id", ASCENDING), ("output_index", ASCENDING)],
        ).to_list(length=None)

    async def get_transaction(self, tx_id: str) -> Optional[Dict]:
        tx = await get_transactions_collection(self._db).find_one({"_id": tx_id})
        if tx is None:
            return None
        inputs = await get_inputs_collection(self._db).find(
            {"transaction_id": tx_id}, sort=[("position", ASCENDING)]
        ).to_list(length=None)
        outputs = await get_outputs_collection(self._db).find(
            {"transaction_id": tx_id}, sort=[("output_index", ASCENDING)]
        ).to_list(length=None)
        return {
            "id": tx["_id"],
            "block_id": tx["block_id"],
            "position": tx["position"],
            "inputs": [{"txId": i["input_tx_id"], "index": i["input_index"]} for i in inputs],
            "outputs": [output_view(o) for o in outputs],
        }

    async def get_block_by_height(self, height: int) -> Optional[Dict]:
        block = await get_blocks_collection(self._db).find_one({"height": height})
        if block is None:
            return None
        tx_docs = await get_transactions_collection(self._db).find(
            {"block_id": block["_id"]}, sort=[("position", ASCENDING)]
        ).to_list(length=None)
        transactions = [await self.get_transaction(doc["_id"]) for doc in tx_docs]
        return {"id": block["_id"], "height": block["height"], "transactions": transactions}


def output_view(doc: Dict) -> Dict:
    return {
        "txId": doc["transaction_id"],
        "index": doc["output_index"],
        "address": doc["address"],
        "value": doc["value"],
        "spent": doc["spent"],
    }
