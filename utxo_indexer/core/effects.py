"""
Reversible ledger effects.

Applying a block is recorded as an ordered list of effects; rolling it back
replays that list in exact reverse. Apply and rollback therefore share one
definition of every state change and cannot drift apart.

Effects are executed through an atomic unit (see ``ledger_store.AtomicUnit``),
which provides the database handle and, when transactions are enabled, the
client session every statement must run in.

The journal of a block is written before any of its effects and flagged as
committed after the last one. A journal that is still pending at startup
belongs to a unit that never finished; ``discard`` removes whatever part of
each effect reached the database, and tolerates the parts that did not.
"""

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from utxo_indexer.core.database import (
    get_balances_collection,
    get_blocks_collection,
    get_effects_collection,
    get_inputs_collection,
    get_outputs_collection,
    get_transactions_collection,
)
from utxo_indexer.core.errors import InvalidInputReference, StorageFailure


def output_key(tx_id: str, index: int) -> str:
    return f"{tx_id}:{index}"

def input_key(tx_id: str, position: int) -> str:
    return f"{tx_id}#{position}"

async def _delete_one(collection, query, unit, what: str):
    result = await collection.delete_one(query, **unit.session_kwargs)
    if result.deleted_count != 1:
        raise StorageFailure(f"Journal out of sync with stored state: {what} not found")


class Effect(BaseModel):
    model_config = ConfigDict(frozen=True)

    async def apply(self, unit) -> None:
        raise NotImplementedError

    async def revert(self, unit) -> None:
        raise NotImplementedError

    async def discard(self, unit) -> None:
        raise NotImplementedError


class CreateBlock(Effect):
    op: Literal["create_block"] = "create_block"
    block_id: str
    height: int

    async def apply(self, unit) -> None:
        await get_blocks_collection(unit.db).insert_one(
            {"_id": self.block_id, "height": self.height}, **unit.session_kwargs
        )

    async def revert(self, unit) -> None:
        await _delete_one(get_blocks_collection(unit.db), {"_id": self.block_id}, unit, f"block {self.block_id}")

    async def discard(self, unit) -> None:
        await get_blocks_collection(unit.db).delete_one(
            {"_id": self.block_id, "height": self.height}, **unit.session_kwargs
        )


class CreateTransaction(Effect):
    op: Literal["create_transaction"] = "create_transaction"
    tx_id: str
    block_id: str
    position: int

    async def apply(self, unit) -> None:
        await get_transactions_collection(unit.db).insert_one(
            {"_id": self.tx_id, "block_id": self.block_id, "position": self.position},
            **unit.session_kwargs,
        )

    async def revert(self, unit) -> None:
        await _delete_one(get_transactions_collection(unit.db), {"_id": self.tx_id}, unit, f"transaction {self.tx_id}")

    async def discard(self, unit) -> None:
        await get_transactions_collection(unit.db).delete_one(
            {"_id": self.tx_id, "block_id": self.block_id}, **unit.session_kwargs
        )


class CreateInput(Effect):
    op: Literal["create_input"] = "create_input"
    tx_id: str
    position: int
    ref_tx_id: str
    ref_index: int

    async def apply(self, unit) -> None:
        await get_inputs_collection(unit.db).insert_one(
            {
                "_id": input_key(self.tx_id, self.position),
                "transaction_id": self.tx_id,
                "position": self.position,
                "input_tx_id": self.ref_tx_id,
                "input_index": self.ref_index,
            },
            **unit.session_kwargs,
        )

    async def revert(self, unit) -> None:
        key = input_key(self.tx_id, self.position)
        await _delete_one(get_inputs_collection(unit.db), {"_id": key}, unit, f"input {key}")

    async def discard(self, unit) -> None:
        await get_inputs_collection(unit.db).delete_one(
            {"_id": input_key(self.tx_id, self.position)}, **unit.session_kwargs
        )


class SpendOutput(Effect):
    """Flips the spent flag of an existing output; never flips it twice."""

    op: Literal["spend_output"] = "spend_output"
    tx_id: str
    index: int
    address: str
    value: int
    spent_by: str

    async def apply(self, unit) -> None:
        result = await get_outputs_collection(unit.db).update_one(
            {"_id": output_key(self.tx_id, self.index), "spent": False},
            {"$set": {"spent": True, "spent_by": self.spent_by}},
            **unit.session_kwargs,
        )
        if result.matched_count != 1:
            raise InvalidInputReference(self.tx_id, self.index, "already spent")

    async def revert(self, unit) -> None:
        result = await self._release({"spent": True}, unit)
        if result.matched_count != 1:
            raise StorageFailure(
                f"Journal out of sync with stored state: spent output {output_key(self.tx_id, self.index)} not found"
            )

    async def discard(self, unit) -> None:
        await self._release({"spent_by": self.spent_by}, unit)

    async def _release(self, guard, unit):
        return await get_outputs_collection(unit.db).update_one(
            {"_id": output_key(self.tx_id, self.index), **guard},
            {"$set": {"spent": False}, "$unset": {"spent_by": ""}},
            **unit.session_kwargs,
        )


class AdjustBalance(Effect):
    op: Literal["adjust_balance"] = "adjust_balance"
    address: str
    delta: int

    async def apply(self, unit) -> None:
        await get_balances_collection(unit.db).update_one(
            {"_id": self.address}, {"$inc": {"balance": self.delta}}, upsert=True, **unit.session_kwargs
        )

    async def revert(self, unit) -> None:
        await get_balances_collection(unit.db).update_one(
            {"_id": self.address}, {"$inc": {"balance": -self.delta}}, upsert=True, **unit.session_kwargs
        )

    async def discard(self, unit) -> None:
        # An increment leaves no trace of whether it ran; the store recounts
        # the address from its unspent outputs instead.
        pass


class CreateOutput(Effect):
    op: Literal["create_output"] = "create_output"
    tx_id: str
    index: int
    address: str
    value: int

    async def apply(self, unit) -> None:
        await get_outputs_collection(unit.db).insert_one(
            {
                "_id": output_key(self.tx_id, self.index),
                "transaction_id": self.tx_id,
                "output_index": self.index,
                "address": self.address,
                "value": self.value,
                "spent": False,
            },
            **unit.session_kwargs,
        )

    async def revert(self, unit) -> None:
        # Only an unspent output may disappear; its spender must be undone first.
        key = output_key(self.tx_id, self.index)
        await _delete_one(get_outputs_collection(unit.db), {"_id": key, "spent": False}, unit, f"unspent output {key}")

    async def discard(self, unit) -> None:
        await get_outputs_collection(unit.db).delete_one(
            {"_id": output_key(self.tx_id, self.index), "transaction_id": self.tx_id}, **unit.session_kwargs
        )


BlockEffect = Annotated[
    Union[CreateBlock, CreateTransaction, CreateInput, SpendOutput, AdjustBalance, CreateOutput],
    Field(discriminator="op"),
]


class RecordJournal(Effect):
    """Persists the effects of one block, still pending, so rollback can replay them backwards."""

    op: Literal["record_journal"] = "record_journal"
    block_id: str
    height: int
    effects: List[BlockEffect]

    @classmethod
    def from_document(cls, doc) -> "RecordJournal":
        return cls(block_id=doc["_id"], height=doc["height"], effects=doc["effects"])

    async def apply(self, unit) -> None:
        await get_effects_collection(unit.db).insert_one(
            {
                "_id": self.block_id,
                "height": self.height,
                "effects": [effect.model_dump() for effect in self.effects],
                "committed": False,
            },
            **unit.session_kwargs,
        )

    async def revert(self, unit) -> None:
        await _delete_one(get_effects_collection(unit.db), {"_id": self.block_id}, unit, f"journal of {self.block_id}")

    async def discard(self, unit) -> None:
        await get_effects_collection(unit.db).delete_one(
            {"_id": self.block_id, "committed": False}, **unit.session_kwargs
        )


class CommitJournals(Effect):
    """
    Flags every journal above ``above`` as committed. Applying it ends a block.
    Reverting it starts a rollback, and the journals it leaves pending are
    discarded on the next start if the rollback is cut short.
    """

    op: Literal["commit_journals"] = "commit_journals"
    above: int

    async def apply(self, unit) -> None:
        await self._flag(True, unit)

    async def revert(self, unit) -> None:
        await self._flag(False, unit)

    async def _flag(self, committed: bool, unit):
        await get_effects_collection(unit.db).update_many(
            {"height": {"$gt": self.above}}, {"$set": {"committed": committed}}, **unit.session_kwargs
        )
