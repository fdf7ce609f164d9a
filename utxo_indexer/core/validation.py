"""
Chain validation.

Every check is read-only against persisted state and raises a
``ValidationError`` subclass on the first failure. ``validate_block`` runs the
checks in a fixed order (height, block id, balances) so that a block with
several problems always reports the same one.
"""

from typing import Dict, Iterable, Set, Tuple

from utxo_indexer.core.config import settings
from utxo_indexer.core.crypto import compute_block_id
from utxo_indexer.core.errors import (
    InvalidBalance,
    InvalidBlockId,
    InvalidHeight,
    InvalidInputReference,
    InvalidRollbackTarget,
)
from utxo_indexer.core.models import Block, Transaction

MAX_ROLLBACK_DEPTH = settings.MAX_ROLLBACK_DEPTH


def validate_height(block_height: int, current_height: int):
    # Duplicates, gaps and stale blocks all fail the same way.
    if block_height != current_height + 1:
        raise InvalidHeight(expected=current_height + 1, actual=block_height)

def validate_block_id_format(block: Block):
    expected = compute_block_id(block.height, [tx.id for tx in block.transactions])
    if block.id != expected:
        raise InvalidBlockId(expected=expected, actual=block.id)

async def validate_input_output_balance(transactions: Iterable[Transaction], store):
    """
    For each transaction with inputs, the referenced output values must sum to
    exactly the transaction's output values. Coinbase transactions are exempt.

    Inputs resolve against stored outputs and against outputs created earlier in
    the same batch. An output may be consumed once: a stored output already
    marked spent, or one consumed earlier in the batch, is rejected.
    """
    created: Dict[Tuple[str, int], int] = {}
    consumed: Set[Tuple[str, int]] = set()

    for tx in transactions:
        if not tx.is_coinbase:
            input_sum = 0
            for tin in tx.inputs:
                outpoint = (tin.tx_id, tin.index)
                if outpoint in consumed:
                    raise InvalidInputReference(tin.tx_id, tin.index, "already spent")

                if outpoint in created:
                    value = created[outpoint]
                else:
                    output = await store.get_output(tin.tx_id, tin.index)
                    if output is None:
                        raise InvalidInputReference(tin.tx_id, tin.index, "not found")
                    if output["spent"]:
                        raise InvalidInputReference(tin.tx_id, tin.index, "already spent")
                    value = output["value"]

                consumed.add(outpoint)
                input_sum += value

            output_sum = sum(tout.value for tout in tx.outputs)
            if input_sum != output_sum:
                raise InvalidBalance(tx.id, input_sum, output_sum)

        for index, tout in enumerate(tx.outputs):
            created[(tx.id, index)] = tout.value

async def validate_block(block: Block, current_height: int, store):
    validate_height(block.height, current_height)
    validate_block_id_format(block)
    await validate_input_output_balance(block.transactions, store)

def validate_rollback_height(target_height, current_height: int, max_depth: int = MAX_ROLLBACK_DEPTH):
    if isinstance(target_height, bool) or not isinstance(target_height, int) or target_height < 1:
        raise InvalidRollbackTarget(target_height, current_height, "Height must be a positive integer")

    if target_height > current_height:
        raise InvalidRollbackTarget(
            target_height, current_height, "Cannot rollback to a height greater than current height"
        )

    if current_height - target_height > max_depth:
        raise InvalidRollbackTarget(
            target_height, current_height, f"Cannot rollback more than {max_depth} blocks"
        )
