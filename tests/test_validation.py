"""
Unit tests for chain validation.

Coverage targets:
- Height sequencing and block id hashing
- Input/output balance equation, dangling and double-spent references
- Fixed check order in validate_block
- Rollback target bounds
"""

import hashlib

import pytest

from factories import coinbase, make_block, make_tx
from utxo_indexer.core.crypto import compute_block_id
from utxo_indexer.core.errors import (
    InvalidBalance,
    InvalidBlockId,
    InvalidHeight,
    InvalidInputReference,
    InvalidRollbackTarget,
)
from utxo_indexer.core.validation import (
    validate_block,
    validate_block_id_format,
    validate_height,
    validate_input_output_balance,
    validate_rollback_height,
)


# ==================== BLOCK ID ====================

def test_block_id_is_sha256_of_height_and_joined_ids():
    expected = hashlib.sha256(b"7tx-atx-b").hexdigest()
    assert compute_block_id(7, ["tx-a", "tx-b"]) == expected


def test_block_id_without_transactions_hashes_height_only():
    assert compute_block_id(3, []) == hashlib.sha256(b"3").hexdigest()


def test_block_id_encoding_is_not_injective():
    # Kept for compatibility with existing block producers.
    assert compute_block_id(1, ["23"]) == compute_block_id(12, ["3"])


def test_validate_block_id_format():
    block = make_block(1, [coinbase("cb1", "A", 100)])
    validate_block_id_format(block)

    tampered = make_block(1, [coinbase("cb1", "A", 100)], block_id="f" * 64)
    with pytest.raises(InvalidBlockId) as exc_info:
        validate_block_id_format(tampered)
    assert exc_info.value.expected == block.id
    assert exc_info.value.actual == "f" * 64


def test_block_id_depends_on_transaction_order():
    first = make_block(1, [coinbase("a", "A", 1), coinbase("b", "B", 1)])
    swapped = make_block(1, [coinbase("b", "B", 1), coinbase("a", "A", 1)], block_id=first.id)
    with pytest.raises(InvalidBlockId):
        validate_block_id_format(swapped)


# ==================== HEIGHT ====================

def test_validate_height_accepts_next():
    validate_height(1, 0)
    validate_height(42, 41)


@pytest.mark.parametrize("block_height", [5, 7, 4, 0])
def test_validate_height_rejects_duplicate_stale_and_skipped(block_height):
    with pytest.raises(InvalidHeight) as exc_info:
        validate_height(block_height, 5)
    assert exc_info.value.expected == 6
    assert exc_info.value.actual == block_height
    assert exc_info.value.details() == {"expected": 6, "actual": block_height}


# ==================== BALANCE ====================

@pytest.mark.asyncio
async def test_balance_rejects_missing_value(store):
    await store.apply_block(make_block(1, [coinbase("cb1", "A", 10)]))

    with pytest.raises(InvalidBalance) as exc_info:
        await validate_input_output_balance(
            [make_tx("t2", inputs=[("cb1", 0)], outputs=[("B", 9)])], store
        )
    assert exc_info.value.input_sum == 10
    assert exc_info.value.output_sum == 9
    assert exc_info.value.tx_id == "t2"


@pytest.mark.asyncio
async def test_balance_accepts_exact_sum(store):
    await store.apply_block(make_block(1, [coinbase("cb1", "A", 10)]))

    await validate_input_output_balance(
        [make_tx("t2", inputs=[("cb1", 0)], outputs=[("B", 4), ("C", 6)])], store
    )


@pytest.mark.asyncio
async def test_balance_rejects_outputs_exceeding_inputs(store):
    await store.apply_block(make_block(1, [coinbase("cb1", "A", 10)]))

    with pytest.raises(InvalidBalance):
        await validate_input_output_balance(
            [make_tx("t2", inputs=[("cb1", 0)], outputs=[("B", 11)])], store
        )


@pytest.mark.asyncio
async def test_coinbase_is_exempt(store):
    await validate_input_output_balance([coinbase("cb1", "A", 10**18)], store)


@pytest.mark.asyncio
async def test_dangling_input_is_an_invalid_reference(store):
    with pytest.raises(InvalidInputReference) as exc_info:
        await validate_input_output_balance(
            [make_tx("t1", inputs=[("nope", 3)], outputs=[])], store
        )
    assert exc_info.value.details() == {"txId": "nope", "index": 3, "reason": "not found"}


@pytest.mark.asyncio
async def test_zero_value_output_is_found(store):
    await store.apply_block(make_block(1, [make_tx("cb1", outputs=[("A", 0)])]))

    await validate_input_output_balance(
        [make_tx("t2", inputs=[("cb1", 0)], outputs=[("B", 0)])], store
    )


@pytest.mark.asyncio
async def test_spent_output_cannot_be_spent_again(store):
    await store.apply_block(make_block(1, [coinbase("cb1", "A", 10)]))
    await store.apply_block(make_block(2, [make_tx("t2", inputs=[("cb1", 0)], outputs=[("B", 10)])]))

    with pytest.raises(InvalidInputReference) as exc_info:
        await validate_input_output_balance(
            [make_tx("t3", inputs=[("cb1", 0)], outputs=[("C", 10)])], store
        )
    assert exc_info.value.reason == "already spent"


@pytest.mark.asyncio
async def test_outputs_created_earlier_in_batch_are_spendable(store):
    await validate_input_output_balance(
        [
            coinbase("cb1", "A", 10),
            make_tx("t1", inputs=[("cb1", 0)], outputs=[("B", 3), ("C", 7)]),
            make_tx("t2", inputs=[("t1", 1)], outputs=[("D", 7)]),
        ],
        store,
    )


@pytest.mark.asyncio
async def test_output_consumed_twice_in_batch_is_rejected(store):
    await store.apply_block(make_block(1, [coinbase("cb1", "A", 10)]))

    with pytest.raises(InvalidInputReference) as exc_info:
        await validate_input_output_balance(
            [
                make_tx("t1", inputs=[("cb1", 0)], outputs=[("B", 10)]),
                make_tx("t2", inputs=[("cb1", 0)], outputs=[("C", 10)]),
            ],
            store,
        )
    assert exc_info.value.tx_id == "cb1"
    assert exc_info.value.reason == "already spent"


@pytest.mark.asyncio
async def test_later_transaction_cannot_be_spent_early(store):
    with pytest.raises(InvalidInputReference):
        await validate_input_output_balance(
            [
                make_tx("t1", inputs=[("cb1", 0)], outputs=[("B", 10)]),
                coinbase("cb1", "A", 10),
            ],
            store,
        )


# ==================== CHECK ORDER ====================

@pytest.mark.asyncio
async def test_height_is_checked_before_block_id(store):
    block = make_block(3, [make_tx("t1", inputs=[("nope", 0)], outputs=[])], block_id="bad")
    with pytest.raises(InvalidHeight):
        await validate_block(block, 0, store)


@pytest.mark.asyncio
async def test_block_id_is_checked_before_balance(store):
    block = make_block(1, [make_tx("t1", inputs=[("nope", 0)], outputs=[])], block_id="bad")
    with pytest.raises(InvalidBlockId):
        await validate_block(block, 0, store)


@pytest.mark.asyncio
async def test_validate_block_reports_balance_last(store):
    block = make_block(1, [make_tx("t1", inputs=[("nope", 0)], outputs=[])])
    with pytest.raises(InvalidInputReference):
        await validate_block(block, 0, store)


# ==================== ROLLBACK TARGET ====================

def test_rollback_depth_guard():
    with pytest.raises(InvalidRollbackTarget) as exc_info:
        validate_rollback_height(400, 2500)
    assert "2000" in str(exc_info.value)

    validate_rollback_height(501, 2500)
    validate_rollback_height(500, 2500)


@pytest.mark.parametrize("target", [0, -3, "5", None, 2.0, True])
def test_rollback_target_must_be_positive_integer(target):
    with pytest.raises(InvalidRollbackTarget) as exc_info:
        validate_rollback_height(target, 10)
    assert exc_info.value.reason == "Height must be a positive integer"


def test_rollback_target_above_current_is_rejected():
    with pytest.raises(InvalidRollbackTarget) as exc_info:
        validate_rollback_height(11, 10)
    assert exc_info.value.details() == {"target": 11, "current": 10}


def test_rollback_to_current_height_is_allowed():
    validate_rollback_height(10, 10)


def test_rollback_depth_is_configurable():
    with pytest.raises(InvalidRollbackTarget):
        validate_rollback_height(6, 10, max_depth=3)
    validate_rollback_height(7, 10, max_depth=3)
