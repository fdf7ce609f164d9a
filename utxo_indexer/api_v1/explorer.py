from fastapi import APIRouter, Depends, HTTPException
from typing import List

from utxo_indexer.api_v1.dependencies import get_ledger
from utxo_indexer.core.blockchain import LedgerService
from utxo_indexer.core.ledger_store import output_view
from utxo_indexer.core.models import StoredBlock, StoredOutput, StoredTransaction

router = APIRouter(prefix="/explorer", tags=["Ledger Explorer"])

@router.get("/block/height/{height}", response_model=StoredBlock, summary="Get Block by Height")
async def get_block_by_height(height: int, ledger: LedgerService = Depends(get_ledger)):
    """
    Retrieves a committed block with its transactions, inputs and outputs.
    """
    async with ledger.reading() as store:
        block = await store.get_block_by_height(height)
    if not block:
        raise HTTPException(status_code=404, detail=f"Block with height {height} not found.")
    return block

@router.get("/transaction/{tx_id}", response_model=StoredTransaction, summary="Get Transaction by ID")
async def get_transaction_by_id(tx_id: str, ledger: LedgerService = Depends(get_ledger)):
    async with ledger.reading() as store:
        transaction = await store.get_transaction(tx_id)
    if not transaction:
        raise HTTPException(status_code=404, detail=f"Transaction with ID '{tx_id}' not found.")
    return transaction

@router.get("/output/{tx_id}/{index}", response_model=StoredOutput, summary="Get Output")
async def get_output(tx_id: str, index: int, ledger: LedgerService = Depends(get_ledger)):
    async with ledger.reading() as store:
        output = await store.get_output(tx_id, index)
    if not output:
        raise HTTPException(status_code=404, detail=f"Output {tx_id}:{index} not found.")
    return output_view(output)

@router.get("/address/{address}/unspent", response_model=List[StoredOutput], summary="List Unspent Outputs")
async def get_unspent_outputs(address: str, ledger: LedgerService = Depends(get_ledger)):
    """
    Lists the outputs to ``address`` that no committed input has consumed.
    Their values sum to the address balance.
    """
    async with ledger.reading() as store:
        outputs = await store.get_unspent_outputs(address)
    return [output_view(output) for output in outputs]
