from fastapi import Request

from utxo_indexer.core.blockchain import LedgerService


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger
