import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from utxo_indexer.api_v1 import explorer as explorer_v1
from utxo_indexer.api_v1.dependencies import get_ledger
from utxo_indexer.core.blockchain import LedgerService
from utxo_indexer.core.config import settings
from utxo_indexer.core.database import close_mongo_connection, connect_to_mongo
from utxo_indexer.core.errors import InvalidRollbackTarget, StorageFailure, ValidationError
from utxo_indexer.core.ledger_store import LedgerStore
from utxo_indexer.core.models import (
    BalanceResponse,
    Block,
    BlockAccepted,
    ErrorResponse,
    HeightResponse,
    RollbackResponse,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}


def create_app(service: Optional[LedgerService] = None) -> FastAPI:
    """
    Build the API. Without an injected service the lifespan connects to
    MongoDB using ``settings`` and owns that connection.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_connection = service is None
        ledger = service
        if owns_connection:
            db = await connect_to_mongo()
            ledger = LedgerService(LedgerStore(db, use_transactions=settings.MONGO_TRANSACTIONS))
        await ledger.initialize()
        app.state.ledger = ledger
        logger.info("UTXO indexer started at height %d.", ledger.get_current_height())

        yield

        if owns_connection:
            await close_mongo_connection()
        logger.info("UTXO indexer stopped.")

    app = FastAPI(title="UTXO Indexer API", lifespan=lifespan)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": exc.code, "message": str(exc), "details": exc.details()},
        )

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"error": exc.code, "message": str(exc), "details": exc.details()},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "Internal server error", "details": {}},
        )

    app.include_router(explorer_v1.router, prefix="/api/v1")

    # --- Core Ledger Endpoints ---

    @app.post("/blocks", response_model=BlockAccepted, responses=ERROR_RESPONSES, summary="Submit the Next Block")
    async def submit_block(block: Block, ledger: LedgerService = Depends(get_ledger)):
        """
        Validates the block against the current height, its id and the input /
        output balance of every transaction, then applies it atomically.
        """
        height = await ledger.submit_block(block)
        return BlockAccepted(height=height)

    @app.get("/balance/{address}", response_model=BalanceResponse, summary="Get Address Balance")
    async def get_balance(address: str, ledger: LedgerService = Depends(get_ledger)):
        return BalanceResponse(address=address, balance=await ledger.get_balance(address))

    @app.post("/rollback", response_model=RollbackResponse, responses=ERROR_RESPONSES, summary="Roll Back the Chain")
    async def rollback(height: Optional[str] = None, ledger: LedgerService = Depends(get_ledger)):
        """
        Undoes every block above ``height``, newest first. The target must be a
        positive integer no greater than the current height and at most
        ``MAX_ROLLBACK_DEPTH`` blocks behind it.
        """
        try:
            target = int(height)
        except (TypeError, ValueError):
            raise InvalidRollbackTarget(height, ledger.get_current_height(), "Height must be a positive integer") from None

        await ledger.rollback(target)
        return RollbackResponse(
            message=f"Successfully rolled back to height {target}",
            current_height=target,
        )

    @app.get("/height", response_model=HeightResponse, summary="Get Current Height")
    async def get_height(ledger: LedgerService = Depends(get_ledger)):
        return HeightResponse(height=ledger.get_current_height())

    @app.get("/")
    def root():
        return {"message": "UTXO indexer"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting UTXO indexer on %s:%d", settings.HOST, settings.PORT)

    uvicorn.run(
        "utxo_indexer.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
