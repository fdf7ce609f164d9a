from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List

# Largest integer a BSON int64 can hold.
MAX_INT64 = 2**63 - 1


class TransactionInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_id: str = Field(..., alias="txId")
    index: int = Field(..., ge=0, le=MAX_INT64)

class TransactionOutput(BaseModel):
    address: str
    value: int = Field(..., ge=0, le=MAX_INT64)

class Transaction(BaseModel):
    id: str
    inputs: List[TransactionInput] = []
    outputs: List[TransactionOutput] = []

    @property
    def is_coinbase(self) -> bool:
        return not self.inputs

class Block(BaseModel):
    id: str
    height: int
    transactions: List[Transaction]

# --- API Models ---
class BlockAccepted(BaseModel):
    message: str = "Block processed successfully"
    height: int

class BalanceResponse(BaseModel):
    address: str = Field(..., examples=["addr_f9a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5"])
    balance: int

class HeightResponse(BaseModel):
    height: int

class RollbackResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    current_height: int = Field(..., alias="currentHeight")

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Stable error kind, e.g. InvalidHeight.")
    message: str
    details: Dict[str, Any] = {}

# --- Explorer Models ---
class StoredOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_id: str = Field(..., alias="txId")
    index: int
    address: str
    value: int
    spent: bool

class StoredTransaction(BaseModel):
    id: str
    block_id: str
    position: int
    inputs: List[TransactionInput]
    outputs: List[StoredOutput]

class StoredBlock(BaseModel):
    id: str
    height: int
    transactions: List[StoredTransaction]
