from typing import Any, Dict


class LedgerError(Exception):
    """Base class for every error the ledger reports to its callers."""

    code = "LedgerError"

    def details(self) -> Dict[str, Any]:
        return {}


class ValidationError(LedgerError):
    """Caller input error, detected before any mutation starts."""

    code = "ValidationError"


class InvalidHeight(ValidationError):
    code = "InvalidHeight"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected height {expected}, got {actual}")

    def details(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual}


class InvalidBlockId(ValidationError):
    code = "InvalidBlockId"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__("Block ID does not match the expected hash")

    def details(self) -> Dict[str, Any]:
        return {"expected": self.expected, "actual": self.actual}


class InvalidInputReference(ValidationError):
    code = "InvalidInputReference"

    def __init__(self, tx_id: str, index: int, reason: str = "not found"):
        self.tx_id = tx_id
        self.index = index
        self.reason = reason
        super().__init__(f"Input {tx_id}:{index} {reason}")

    def details(self) -> Dict[str, Any]:
        return {"txId": self.tx_id, "index": self.index, "reason": self.reason}


class InvalidBalance(ValidationError):
    code = "InvalidBalance"

    def __init__(self, tx_id: str, input_sum: int, output_sum: int):
        self.tx_id = tx_id
        self.input_sum = input_sum
        self.output_sum = output_sum
        super().__init__(
            f"Sum of inputs ({input_sum}) does not equal sum of outputs ({output_sum}) in transaction {tx_id}"
        )

    def details(self) -> Dict[str, Any]:
        return {"txId": self.tx_id, "inputSum": self.input_sum, "outputSum": self.output_sum}


class InvalidRollbackTarget(ValidationError):
    code = "InvalidRollbackTarget"

    def __init__(self, target: Any, current: int, reason: str):
        self.target = target
        self.current = current
        self.reason = reason
        super().__init__(reason)

    def details(self) -> Dict[str, Any]:
        return {"target": self.target, "current": self.current}


class StorageFailure(LedgerError):
    """An atomic unit could not commit; nothing it did was kept."""

    code = "StorageFailure"


class OutputNotFound(LedgerError, LookupError):
    code = "NotFound"

    def __init__(self, tx_id: str, index: int):
        self.tx_id = tx_id
        self.index = index
        super().__init__(f"Output not found: {tx_id}:{index}")
