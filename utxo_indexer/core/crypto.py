import hashlib
from typing import Iterable


def sha256_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

def compute_block_id(height: int, transaction_ids: Iterable[str]) -> str:
    """
    Deterministic block identity: SHA-256 over the decimal height followed by
    the ordered transaction ids, with no separators.

    (1, ["23"]) and (12, ["3"]) therefore share an id.
    """
    data = f"{height}{''.join(transaction_ids)}".encode("utf-8")
    return sha256_hash(data)
