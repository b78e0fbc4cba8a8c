"""Job identifier derivation.

Job ids double as the escrow contract key (``bytes32 jobId``), so they are
derived exactly as the contract tooling does it:

    keccak256(abi.encodePacked(address requester, string nonce))

where ``nonce`` is the submission wall-clock time in milliseconds.
"""

import threading
import time
from typing import Optional

from web3 import Web3

_nonce_lock = threading.Lock()
_last_nonce = 0


def current_nonce() -> str:
    """Millisecond wall-clock time as a decimal string.

    Strictly increasing within a process, so two submissions in the same
    millisecond never derive the same id.
    """
    global _last_nonce
    with _nonce_lock:
        nonce = max(time.time_ns() // 1_000_000, _last_nonce + 1)
        _last_nonce = nonce
    return str(nonce)


def generate_job_id(requester_addr: str, nonce: Optional[str] = None) -> str:
    """Derive a job id for a requester.

    Args:
        requester_addr: 20-byte hex address (any letter case)
        nonce: Freshness nonce; defaults to the current time in milliseconds

    Returns:
        0x-prefixed hex of the 32-byte digest

    Raises:
        ValueError: If the address is not a valid 20-byte hex address
    """
    if nonce is None:
        nonce = current_nonce()
    # Packed encoding requires a checksummed address
    checksummed = Web3.to_checksum_address(requester_addr)
    digest = Web3.solidity_keccak(["address", "string"], [checksummed, nonce])
    return Web3.to_hex(digest)
