"""Escrow subsystem.

Jobs are paid through a JobEscrow contract that holds native currency per
job id. The requester deposits off-platform; the coordinator releases the
deposit to the provider on acceptance or refunds it on cancellation.

Modules:
- service.py: EscrowClient protocol and the web3-backed implementation
- abi.py: JobEscrow contract ABI
"""

from coordinator.escrow.abi import JOB_ESCROW_ABI, ZERO_ADDRESS
from coordinator.escrow.service import (
    ConfirmationTimeoutError,
    EscrowClient,
    EscrowNotConfiguredError,
    EscrowServiceError,
    TransactionFailedError,
    TransactionResult,
    Web3EscrowClient,
    job_id_to_bytes32,
)

__all__ = [
    # ABI
    "JOB_ESCROW_ABI",
    "ZERO_ADDRESS",
    # Client
    "EscrowClient",
    "Web3EscrowClient",
    "TransactionResult",
    "job_id_to_bytes32",
    # Errors
    "EscrowServiceError",
    "EscrowNotConfiguredError",
    "TransactionFailedError",
    "ConfirmationTimeoutError",
]
