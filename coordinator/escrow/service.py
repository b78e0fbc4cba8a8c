"""
Escrow client.

Talks to the JobEscrow contract through web3. ``release`` and ``cancel``
sign and submit a transaction, then block until the receipt is mined; they
return the transaction hash only for a successful receipt.

All public methods are blocking. Callers that run inside an event loop should
dispatch them to a worker thread.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from coordinator.config import CoordinatorConfig
from coordinator.escrow.abi import JOB_ESCROW_ABI

logger = logging.getLogger(__name__)

# Errors web3 raises for RPC, ABI and transport failures
_LEDGER_ERRORS = (Web3Exception, ValueError, OSError)


class EscrowServiceError(Exception):
    """Base exception for escrow client errors."""


class EscrowNotConfiguredError(EscrowServiceError):
    """Ledger connection settings are missing or invalid."""


class TransactionFailedError(EscrowServiceError):
    """The ledger rejected the call or the transport failed."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(TransactionFailedError):
    """Submitted, but no receipt within the confirmation timeout.

    The transaction may still be mined later.
    """


class EscrowClient(Protocol):
    """External call surface of the escrow ledger."""

    def release(self, job_id: str, provider_addr: str) -> str:
        """Pay the escrowed funds to the provider. Returns the tx reference."""
        ...

    def cancel(self, job_id: str) -> str:
        """Refund the escrowed funds to the requester. Returns the tx reference."""
        ...

    def escrow_amount(self, job_id: str) -> Decimal:
        """Funds currently held for the job, in native currency units."""
        ...

    def requester_of(self, job_id: str) -> str:
        """Address that deposited the escrow (zero address if none)."""
        ...

    def transaction_status(self, tx_hash: str) -> Optional[bool]:
        """Outcome of a submitted transaction.

        True once mined successfully, False once mined and reverted, None
        while no receipt exists.
        """
        ...


@dataclass
class TransactionResult:
    """Mined transaction summary."""

    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
        }


def job_id_to_bytes32(job_id: str) -> bytes:
    """Convert a 0x-prefixed job id to the contract's bytes32 key."""
    try:
        raw = Web3.to_bytes(hexstr=job_id)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid job id: {job_id}") from e
    if len(raw) != 32:
        raise ValueError(f"Job id must be 32 bytes, got {len(raw)}")
    return raw


class Web3EscrowClient:
    """Escrow client backed by a JSON-RPC node and a local signing key."""

    def __init__(
        self,
        rpc_url: str,
        escrow_address: str,
        signer_key: str,
        chain_id: Optional[int] = None,
        confirmation_timeout: float = 180.0,
        web3: Optional[Web3] = None,
    ):
        if not rpc_url or not escrow_address or not signer_key:
            raise EscrowNotConfiguredError(
                "rpc_url, escrow_address and signer_key are all required"
            )

        self.w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        try:
            self.account = self.w3.eth.account.from_key(signer_key)
            self.contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(escrow_address), abi=JOB_ESCROW_ABI
            )
        except (ValueError, TypeError) as e:
            raise EscrowNotConfiguredError(f"Invalid escrow configuration: {e}") from e

        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        # Serializes nonce allocation for the shared signer
        self._send_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CoordinatorConfig) -> "Web3EscrowClient":
        """Build a client from coordinator settings."""
        if not config.escrow_configured:
            raise EscrowNotConfiguredError("Escrow settings are incomplete")
        return cls(
            rpc_url=config.rpc_url,
            escrow_address=config.escrow_address,
            signer_key=config.signer_key,
            chain_id=config.chain_id,
            confirmation_timeout=config.confirmation_timeout_sec,
        )

    @property
    def signer_address(self) -> str:
        return self.account.address

    # === Transactions ===

    def _transact(self, func, description: str) -> TransactionResult:
        """Sign, submit and wait for a contract call."""
        tx_hash: Optional[str] = None
        try:
            with self._send_lock:
                params: Dict[str, Any] = {
                    "from": self.account.address,
                    "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                }
                if self.chain_id:
                    params["chainId"] = self.chain_id
                tx = func.build_transaction(params)
                signed = self.account.sign_transaction(tx)
                tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))

            logger.info(f"Escrow tx submitted | {description} | tx={tx_hash}")
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout
            )
        except TimeExhausted as e:
            raise ConfirmationTimeoutError(
                f"{description}: no receipt after {self.confirmation_timeout}s", tx_hash=tx_hash
            ) from e
        except ContractLogicError as e:
            raise TransactionFailedError(f"{description} reverted: {e}", tx_hash=tx_hash) from e
        except _LEDGER_ERRORS as e:
            if tx_hash is not None:
                # Submitted; the receipt wait failed, not the transaction
                raise ConfirmationTimeoutError(
                    f"{description}: receipt unavailable: {e}", tx_hash=tx_hash
                ) from e
            raise TransactionFailedError(f"{description} failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise TransactionFailedError(f"{description} reverted on-chain", tx_hash=tx_hash)

        return TransactionResult(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    def release(self, job_id: str, provider_addr: str) -> str:
        func = self.contract.functions.release(
            job_id_to_bytes32(job_id), Web3.to_checksum_address(provider_addr)
        )
        result = self._transact(func, f"release job={job_id} provider={provider_addr}")
        logger.info(f"Escrow released | job={job_id} | tx={result.tx_hash}")
        return result.tx_hash

    def cancel(self, job_id: str) -> str:
        func = self.contract.functions.cancel(job_id_to_bytes32(job_id))
        result = self._transact(func, f"cancel job={job_id}")
        logger.info(f"Escrow refunded | job={job_id} | tx={result.tx_hash}")
        return result.tx_hash

    # === Views ===

    def escrow_amount(self, job_id: str) -> Decimal:
        try:
            wei = self.contract.functions.escrowOf(job_id_to_bytes32(job_id)).call()
        except _LEDGER_ERRORS as e:
            raise TransactionFailedError(f"escrowOf({job_id}) failed: {e}") from e
        return Decimal(Web3.from_wei(wei, "ether"))

    def requester_of(self, job_id: str) -> str:
        try:
            return self.contract.functions.requesterOf(job_id_to_bytes32(job_id)).call()
        except _LEDGER_ERRORS as e:
            raise TransactionFailedError(f"requesterOf({job_id}) failed: {e}") from e

    def transaction_status(self, tx_hash: str) -> Optional[bool]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except _LEDGER_ERRORS as e:
            raise TransactionFailedError(f"receipt lookup for {tx_hash} failed: {e}") from e
        return receipt["status"] == 1
