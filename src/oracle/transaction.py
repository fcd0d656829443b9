"""
Legacy Transaction Builder

Builds a pre-EIP-1559 transaction, has its signing hash signed by a remote
signer and broadcasts the reassembled raw transaction. Legacy typing is used
because several EVM chains do not accept type-2 transactions.

One builder instance handles exactly one attempt:

    UNBUILT -> GAS_ESTIMATED -> HASH_COMPUTED -> SIGNED -> BROADCAST -> CONFIRMED
                                    (any step) -> FAILED
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import rlp
from eth_keys import keys
from eth_utils import keccak, to_bytes, to_checksum_address

from .chain import OracleChainClient
from .errors import (
    BroadcastError,
    NonceConflictError,
    OracleError,
    PendingTransactionError,
    SigningError,
)
from .signer import RsvSignature, SignatureRequest, SignerService

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 200000
GAS_MARGIN_PERCENT = 20

NONCE_CONFLICT_MARKERS = ("nonce too low", "already known", "nonce has already been used", "known transaction")
PENDING_MARKERS = ("replacement transaction underpriced", "already pending", "already imported")


class TxState(Enum):
    UNBUILT = "unbuilt"
    GAS_ESTIMATED = "gas_estimated"
    HASH_COMPUTED = "hash_computed"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class LegacyTransaction:
    """Unsigned legacy transaction fields, EIP-155 replay protected."""
    to: str
    data: bytes
    value: int
    gas: int
    gas_price: int
    nonce: int
    chain_id: int

    def _base_fields(self) -> List[Any]:
        return [self.nonce, self.gas_price, self.gas, to_bytes(hexstr=self.to), self.value, self.data]

    def signing_payload(self) -> bytes:
        return rlp.encode(self._base_fields() + [self.chain_id, 0, 0])

    def signing_hash(self) -> bytes:
        return keccak(self.signing_payload())

    def encode_signed(self, signature: RsvSignature) -> bytes:
        return rlp.encode(self._base_fields() + [signature.legacy_v(self.chain_id), signature.r, signature.s])


@dataclass
class BroadcastResult:
    tx_hash: str
    block_number: Optional[int] = None


def with_gas_margin(estimate: int) -> int:
    return (estimate * (100 + GAS_MARGIN_PERCENT) + 99) // 100


def recover_signer(message_hash: bytes, signature: RsvSignature) -> str:
    sig = keys.Signature(vrs=(signature.recovery_id, signature.r, signature.s))
    return sig.recover_public_key_from_msg_hash(message_hash).to_checksum_address()


def classify_broadcast_error(exc: Exception, oracle_id: Optional[str] = None) -> OracleError:
    """Map a node rejection to a nonce conflict, a pending transaction or a plain broadcast failure."""
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in PENDING_MARKERS):
        return PendingTransactionError(
            f"Transaction already pending for this oracle wallet - will retry later ({message})", oracle_id
        )
    if any(marker in lowered for marker in NONCE_CONFLICT_MARKERS):
        return NonceConflictError(
            f"Nonce error - transaction may have been processed already ({message})", oracle_id
        )
    return BroadcastError(f"Failed to broadcast transaction: {message}", oracle_id)


class LegacyTransactionBuilder:
    """Drives one sign-and-broadcast attempt through the remote signer."""

    def __init__(
        self,
        chain: OracleChainClient,
        signer: SignerService,
        sender: str,
        derivation_path: str,
        to: str,
        data: bytes,
        value: int = 0,
        gas: Optional[int] = None,
        signer_timeout: float = 30.0,
        receipt_timeout: float = 30.0,
        oracle_id: Optional[str] = None,
    ):
        self.chain = chain
        self.signer = signer
        self.sender = to_checksum_address(sender)
        self.derivation_path = derivation_path
        self.to = to_checksum_address(to)
        self.data = data if isinstance(data, bytes) else to_bytes(hexstr=data)
        self.value = value
        self.gas = gas
        self.signer_timeout = signer_timeout
        self.receipt_timeout = receipt_timeout
        self.oracle_id = oracle_id

        self.state = TxState.UNBUILT
        self.transaction: Optional[LegacyTransaction] = None
        self.signing_hash: Optional[bytes] = None
        self.signature: Optional[RsvSignature] = None
        self.raw_transaction: Optional[bytes] = None
        self.result: Optional[BroadcastResult] = None

    async def sign_and_send(self) -> BroadcastResult:
        """Run every step; any failure leaves the builder in ``FAILED``."""
        try:
            await self.attach_gas_and_nonce()
            self.compute_hash()
            await self.request_signature()
            self.assemble()
            return await self.broadcast()
        except (Exception, asyncio.CancelledError):
            self.state = TxState.FAILED
            raise

    async def attach_gas_and_nonce(self) -> LegacyTransaction:
        self._require(TxState.UNBUILT)
        gas_price = await asyncio.to_thread(self.chain.gas_price)
        nonce = await asyncio.to_thread(self.chain.transaction_count, self.sender)
        chain_id = await asyncio.to_thread(self.chain.chain_id)
        gas = self.gas if self.gas is not None else await self._estimate_gas()

        self.transaction = LegacyTransaction(
            to=self.to,
            data=self.data,
            value=self.value,
            gas=gas,
            gas_price=gas_price,
            nonce=nonce,
            chain_id=chain_id,
        )
        self.state = TxState.GAS_ESTIMATED
        logger.debug("Prepared legacy tx for %s: nonce=%d gas=%d gasPrice=%d chainId=%d",
                     self.sender, nonce, gas, gas_price, chain_id)
        return self.transaction

    def compute_hash(self) -> bytes:
        self._require(TxState.GAS_ESTIMATED)
        self.signing_hash = self.transaction.signing_hash()
        self.state = TxState.HASH_COMPUTED
        return self.signing_hash

    async def request_signature(self) -> RsvSignature:
        self._require(TxState.HASH_COMPUTED)
        request = SignatureRequest(derivation_path=self.derivation_path, payload=self.signing_hash)
        try:
            signature = await asyncio.wait_for(self.signer.sign(request), timeout=self.signer_timeout)
        except asyncio.TimeoutError:
            raise SigningError(
                f"Signer did not respond within {self.signer_timeout}s for path '{self.derivation_path}'",
                self.oracle_id,
            )
        except OracleError:
            raise
        except Exception as exc:
            raise SigningError(f"Signing failed: {exc}", self.oracle_id) from exc

        try:
            recovered = recover_signer(self.signing_hash, signature)
        except Exception as exc:
            raise SigningError(f"Signer returned an invalid signature: {exc}", self.oracle_id) from exc
        if recovered != self.sender:
            raise SigningError(
                f"Signature recovers to {recovered}, expected sender {self.sender}", self.oracle_id
            )

        self.signature = signature
        self.state = TxState.SIGNED
        return signature

    def assemble(self) -> bytes:
        self._require(TxState.SIGNED)
        if self.raw_transaction is None:
            self.raw_transaction = self.transaction.encode_signed(self.signature)
        return self.raw_transaction

    async def broadcast(self) -> BroadcastResult:
        self._require(TxState.SIGNED)
        raw = self.assemble()
        try:
            tx_hash = await asyncio.to_thread(self.chain.send_raw_transaction, raw)
        except Exception as exc:
            raise classify_broadcast_error(exc, self.oracle_id) from exc

        self.state = TxState.BROADCAST
        logger.info("📤 Broadcast %s from %s", tx_hash, self.sender)

        block_number = await self._await_receipt(tx_hash)
        self.result = BroadcastResult(tx_hash=tx_hash, block_number=block_number)
        self.state = TxState.CONFIRMED
        return self.result

    async def _await_receipt(self, tx_hash: str) -> Optional[int]:
        try:
            receipt: Optional[Dict[str, Any]] = await asyncio.to_thread(
                self.chain.wait_for_receipt, tx_hash, self.receipt_timeout
            )
        except Exception as exc:
            logger.warning("Could not fetch receipt for %s: %s", tx_hash, exc)
            return None
        if receipt is None:
            return None
        if receipt.get("status") == 0:
            raise BroadcastError(f"Transaction {tx_hash} reverted", self.oracle_id)
        block_number = receipt.get("blockNumber")
        return int(block_number) if block_number is not None else None

    async def _estimate_gas(self) -> int:
        tx = {
            "from": self.sender,
            "to": self.to,
            "data": "0x" + self.data.hex(),
            "value": self.value,
        }
        try:
            estimate = await asyncio.to_thread(self.chain.estimate_gas, tx)
        except Exception as exc:
            logger.warning("Gas estimation failed (%s), using default limit %d", exc, DEFAULT_GAS_LIMIT)
            return DEFAULT_GAS_LIMIT
        return with_gas_margin(estimate)

    def _require(self, expected: TxState) -> None:
        if self.state is not expected:
            raise RuntimeError(f"Transaction builder is in state {self.state.value}, expected {expected.value}")
