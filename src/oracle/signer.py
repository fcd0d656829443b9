"""
Remote Signing Protocol

Per-oracle keys never live in this process's configuration. A signing
service derives one key per (account id, derivation path) pair and signs
32-byte transaction hashes on request. Two services are supported:

- ``ShadeAgentSigner``: a custodial HTTP signing API (shade agent sidecar)
- ``TEESigner``: keys derived inside a dstack TEE, or from a development
  seed key when TEE is disabled
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from dstack_sdk import DstackClient
from eth_account import Account
from eth_keys import keys
from eth_utils import keccak

from .errors import DerivationError, SigningError

logger = logging.getLogger(__name__)

DEFAULT_SIGNER_TIMEOUT = 30.0
KEY_TYPE = "Ecdsa"


@dataclass(frozen=True)
class SignatureRequest:
    """A hash to sign with the key at ``derivation_path``."""
    derivation_path: str
    payload: bytes

    def __post_init__(self):
        if len(self.payload) != 32:
            raise ValueError(f"Signing payload must be a 32-byte hash, got {len(self.payload)} bytes")


@dataclass(frozen=True)
class RsvSignature:
    """Recoverable ECDSA signature as returned by the signing service."""
    r: int
    s: int
    v: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RsvSignature":
        """Parse ``{"r": hex, "s": hex, "v": int|str}`` with or without ``0x`` prefixes."""
        try:
            r = _hex_to_int(payload["r"])
            s = _hex_to_int(payload["s"])
            v_raw = payload["v"]
            v = int(v_raw, 0) if isinstance(v_raw, str) else int(v_raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise SigningError(f"Malformed signature from signer: {payload!r}") from exc
        return cls(r=r, s=s, v=v)

    @property
    def recovery_id(self) -> int:
        """Normalize 0/1, 27/28 and EIP-155 encoded ``v`` to a 0/1 recovery id."""
        if self.v in (0, 1):
            return self.v
        if self.v in (27, 28):
            return self.v - 27
        if self.v >= 35:
            return (self.v - 35) % 2
        raise SigningError(f"Unsupported signature v value: {self.v}")

    def legacy_v(self, chain_id: int) -> int:
        """EIP-155 ``v`` for a legacy transaction on ``chain_id``."""
        return self.recovery_id + 35 + 2 * chain_id


@dataclass(frozen=True)
class DerivedKey:
    address: str
    public_key: Optional[str] = None


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return int(text.rjust(64, "0"), 16)


class SignerService(ABC):
    """Contract of a remote key-derivation and signing service."""

    @abstractmethod
    async def account_id(self) -> str:
        """Service-wide account identity all oracle keys are derived under."""

    @abstractmethod
    async def derive_address(self, account_id: str, derivation_path: str) -> DerivedKey:
        """Deterministically derive the address for ``derivation_path``."""

    @abstractmethod
    async def sign(self, request: SignatureRequest) -> RsvSignature:
        """Sign ``request.payload`` with the key at ``request.derivation_path``."""

    async def close(self) -> None:
        return None


class ShadeAgentSigner(SignerService):
    """
    Client for a custodial signing API.

    Endpoints:
        GET  /api/agent/account  -> {"accountId"}
        POST /api/agent/derive   {"accountId", "path"} -> {"address", "publicKey"}
        POST /api/agent/sign     {"path", "payload", "keyType"} -> {"r", "s", "v"}
    """

    def __init__(
        self,
        base_url: str,
        account_id: Optional[str] = None,
        timeout: float = DEFAULT_SIGNER_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._account_id = account_id
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def account_id(self) -> str:
        if self._account_id:
            return self._account_id
        try:
            data = await self._request("GET", "/api/agent/account")
            self._account_id = data["accountId"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise DerivationError(f"Failed to fetch signer account id: {exc}") from exc
        return self._account_id

    async def derive_address(self, account_id: str, derivation_path: str) -> DerivedKey:
        try:
            data = await self._request(
                "POST", "/api/agent/derive", json={"accountId": account_id, "path": derivation_path}
            )
            return DerivedKey(address=data["address"], public_key=data.get("publicKey"))
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise DerivationError(f"Failed to derive address for path '{derivation_path}': {exc}") from exc

    async def sign(self, request: SignatureRequest) -> RsvSignature:
        body = {
            "path": request.derivation_path,
            "payload": "0x" + request.payload.hex(),
            "keyType": KEY_TYPE,
        }
        try:
            data = await self._request("POST", "/api/agent/sign", json=body)
        except (httpx.HTTPError, ValueError) as exc:
            raise SigningError(f"Signing request for path '{request.derivation_path}' failed: {exc}") from exc
        return RsvSignature.from_payload(data.get("signature", data))

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._client.request(method, path, json=json, timeout=self.timeout)
        response.raise_for_status()
        return response.json()


class TEESigner(SignerService):
    """
    Derives per-oracle keys with dstack's ``get_key`` and signs locally.

    With ``use_tee=False`` keys are derived as ``keccak(seed || account/path)``
    from ``seed_key``; only meant for development.
    """

    def __init__(
        self,
        account_id: str,
        use_tee: bool = True,
        tee_endpoint: Optional[str] = None,
        seed_key: Optional[str] = None,
        purpose: str = "oracle-signing",
    ):
        self._account_id = account_id
        self.use_tee = use_tee
        self.purpose = purpose
        self._accounts: Dict[Tuple[str, str], Any] = {}

        if use_tee:
            self.tee_endpoint = tee_endpoint or os.getenv("DSTACK_SIMULATOR_ENDPOINT") or "/var/run/dstack.sock"
            logger.info("🔐 Initializing TEE client at: %s", self.tee_endpoint)
            if self.tee_endpoint.startswith("http"):
                self.tee_client = DstackClient(self.tee_endpoint)
            else:
                self.tee_client = DstackClient()
        else:
            if not seed_key:
                raise ValueError("Seed key required when TEE is disabled")
            self.tee_endpoint = None
            self._seed = bytes.fromhex(seed_key[2:] if seed_key.startswith("0x") else seed_key)

    async def account_id(self) -> str:
        return self._account_id

    async def derive_address(self, account_id: str, derivation_path: str) -> DerivedKey:
        account = await self._account_for(account_id, derivation_path)
        public_key = keys.PrivateKey(bytes(account.key)).public_key.to_hex()
        return DerivedKey(address=account.address, public_key=public_key)

    async def sign(self, request: SignatureRequest) -> RsvSignature:
        account = await self._account_for(self._account_id, request.derivation_path)
        try:
            signed = account.unsafe_sign_hash(request.payload)
        except Exception as exc:
            raise SigningError(f"Signing failed for path '{request.derivation_path}': {exc}") from exc
        return RsvSignature(r=signed.r, s=signed.s, v=signed.v)

    async def _account_for(self, account_id: str, derivation_path: str):
        cache_key = (account_id, derivation_path)
        if cache_key not in self._accounts:
            try:
                key_hex = await asyncio.to_thread(self._derive_key, account_id, derivation_path)
            except Exception as exc:
                raise DerivationError(f"Failed to derive key for path '{derivation_path}': {exc}") from exc
            self._accounts[cache_key] = Account.from_key(key_hex)
        return self._accounts[cache_key]

    def _derive_key(self, account_id: str, derivation_path: str) -> str:
        if not self.use_tee:
            return "0x" + keccak(self._seed + f"{account_id}/{derivation_path}".encode("utf-8")).hex()

        key_result = self.tee_client.get_key(f"wallet/{account_id}/{derivation_path}", self.purpose)
        private_key_bytes = key_result.decode_key()
        if isinstance(private_key_bytes, bytes):
            return "0x" + private_key_bytes.hex()
        return private_key_bytes if private_key_bytes.startswith("0x") else "0x" + private_key_bytes
