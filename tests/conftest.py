import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from eth_account import Account
from eth_keys import keys
from eth_utils import keccak
from web3 import Web3

from src.oracle.chain import DEFAULT_ORACLE_CONTRACT, OracleChainClient
from src.oracle.errors import OracleNotDeployedError
from src.oracle.executor import OracleUpdateExecutor
from src.oracle.inflight import UpdateTracker
from src.oracle.models import OnChainOracle
from src.oracle.signer import DerivedKey, RsvSignature, SignatureRequest, SignerService
from src.oracle.wallet import WalletDeriver
from src.utils.state import OracleConfigStore

FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
THETA_TESTNET_CHAIN_ID = 365


class FakeChain(OracleChainClient):
    """Oracle chain client with every network call replaced by in-memory state."""

    def __init__(self):
        super().__init__(Web3(Web3.HTTPProvider("http://127.0.0.1:8545")), DEFAULT_ORACLE_CONTRACT)
        self.oracles: Dict[str, OnChainOracle] = {}
        self.balances: Dict[str, int] = {}
        self.nonces: Dict[str, int] = {}
        self.gas_price_value = 4_000_000_000_000
        self.chain_id_value = THETA_TESTNET_CHAIN_ID
        self.gas_estimate: Optional[int] = 50_000
        self.send_error: Optional[Exception] = None
        self.receipt: Optional[Dict[str, Any]] = {"status": 1, "blockNumber": 1234}
        self.sent: List[bytes] = []
        self.exists_error: Optional[Exception] = None

    def add_oracle(self, oracle_id: str, value: int, creator: str) -> OnChainOracle:
        oracle = OnChainOracle(
            oracle_id=oracle_id,
            value=value,
            last_update_block=100,
            creator=creator,
            has_error=False,
            description=f"{oracle_id} feed",
        )
        self.oracles[oracle_id] = oracle
        return oracle

    def get_oracle(self, oracle_id: str) -> OnChainOracle:
        if oracle_id not in self.oracles:
            raise OracleNotDeployedError(oracle_id)
        return self.oracles[oracle_id]

    def oracle_exists(self, oracle_id: str) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        return oracle_id in self.oracles

    def gas_price(self) -> int:
        return self.gas_price_value

    def transaction_count(self, address: str) -> int:
        return self.nonces.get(Web3.to_checksum_address(address), 0)

    def chain_id(self) -> int:
        return self.chain_id_value

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        if self.gas_estimate is None:
            raise ValueError("execution reverted")
        return self.gas_estimate

    def get_balance(self, address: str) -> int:
        return self.balances.get(Web3.to_checksum_address(address), 10**18)

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw_transaction)
        return Web3.to_hex(keccak(raw_transaction))

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Dict[str, Any]]:
        return self.receipt


class FakeSigner(SignerService):
    """Signing service backed by deterministic local keys, one per derivation path."""

    def __init__(self, account_id: str = "oracle-agent.testnet"):
        self._account_id = account_id
        self.account_calls = 0
        self.derive_calls: List[str] = []
        self.sign_calls: List[SignatureRequest] = []
        self.sign_delay = 0.0
        self.derive_error: Optional[Exception] = None
        self.sign_override: Optional[Callable[[SignatureRequest], RsvSignature]] = None

    def account_for(self, derivation_path: str):
        return Account.from_key(keccak(text=f"{self._account_id}/{derivation_path}"))

    async def account_id(self) -> str:
        self.account_calls += 1
        return self._account_id

    async def derive_address(self, account_id: str, derivation_path: str) -> DerivedKey:
        self.derive_calls.append(derivation_path)
        if self.derive_error is not None:
            raise self.derive_error
        account = self.account_for(derivation_path)
        public_key = keys.PrivateKey(bytes(account.key)).public_key.to_hex()
        return DerivedKey(address=account.address, public_key=public_key)

    async def sign(self, request: SignatureRequest) -> RsvSignature:
        self.sign_calls.append(request)
        if self.sign_delay:
            await asyncio.sleep(self.sign_delay)
        if self.sign_override is not None:
            return self.sign_override(request)
        signed = self.account_for(request.derivation_path).unsafe_sign_hash(request.payload)
        return RsvSignature(r=signed.r, s=signed.s, v=signed.v)


def oracle_record(oracle_id: str, **overrides: Any) -> Dict[str, Any]:
    record = {
        "id": oracle_id,
        "description": f"{oracle_id} price",
        "apiEndpoint": f"https://api.example.com/{oracle_id}",
        "dataPath": "data.price",
        "updateIntervalMinutes": 60,
        "derivationPath": oracle_id,
        "priceMultiplier": 100,
        "createdAt": "2024-12-01T00:00:00Z",
    }
    record.update(overrides)
    return record


def write_records(path: Path, records: Dict[str, Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(records, indent=2), encoding="utf-8")


def json_api(payload: Any, status_code: int = 200, calls: Optional[List[str]] = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        return httpx.Response(status_code, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "oracles.json"


@pytest.fixture
def store(config_path: Path) -> OracleConfigStore:
    return OracleConfigStore(config_path)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def tracker() -> UpdateTracker:
    return UpdateTracker()


@pytest.fixture
def wallets(signer: FakeSigner, chain: FakeChain) -> WalletDeriver:
    return WalletDeriver(signer, chain)


@pytest.fixture
def make_executor(store, chain, wallets, signer, tracker):
    def _make(http_client: httpx.AsyncClient) -> OracleUpdateExecutor:
        return OracleUpdateExecutor(
            store=store,
            chain=chain,
            wallets=wallets,
            signer=signer,
            tracker=tracker,
            signer_timeout=5.0,
            receipt_timeout=1.0,
            http_client=http_client,
            clock=lambda: FIXED_NOW,
        )

    return _make

