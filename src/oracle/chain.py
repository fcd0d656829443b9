"""Chain client for the on-chain oracle registry contract."""

from __future__ import annotations

from typing import Any, Dict, Optional

from eth_typing import HexStr
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted

from .errors import BalanceQueryError, ChainRpcError, OracleNotDeployedError
from .models import OnChainOracle

DEFAULT_RPC_URL = "https://eth-rpc-api-testnet.thetatoken.org/rpc"
DEFAULT_ORACLE_CONTRACT = "0x0f11e94e727e255f6c00b8932b277b4474004c09"

ORACLE_ABI = [
    {"inputs": [], "name": "OnlyCreatorCanUpdate", "type": "error"},
    {"inputs": [], "name": "OracleAlreadyExists", "type": "error"},
    {"inputs": [], "name": "OracleNotExists", "type": "error"},
    {
        "inputs": [{"internalType": "bytes32", "name": "oracleId", "type": "bytes32"}],
        "name": "getOracle",
        "outputs": [
            {"internalType": "uint256", "name": "value", "type": "uint256"},
            {"internalType": "uint256", "name": "lastUpdateBlock", "type": "uint256"},
            {"internalType": "address", "name": "creator", "type": "address"},
            {"internalType": "bool", "name": "hasError", "type": "bool"},
            {"internalType": "string", "name": "description", "type": "string"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "oracleId", "type": "bytes32"}],
        "name": "getOracleCreator",
        "outputs": [{"internalType": "address", "name": "creator", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "bytes32", "name": "oracleId", "type": "bytes32"}],
        "name": "oracleExists",
        "outputs": [{"internalType": "bool", "name": "exists", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "oracleId", "type": "bytes32"},
            {"internalType": "uint256", "name": "newValue", "type": "uint256"},
        ],
        "name": "updateOracle",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

class OracleChainClient:
    """
    Read/write access to the oracle registry on an EVM chain.

    All methods are blocking web3 calls; async callers wrap them in
    ``asyncio.to_thread``. RPC failures surface as ``ChainRpcError``.
    """

    def __init__(self, w3: Web3, contract_address: str):
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.oracle_contract = w3.eth.contract(address=self.contract_address, abi=ORACLE_ABI)

    @classmethod
    def from_rpc_url(cls, rpc_url: str, contract_address: str, timeout: float = 15.0) -> "OracleChainClient":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        return cls(w3, contract_address)

    @staticmethod
    def oracle_key(oracle_id: str) -> bytes:
        """On-chain oracle ids are the keccak256 of the UTF-8 id string."""
        return bytes(Web3.keccak(text=oracle_id))

    # Contract reads
    def get_oracle(self, oracle_id: str) -> OnChainOracle:
        try:
            raw = self.oracle_contract.functions.getOracle(self.oracle_key(oracle_id)).call()
        except (ContractLogicError, BadFunctionCallOutput):
            raise OracleNotDeployedError(oracle_id)
        except Exception as exc:
            raise ChainRpcError(f"getOracle failed for '{oracle_id}': {exc}", oracle_id) from exc

        value, last_update_block, creator, has_error, description = raw[:5]
        return OnChainOracle(
            oracle_id=oracle_id,
            value=int(value),
            last_update_block=int(last_update_block),
            creator=creator,
            has_error=bool(has_error),
            description=description,
        )

    def oracle_exists(self, oracle_id: str) -> bool:
        try:
            return bool(self.oracle_contract.functions.oracleExists(self.oracle_key(oracle_id)).call())
        except Exception as exc:
            raise ChainRpcError(f"oracleExists failed for '{oracle_id}': {exc}", oracle_id) from exc

    def encode_update(self, oracle_id: str, new_value: int) -> HexStr:
        """ABI-encode ``updateOracle(bytes32, uint256)`` call data."""
        return self.oracle_contract.encode_abi(
            "updateOracle", args=[self.oracle_key(oracle_id), new_value]
        )

    # Transaction plumbing
    def gas_price(self) -> int:
        return self._rpc("gas_price", lambda: self.w3.eth.gas_price)

    def transaction_count(self, address: str) -> int:
        return self._rpc(
            "get_transaction_count",
            lambda: self.w3.eth.get_transaction_count(Web3.to_checksum_address(address)),
        )

    def chain_id(self) -> int:
        return self._rpc("chain_id", lambda: self.w3.eth.chain_id)

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        # Callers fall back to a default limit, so failures propagate untouched
        return int(self.w3.eth.estimate_gas(tx))

    def get_balance(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except Exception as exc:
            raise BalanceQueryError(f"Failed to query balance of {address}: {exc}") from exc

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction. Node errors are re-raised for classification."""
        tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Dict[str, Any]]:
        """Return the receipt once mined, or ``None`` if it is not mined within ``timeout``."""
        if timeout <= 0:
            return None
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            return None
        return dict(receipt)

    def _rpc(self, name: str, call):
        try:
            return int(call())
        except Exception as exc:
            raise ChainRpcError(f"RPC {name} failed: {exc}") from exc
