"""Per-oracle wallet derivation and balance lookups."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from src.utils.fixed_point import to_decimal_string

from .chain import OracleChainClient
from .errors import DerivationError
from .models import OracleWallet
from .signer import SignerService

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
DEFAULT_MIN_GAS_RESERVE_WEI = 10**15  # 0.001 native unit


def derivation_path_for(oracle_id: str) -> str:
    """The derivation path of an oracle is its id, so addresses can be recomputed from the id alone."""
    return oracle_id


class WalletDeriver:
    """Maps oracle ids to signer-derived addresses."""

    def __init__(
        self,
        signer: SignerService,
        chain: OracleChainClient,
        min_gas_reserve_wei: int = DEFAULT_MIN_GAS_RESERVE_WEI,
    ):
        self.signer = signer
        self.chain = chain
        self.min_gas_reserve_wei = min_gas_reserve_wei
        self._account_id: Optional[str] = None

    async def account_id(self) -> str:
        if self._account_id is None:
            self._account_id = await self.signer.account_id()
        return self._account_id

    async def derive(self, oracle_id: str) -> OracleWallet:
        derivation_path = derivation_path_for(oracle_id)
        try:
            account_id = await self.account_id()
            derived = await self.signer.derive_address(account_id, derivation_path)
        except DerivationError:
            raise
        except Exception as exc:
            raise DerivationError(f"Error deriving wallet for oracle '{oracle_id}': {exc}", oracle_id) from exc

        return OracleWallet(
            oracle_id=oracle_id,
            address=derived.address,
            public_key=derived.public_key,
            derivation_path=derivation_path,
        )

    async def get_address(self, oracle_id: str) -> str:
        wallet = await self.derive(oracle_id)
        return wallet.address

    async def get_balance(self, address: str) -> int:
        """Raw balance in wei. Raises ``BalanceQueryError`` rather than reporting zero."""
        return await asyncio.to_thread(self.chain.get_balance, address)

    async def wallet_info(self, oracle_id: str) -> Dict[str, Any]:
        wallet = await self.derive(oracle_id)
        balance = await self.get_balance(wallet.address)
        return {
            "oracleId": oracle_id,
            "address": wallet.address,
            "derivationPath": wallet.derivation_path,
            "balance": {
                "raw": str(balance),
                "formatted": to_decimal_string(balance, NATIVE_DECIMALS, 6),
                "hasMinimum": balance >= self.min_gas_reserve_wei,
            },
        }
