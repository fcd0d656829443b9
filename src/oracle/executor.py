"""
Oracle Update Executor

Runs one end-to-end update of a single oracle: fetch the configured API,
extract and scale the value, and write it on-chain through the remote
signer when it changed.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx

from src.utils.extract import extract
from src.utils.fixed_point import to_fixed_point_integer
from src.utils.state import OracleConfigStore

from .chain import OracleChainClient
from .errors import (
    ApiExtractionError,
    ExtractionError,
    InsufficientFundsError,
    NotCreatorError,
    OracleError,
    OracleNotFoundError,
)
from .feed import DEFAULT_API_TIMEOUT, fetch_json
from .inflight import UpdateTracker
from .models import OnChainOracle, OracleConfig, SkipReason, UpdateResult, UpdateStatus, utcnow
from .signer import DEFAULT_SIGNER_TIMEOUT, SignerService
from .transaction import LegacyTransactionBuilder
from .wallet import WalletDeriver

logger = logging.getLogger(__name__)


class OracleUpdateExecutor:
    """
    Performs oracle updates.

    Failures raised before the on-chain state is read (unknown id, oracle not
    deployed, RPC read errors) are not persisted. Every later failure is
    written to the config as the oracle's latest error and then re-raised.
    """

    def __init__(
        self,
        store: OracleConfigStore,
        chain: OracleChainClient,
        wallets: WalletDeriver,
        signer: SignerService,
        tracker: UpdateTracker,
        api_timeout: float = DEFAULT_API_TIMEOUT,
        signer_timeout: float = DEFAULT_SIGNER_TIMEOUT,
        receipt_timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.chain = chain
        self.wallets = wallets
        self.signer = signer
        self.tracker = tracker
        self.api_timeout = api_timeout
        self.signer_timeout = signer_timeout
        self.receipt_timeout = receipt_timeout
        self.http_client = http_client
        self.clock = clock

    async def execute(self, oracle_id: str) -> UpdateResult:
        """
        Update one oracle.

        Returns:
            ``UPDATED`` with the transaction details, or ``SKIPPED`` when the
            value is unchanged or another update of the oracle is in flight

        Raises:
            OracleError: Any failure of the attempt
        """
        with self.tracker.claim(oracle_id) as acquired:
            if not acquired:
                logger.info("Oracle %s is already being updated, skipping", oracle_id)
                return UpdateResult.skipped(oracle_id, SkipReason.ALREADY_UPDATING)
            return await self._execute(oracle_id)

    async def _execute(self, oracle_id: str) -> UpdateResult:
        if await asyncio.to_thread(self.store.get, oracle_id) is None:
            raise OracleNotFoundError(oracle_id)
        config = await asyncio.to_thread(self.store.backfill, oracle_id)

        on_chain = await asyncio.to_thread(self.chain.get_oracle, oracle_id)

        try:
            return await self._update(config, on_chain)
        except Exception as exc:
            message = exc.message if isinstance(exc, OracleError) else str(exc)
            await self._record_failure(oracle_id, message)
            raise

    async def _update(self, config: OracleConfig, on_chain: OnChainOracle) -> UpdateResult:
        oracle_id = config.id
        logger.info("🔄 Updating oracle %s from %s", oracle_id, config.api_endpoint)

        document = await fetch_json(
            config.api_endpoint, timeout=self.api_timeout, client=self.http_client, oracle_id=oracle_id
        )
        try:
            extracted = extract(document, config.data_path)
        except ExtractionError as exc:
            raise ApiExtractionError(f"Failed to extract value from API response: {exc.message}", oracle_id) from exc

        new_value = to_fixed_point_integer(extracted, config.price_multiplier)
        logger.info("Oracle %s: extracted %s -> %d (multiplier %d), on-chain %d",
                    oracle_id, extracted, new_value, config.price_multiplier, on_chain.value)

        if new_value == on_chain.value:
            logger.info("Value unchanged for oracle %s, skipping transaction", oracle_id)
            await self._record_check(config)
            return UpdateResult.skipped(
                oracle_id, SkipReason.UNCHANGED, old_value=on_chain.value, new_value=new_value
            )

        wallet = await self.wallets.derive(oracle_id)
        if wallet.address.lower() != on_chain.creator.lower():
            raise NotCreatorError(oracle_id, wallet.address, on_chain.creator)

        balance = await self.wallets.get_balance(wallet.address)
        minimum = self.wallets.min_gas_reserve_wei
        if balance < minimum:
            raise InsufficientFundsError(oracle_id, wallet.address, balance, minimum)

        builder = LegacyTransactionBuilder(
            chain=self.chain,
            signer=self.signer,
            sender=wallet.address,
            derivation_path=wallet.derivation_path,
            to=self.chain.contract_address,
            data=self.chain.encode_update(oracle_id, new_value),
            signer_timeout=self.signer_timeout,
            receipt_timeout=self.receipt_timeout,
            oracle_id=oracle_id,
        )
        broadcast = await builder.sign_and_send()

        now = self.clock()
        await asyncio.to_thread(self.store.update, oracle_id, {
            "last_update": now,
            "next_update": now + timedelta(minutes=config.update_interval_minutes),
            "has_error": False,
            "error_message": "",
            "last_error_at": None,
            "last_tx_hash": broadcast.tx_hash,
            "last_value": new_value,
        })
        logger.info("✅ Oracle %s updated: %d -> %d (tx %s)", oracle_id, on_chain.value, new_value, broadcast.tx_hash)

        return UpdateResult(
            oracle_id=oracle_id,
            status=UpdateStatus.UPDATED,
            old_value=on_chain.value,
            new_value=new_value,
            tx_hash=broadcast.tx_hash,
            block_number=broadcast.block_number,
        )

    async def _record_check(self, config: OracleConfig) -> None:
        now = self.clock()
        await asyncio.to_thread(self.store.update, config.id, {
            "last_update": now,
            "next_update": now + timedelta(minutes=config.update_interval_minutes),
            "has_error": False,
            "error_message": "",
            "last_error_at": None,
        })

    async def _record_failure(self, oracle_id: str, message: str) -> None:
        try:
            await asyncio.to_thread(self.store.update, oracle_id, {
                "has_error": True,
                "error_message": message,
                "last_error_at": self.clock(),
            })
        except OracleError as exc:
            logger.error("Could not record failure for oracle %s: %s", oracle_id, exc)
