"""
API Oracle Agent

Wires the config store, chain client, signer, executor and scheduler
together and exposes the operations used by the HTTP server and the CLI.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from src.utils.config import Settings
from src.utils.fixed_point import multiplier_decimals, to_decimal_string
from src.utils.state import OracleConfigStore

from .chain import OracleChainClient
from .errors import OracleNotDeployedError
from .executor import OracleUpdateExecutor
from .feed import probe_data_source
from .inflight import UpdateTracker
from .models import OracleConfig, UpdateResult
from .scheduler import OracleScheduler
from .signer import ShadeAgentSigner, SignerService, TEESigner
from .wallet import WalletDeriver

logger = logging.getLogger(__name__)


class OracleAgent:
    """
    Host object for one oracle agent process.

    Provides:
    - Manual and scheduled oracle updates
    - Per-oracle wallet derivation and balance lookups
    - On-chain value reads and data source probing
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[OracleConfigStore] = None,
        chain: Optional[OracleChainClient] = None,
        signer: Optional[SignerService] = None,
    ):
        self.settings = settings
        self.tracker = UpdateTracker()

        self._init_store(store)
        self._init_chain(chain)
        self._init_signer(signer)

        self.wallets = WalletDeriver(self.signer, self.chain, settings.min_gas_reserve_wei)
        self.executor = OracleUpdateExecutor(
            store=self.store,
            chain=self.chain,
            wallets=self.wallets,
            signer=self.signer,
            tracker=self.tracker,
            api_timeout=settings.api_timeout,
            signer_timeout=settings.signer_timeout,
            receipt_timeout=settings.receipt_timeout,
        )
        self.scheduler = OracleScheduler(
            store=self.store,
            chain=self.chain,
            executor=self.executor,
            tracker=self.tracker,
            respect_active_flag=settings.respect_active_flag,
        )
        logger.info("🤖 Oracle agent initialized for contract %s (signer: %s)",
                    self.chain.contract_address, settings.signer_mode)

    def _init_store(self, store: Optional[OracleConfigStore]) -> None:
        self.store = store or OracleConfigStore(self.settings.config_path)

    def _init_chain(self, chain: Optional[OracleChainClient]) -> None:
        self.chain = chain or OracleChainClient.from_rpc_url(
            self.settings.rpc_url,
            self.settings.oracle_contract_address,
            timeout=self.settings.rpc_timeout,
        )

    def _init_signer(self, signer: Optional[SignerService]) -> None:
        if signer is not None:
            self.signer = signer
        elif self.settings.signer_mode == "tee":
            self.signer = TEESigner(
                account_id=self.settings.signer_account_id,
                use_tee=self.settings.use_tee_auth,
                tee_endpoint=self.settings.tee_endpoint,
                seed_key=self.settings.signer_seed_key,
            )
        else:
            self.signer = ShadeAgentSigner(
                self.settings.shade_agent_url,
                account_id=self.settings.signer_account_id,
                timeout=self.settings.signer_timeout,
            )

    # Updates
    async def update_oracle(self, oracle_id: str) -> UpdateResult:
        """Manual trigger. Raises the attempt's error after it has been persisted."""
        return await self.executor.execute(oracle_id)

    async def execute_oracle_update(self, oracle_id: str) -> bool:
        return await self.scheduler.execute_oracle_update(oracle_id)

    async def get_oracles_due_for_update(self) -> List[OracleConfig]:
        return await self.scheduler.get_oracles_due_for_update()

    # Scheduler lifecycle
    def start_scheduler(self) -> bool:
        return self.scheduler.start()

    async def stop_scheduler(self) -> bool:
        return await self.scheduler.stop()

    def get_scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.status()

    # Wallets
    async def derive_wallet_address(self, oracle_id: str) -> str:
        return await self.wallets.get_address(oracle_id)

    async def get_wallet_balance(self, oracle_id: str) -> int:
        address = await self.wallets.get_address(oracle_id)
        return await self.wallets.get_balance(address)

    async def get_wallet_info(self, oracle_id: str) -> Dict[str, Any]:
        return await self.wallets.wallet_info(oracle_id)

    # Reads
    async def get_oracle_value(self, oracle_id: str) -> Dict[str, Any]:
        """
        Read the on-chain record of an oracle.

        The raw value is formatted with the decimals implied by the
        configured price multiplier when it is a power of ten.
        """
        on_chain = await asyncio.to_thread(self.chain.get_oracle, oracle_id)
        config = self.store.get(oracle_id)

        payload: Dict[str, Any] = {
            "oracleId": oracle_id,
            "value": str(on_chain.value),
            "lastUpdateBlock": on_chain.last_update_block,
            "creator": on_chain.creator,
            "hasError": on_chain.has_error,
            "description": on_chain.description,
        }
        if config is not None:
            decimals = multiplier_decimals(config.price_multiplier)
            if decimals is not None:
                payload["formattedValue"] = to_decimal_string(on_chain.value, decimals, decimals)
            payload["priceMultiplier"] = config.price_multiplier
        return payload

    async def list_oracles(self) -> List[Dict[str, Any]]:
        """Stored configs, each with its on-chain value when the oracle is deployed."""
        oracles: List[Dict[str, Any]] = []
        for oracle_id, config in self.store.load().items():
            record = config.to_record()
            try:
                record["onChain"] = await self.get_oracle_value(oracle_id)
            except OracleNotDeployedError:
                record["onChain"] = None
            except Exception as exc:
                logger.warning("Could not read on-chain state of %s: %s", oracle_id, exc)
                record["onChain"] = None
            oracles.append(record)
        return oracles

    async def probe_data_source(self, api_endpoint: str, data_path: Optional[str] = None) -> Dict[str, Any]:
        return await probe_data_source(api_endpoint, data_path, timeout=self.settings.api_timeout)

    def migrate_configs(self) -> List[str]:
        return self.store.migrate()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.signer.close()
