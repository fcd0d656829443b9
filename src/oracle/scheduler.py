"""Background loop that keeps every deployed oracle up to date."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.utils.state import OracleConfigStore

from .chain import OracleChainClient
from .errors import NonceConflictError, OracleError
from .executor import OracleUpdateExecutor
from .inflight import UpdateTracker
from .models import OracleConfig, SkipReason, utcnow

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 60
UPDATE_SPACING_SECONDS = 60


class OracleScheduler:
    """
    Polls the config store every ``CHECK_INTERVAL_SECONDS`` and updates due
    oracles one at a time, pausing ``UPDATE_SPACING_SECONDS`` after each so
    consecutive transactions do not race on the shared signer.
    """

    def __init__(
        self,
        store: OracleConfigStore,
        chain: OracleChainClient,
        executor: OracleUpdateExecutor,
        tracker: UpdateTracker,
        respect_active_flag: bool = False,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.chain = chain
        self.executor = executor
        self.tracker = tracker
        self.respect_active_flag = respect_active_flag
        self.clock = clock
        self.sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop on the running event loop. Returns False if it was already running."""
        if self.running:
            logger.info("[Scheduler] Already running")
            return False
        logger.info("[Scheduler] Starting (check every %ss, %ss between updates)",
                    CHECK_INTERVAL_SECONDS, UPDATE_SPACING_SECONDS)
        self._task = asyncio.get_running_loop().create_task(self._loop())
        return True

    async def stop(self) -> bool:
        """Cancel the loop and wait for it to exit. Returns False if it was not running."""
        if not self.running:
            self._task = None
            return False
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Scheduler] Stopped")
        return True

    def status(self) -> Dict[str, Any]:
        currently_updating = self.tracker.snapshot()
        return {
            "running": self.running,
            "currently_updating": currently_updating,
            "updating_count": len(currently_updating),
            "check_interval_seconds": CHECK_INTERVAL_SECONDS,
        }

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[Scheduler] Tick failed")
            await self.sleep(CHECK_INTERVAL_SECONDS)

    async def run_once(self) -> List[str]:
        """
        Run a single tick.

        Returns:
            Ids of the oracles an update was attempted for, in order
        """
        async with self._tick_lock:
            due = await self.get_oracles_due_for_update()
            if not due:
                logger.debug("[Scheduler] No oracles due")
                return []

            logger.info("[Scheduler] %d oracle(s) due: %s", len(due), ", ".join(c.id for c in due))
            attempted: List[str] = []
            for config in due:
                # an update may have been triggered manually since the due list was built
                if self.tracker.is_updating(config.id):
                    continue
                attempted.append(config.id)
                await self.execute_oracle_update(config.id)
                await self.sleep(UPDATE_SPACING_SECONDS)
            return attempted

    async def get_oracles_due_for_update(self) -> List[OracleConfig]:
        now = self.clock()
        due: List[OracleConfig] = []
        for oracle_id, config in self.store.load().items():
            if self.respect_active_flag and not config.is_active:
                continue
            if self.tracker.is_updating(oracle_id):
                continue
            if not config.is_due(now):
                continue
            if not await self._is_deployed(oracle_id):
                continue
            due.append(config)
        return due

    async def execute_oracle_update(self, oracle_id: str) -> bool:
        """Update one oracle, logging instead of raising. True on an update or an unchanged value."""
        try:
            result = await self.executor.execute(oracle_id)
        except NonceConflictError as exc:
            logger.info("[Scheduler] %s: %s", oracle_id, exc.message)
            return False
        except OracleError as exc:
            logger.error("[Scheduler] Update of %s failed: %s", oracle_id, exc.message)
            return False
        except Exception:
            logger.exception("[Scheduler] Unexpected error updating %s", oracle_id)
            return False

        if result.is_skipped:
            logger.info("[Scheduler] %s skipped (%s)", oracle_id, result.skip_reason.value)
            return result.skip_reason is not SkipReason.ALREADY_UPDATING
        logger.info("[Scheduler] %s updated in tx %s", oracle_id, result.tx_hash)
        return True

    async def _is_deployed(self, oracle_id: str) -> bool:
        try:
            exists = await asyncio.to_thread(self.chain.oracle_exists, oracle_id)
        except OracleError as exc:
            logger.warning("[Scheduler] Could not check deployment of %s: %s", oracle_id, exc.message)
            return False
        if not exists:
            logger.info("[Scheduler] Oracle %s not deployed on-chain yet, skipping", oracle_id)
        return exists
