import asyncio
import hmac
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from loguru import logger

from ..core.db import Database
from ..core.settings import settings
from .crud import GatewayCrud
from .export import GatewayExport
from .invoices import GatewayInvoices
from .melt import GatewayMelt
from .models import CronResponse

LAST_SYNC_KEY = "last_proof_sync"

EXTERNAL = "external"
INTERNAL = "internal"


class SyncCooldown:
    """Rate limit for opportunistic background runs, shared through the database."""

    def __init__(
        self,
        *,
        db: Database,
        crud: GatewayCrud,
        clock: Callable[[], int],
        interval: Optional[int] = None,
    ):
        self.db = db
        self.crud = crud
        self.clock = clock
        self.interval = (
            settings.background_sync_cooldown if interval is None else interval
        )

    async def time_since_last_sync(self) -> int:
        last_sync = await self.crud.get_config(key=LAST_SYNC_KEY, db=self.db)
        return self.clock() - int(last_sync or 0)

    async def should_sync(self) -> bool:
        return await self.time_since_last_sync() > self.interval

    async def mark_synced(self) -> None:
        now = self.clock()
        await self.crud.set_config(
            key=LAST_SYNC_KEY, value=str(now), timestamp=now, db=self.db
        )


class GatewayTasks(GatewayInvoices, GatewayExport, GatewayMelt):
    cooldown: SyncCooldown
    background_tasks: Set["asyncio.Task[CronResponse]"]

    async def run_background_tasks(self, trigger: str = EXTERNAL) -> CronResponse:
        """Runs one round of all periodic maintenance.

        Every task runs even if an earlier one failed. Payouts only happen on
        external (cron) runs so that page views never move money.
        """
        logger.debug(f"Running background tasks ({trigger})")
        report = CronResponse(timestamp=self.clock(), tasks={})
        for name, task in self._background_tasks(trigger):
            if task is None:
                report.tasks[name] = "skipped"
                continue
            try:
                await task()
                report.tasks[name] = "success"
            except Exception as e:
                logger.error(f"Background task {name} failed: {e}")
                report.tasks[name] = f"error: {e}"
        return report

    def _background_tasks(
        self, trigger: str
    ) -> List[Tuple[str, Optional[Callable[[], Awaitable]]]]:
        return [
            ("expire_invoices", self.mark_expired_invoices),
            ("poll_quotes", self.poll_pending_quotes),
            ("auto_melt", self.check_auto_melt if trigger == EXTERNAL else None),
            ("cleanup_pending_proofs", self.cleanup_pending_proofs),
            ("recover_orphaned", self.recover_orphaned_invoices),
            ("expire_old_invoices", self.expire_old_invoices),
            ("cleanup_invoices", self.cleanup_old_invoices),
            ("cleanup_webhooks", self.cleanup_webhook_deliveries),
        ]

    async def cleanup_pending_proofs(self) -> int:
        """Reconciles the PENDING proofs of all stores and drops expired operations."""
        settled = 0
        for store in await self.get_configured_stores():
            try:
                result = await self.check_pending_proofs(store)
                settled += result.spent + result.recovered
            except Exception as e:
                logger.error(f"Checking pending proofs of store {store.id} failed: {e}")
        await self.clean_expired_pending_operations()
        return settled

    async def cleanup_webhook_deliveries(self) -> int:
        return await self.crud.prune_webhook_deliveries(
            keep=settings.webhook_delivery_retention, db=self.db
        )

    async def trigger_background_tasks(self) -> Optional["asyncio.Task[CronResponse]"]:
        """Starts an internal background run unless one ran recently.

        The run is detached from the caller, its outcome is only logged.
        """
        if not await self.cooldown.should_sync():
            return None
        await self.cooldown.mark_synced()
        task = asyncio.create_task(self.run_background_tasks(INTERNAL))
        self.background_tasks.add(task)
        task.add_done_callback(self._background_task_done)
        return task

    def _background_task_done(self, task: "asyncio.Task[CronResponse]") -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            logger.debug("Background run cancelled")
            return
        exception = task.exception()
        if exception:
            logger.error(f"Background run failed: {exception}")
            return
        failed = [name for name, s in task.result().tasks.items() if s.startswith("error")]
        logger.debug(f"Background run done, failed tasks: {failed or 'none'}")

    async def verify_internal_key(self, key: str) -> bool:
        internal_key = await self.get_internal_key()
        return hmac.compare_digest(internal_key.encode(), key.encode())

    async def verify_cron_key(self, key: str) -> bool:
        if settings.cron_key:
            return hmac.compare_digest(settings.cron_key.encode(), key.encode())
        return await self.verify_internal_key(key)
