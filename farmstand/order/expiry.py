"""
Order — 期限切れの定期掃除 (バックグラウンドタスク)

掃除の中身は OrderStateMachine.sweep()。ここでは一定間隔で呼ぶだけ。
LedgerWriteFailed が起きたらタスクごと停止する。それ以外の例外はログに残して次の周期へ進む。
"""

import asyncio
import contextlib
from datetime import datetime

import structlog

from ..errors import LedgerWriteFailed
from .commands import OrderStateMachine, SweepReport

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    def __init__(self, machine: OrderStateMachine, interval: float = 30.0) -> None:
        self.machine = machine
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        return await self.machine.sweep(now)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="farmstand-expiry-sweeper")
        logger.info("expiry_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("expiry_sweeper_stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except LedgerWriteFailed:
                logger.critical("expiry_sweeper_halted", reason="ledger write failed")
                raise
            except Exception:
                logger.exception("expiry_sweep_failed")
            await asyncio.sleep(self.interval)
