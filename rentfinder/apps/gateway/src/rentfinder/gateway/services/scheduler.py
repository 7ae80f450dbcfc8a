"""DispatchScheduler -- gateway 进程内的周期调度循环

RENTFINDER_SCHEDULER_ENABLED=true 时随 gateway 启动，每个周期先执行调度再执行卡单回收。
默认关闭，生产环境由外部 cron 调用 CLI 或 /api/dispatch/run 触发。
多实例同时运行是安全的：认领是唯一的跨进程串行点。
"""

import asyncio

import structlog

from .dispatcher import Dispatcher
from .reconciler import Reconciler

log = structlog.get_logger()


class DispatchScheduler:
    """周期调度"""

    def __init__(
        self,
        dispatcher: Dispatcher,
        reconciler: Reconciler,
        interval_s: float,
    ) -> None:
        self._dispatcher = dispatcher
        self._reconciler = reconciler
        self._interval_s = interval_s
        self._stop = asyncio.Event()
        self._runner: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._runner = asyncio.create_task(self._run(), name="dispatch-scheduler")
        log.info("dispatch_scheduler_started", interval_s=self._interval_s)

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stop.set()
        await self._runner
        self._runner = None
        log.info("dispatch_scheduler_stopped")

    async def run_once(self) -> None:
        """执行一轮调度 + 回收，异常只记日志，不终止循环"""
        try:
            await self._dispatcher.run_dispatch_cycle()
        except Exception:
            log.exception("scheduled_dispatch_cycle_failed")
        try:
            await self._reconciler.sweep()
        except Exception:
            log.exception("scheduled_sweep_failed")

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval_s)
            except TimeoutError:
                continue
