"""调度触发路由

POST /api/dispatch/run: 执行一个调度周期（供 cron 触发），返回周期汇总。
POST /api/dispatch/sweep: 执行一次卡单回收。
"""

from fastapi import APIRouter, Depends

from ..deps import get_dispatcher, get_reconciler
from ..services.dispatcher import DispatchCycleReport, Dispatcher
from ..services.reconciler import Reconciler, SweepReport

router = APIRouter()


@router.post("/api/dispatch/run", response_model=DispatchCycleReport)
async def run_dispatch_cycle(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """认领并处理一批到期任务"""
    return await dispatcher.run_dispatch_cycle()


@router.post("/api/dispatch/sweep", response_model=SweepReport)
async def run_sweep(reconciler: Reconciler = Depends(get_reconciler)):
    """回收卡在 in_progress / claimed 的任务"""
    return await reconciler.sweep()
