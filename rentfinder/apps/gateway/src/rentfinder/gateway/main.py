"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭 + 渠道与调度组件初始化 + 路由注册。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from rentfinder.channels import (
    AdapterRegistry,
    ChannelConfig,
    build_adapter_registry,
    load_channel_config,
)
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.config import get_db_path, get_dispatch_interval_s, get_scheduler_enabled
from rentfinder.core.store import StoreGroup, create_store_group

from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import compliance, dispatch, health, leads, tasks, webhooks
from .services.dispatcher import Dispatcher
from .services.followups import FollowUpPlanner
from .services.override_service import HumanOverrideController
from .services.reconciler import Reconciler
from .services.scheduler import DispatchScheduler
from .services.webhook_service import WebhookCompletionHandler

log = structlog.get_logger()


def build_services(
    app: FastAPI,
    store_group: StoreGroup,
    channel_config: ChannelConfig,
    http_client: httpx.AsyncClient,
    registry: AdapterRegistry | None = None,
) -> None:
    """组装服务对象并挂到 app.state

    lifespan 与测试共用同一套组装逻辑；registry 为 None 时按 dispatch_mode 构建。
    """
    if registry is None:
        registry = build_adapter_registry(channel_config, http_client)
    gate = ComplianceGate(
        store_group.task_store,
        store_group.lead_store,
        store_group.policy_store,
    )
    planner = FollowUpPlanner(store_group)
    webhook_handler = WebhookCompletionHandler(store_group, planner)

    app.state.store_group = store_group
    app.state.channel_config = channel_config
    app.state.http_client = http_client
    app.state.adapter_registry = registry
    app.state.compliance_gate = gate
    app.state.followup_planner = planner
    app.state.webhook_handler = webhook_handler
    app.state.dispatcher = Dispatcher(store_group, registry, gate, channel_config)
    app.state.reconciler = Reconciler(store_group, registry, webhook_handler, channel_config)
    app.state.override_controller = HumanOverrideController(store_group)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时初始化 DB 和渠道组件，关闭时清理连接"""
    # 启动：初始化 Store
    store_group = await create_store_group(get_db_path())

    channel_config = load_channel_config()
    http_client = httpx.AsyncClient(timeout=channel_config.http_timeout_s)
    build_services(app, store_group, channel_config, http_client)
    log.info(
        "gateway_services_initialized",
        dispatch_mode=channel_config.dispatch_mode,
        channels=[t.value for t in app.state.adapter_registry.list_action_types()],
    )

    scheduler: DispatchScheduler | None = None
    if get_scheduler_enabled():
        scheduler = DispatchScheduler(
            app.state.dispatcher,
            app.state.reconciler,
            get_dispatch_interval_s(),
        )
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    # 关闭：停止调度循环，释放 HTTP 客户端与数据库连接
    if scheduler is not None:
        await scheduler.stop()
    await http_client.aclose()
    await store_group.conn.close()


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="RentFinder Dispatch Gateway",
        version="0.1.0",
        description="外呼任务调度、渠道回调与人工接管 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    # 初始化日志
    setup_logging()
    setup_logfire(app)

    # 注册路由
    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(dispatch.router, tags=["dispatch"])
    app.include_router(webhooks.router, tags=["webhooks"])
    app.include_router(leads.router, tags=["leads"])
    app.include_router(compliance.router, tags=["compliance"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
