"""apps/gateway 测试配置 -- 可编程渠道适配器 + 服务组装 + httpx AsyncClient"""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from rentfinder.channels import (
    AdapterRegistry,
    CallStatusReport,
    ChannelConfig,
    DispatchOutcome,
    DispatchRequest,
)
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.models import ActionType, CostService, OrganizationCredentials
from rentfinder.gateway.services.dispatcher import Dispatcher
from rentfinder.gateway.services.followups import FollowUpPlanner
from rentfinder.gateway.services.override_service import HumanOverrideController
from rentfinder.gateway.services.reconciler import Reconciler
from rentfinder.gateway.services.webhook_service import WebhookCompletionHandler

# 测试用渠道调用超时（秒）
TEST_CHANNEL_TIMEOUT_S = 0.2


class ScriptedAdapter:
    """可编程渠道适配器

    script 中的条目按顺序消费：DispatchOutcome 直接返回，Exception 抛出，
    可调用对象以 request 为参数 await 执行。脚本耗尽后返回默认受理结果。
    """

    def __init__(self, action_type: ActionType, vendor: str, is_async: bool = False) -> None:
        self.action_type = action_type
        self.vendor = vendor
        self.is_async = is_async
        self.calls: list[DispatchRequest] = []
        self.script: list = []
        self.status_reports: list = []
        self.status_calls: list[str] = []

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        self.calls.append(request)
        if not self.script:
            return self.accepted(request)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return await item(request)
        return item

    def accepted(self, request: DispatchRequest, external_ref: str | None = None):
        task = request.task
        ref = external_ref or f"{self.vendor}-{task.task_id}-{task.attempt_number}"
        if self.is_async:
            return DispatchOutcome(
                is_async=True,
                vendor=self.vendor,
                external_ref=ref,
                recipient=request.lead.phone or "",
                status="queued",
            )
        if self.action_type == ActionType.EMAIL:
            service, recipient = CostService.RESEND, request.lead.email or ""
        else:
            service, recipient = CostService.TWILIO_SMS, request.lead.phone or ""
        return DispatchOutcome(
            is_async=False,
            vendor=self.vendor,
            external_ref=ref,
            recipient=recipient,
            body="hello",
            status="queued",
            service=service,
            usage_quantity=1.0,
        )

    async def fetch_status(
        self,
        external_ref: str,
        credentials: OrganizationCredentials,
    ) -> CallStatusReport | None:
        self.status_calls.append(external_ref)
        if not self.status_reports:
            return None
        item = self.status_reports.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def adapters() -> dict[ActionType, ScriptedAdapter]:
    return {
        ActionType.SMS: ScriptedAdapter(ActionType.SMS, "twilio"),
        ActionType.EMAIL: ScriptedAdapter(ActionType.EMAIL, "resend"),
        ActionType.CALL: ScriptedAdapter(ActionType.CALL, "bland", is_async=True),
    }


@pytest.fixture
def registry(adapters) -> AdapterRegistry:
    return AdapterRegistry(list(adapters.values()))


@pytest.fixture
def channel_config() -> ChannelConfig:
    return ChannelConfig(webhook_base_url="https://gw.test")


@pytest.fixture
def compliance_gate(store_group) -> ComplianceGate:
    return ComplianceGate(
        store_group.task_store,
        store_group.lead_store,
        store_group.policy_store,
    )


@pytest.fixture
def dispatcher(store_group, registry, compliance_gate, channel_config) -> Dispatcher:
    return Dispatcher(
        store_group,
        registry,
        compliance_gate,
        channel_config,
        batch_size=20,
        concurrency=5,
        timeout_for=lambda _action_type: TEST_CHANNEL_TIMEOUT_S,
    )


@pytest.fixture
def webhook_handler(store_group) -> WebhookCompletionHandler:
    return WebhookCompletionHandler(store_group, FollowUpPlanner(store_group))


@pytest.fixture
def reconciler(store_group, registry, webhook_handler, channel_config) -> Reconciler:
    return Reconciler(store_group, registry, webhook_handler, channel_config, claim_timeout_s=600)


@pytest.fixture
def override_controller(store_group) -> HumanOverrideController:
    return HumanOverrideController(store_group)


@pytest_asyncio.fixture
async def app(store_group, channel_config, registry, monkeypatch):
    """创建测试用 FastAPI app 实例（绕过 lifespan 手动组装服务）"""
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    from rentfinder.gateway.main import build_services, create_app

    application = create_app()
    async with httpx.AsyncClient() as http_client:
        build_services(application, store_group, channel_config, http_client, registry)
        yield application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
