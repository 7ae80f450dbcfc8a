"""集成测试共享 fixture -- 真实渠道适配器 + httpx.MockTransport 模拟供应商"""

import itertools
import json
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from rentfinder.channels import ChannelConfig


class VendorSandbox:
    """按域名路由的模拟供应商：Bland 外呼、Twilio 短信、Resend 邮件"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        n = next(self._ids)
        host = request.url.host
        if host == "bland.test":
            return httpx.Response(200, json={"status": "success", "call_id": f"call-{n}"})
        if host == "twilio.test":
            return httpx.Response(
                201, json={"sid": f"SM{n:04d}", "status": "queued", "num_segments": "1"}
            )
        if host == "resend.test":
            return httpx.Response(200, json={"id": f"email-{n}"})
        return httpx.Response(404, json={"message": "unknown vendor"})

    def bodies_for(self, host: str) -> list[dict]:
        bodies = []
        for request in self.requests:
            if request.url.host != host:
                continue
            if request.headers.get("content-type", "").startswith("application/json"):
                bodies.append(json.loads(request.content))
            else:
                bodies.append(dict(httpx.QueryParams(request.content.decode())))
        return bodies


@pytest.fixture
def sandbox() -> VendorSandbox:
    return VendorSandbox()


@pytest.fixture
def live_config() -> ChannelConfig:
    return ChannelConfig(
        dispatch_mode="live",
        bland_base_url="https://bland.test/v1",
        twilio_base_url="https://twilio.test/2010-04-01",
        resend_base_url="https://resend.test",
        webhook_base_url="https://gateway.example.com",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-token",
        twilio_phone_number="+15550009999",
        bland_api_key="bland-key",
        resend_api_key="re_key",
        resend_from_email="leasing@example.com",
    )


@pytest_asyncio.fixture
async def integration_app(store_group, live_config, sandbox, monkeypatch):
    """集成测试用 FastAPI app：真实服务组装，供应商 HTTP 由 sandbox 应答"""
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    from rentfinder.gateway.main import build_services, create_app

    app = create_app()
    transport = httpx.MockTransport(sandbox.handler)
    async with httpx.AsyncClient(transport=transport) as http_client:
        build_services(app, store_group, live_config, http_client)
        yield app


@pytest_asyncio.fixture
async def client(integration_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=integration_app),
        base_url="http://test",
    ) as ac:
        yield ac
