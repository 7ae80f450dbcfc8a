"""packages/channels 测试 fixtures -- httpx.MockTransport 录制请求"""

import httpx
import pytest
import pytest_asyncio
from rentfinder.channels import ChannelConfig, DispatchRequest
from rentfinder.core.models import OrganizationCredentials


class FakeVendor:
    """可编程的渠道 HTTP 服务：按顺序返回预设响应，并记录收到的请求"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response | Exception] = []

    def reply(self, status_code: int = 200, json=None, text: str | None = None) -> None:
        if text is not None:
            self.responses.append(httpx.Response(status_code, text=text))
        else:
            self.responses.append(httpx.Response(status_code, json=json))

    def raise_error(self, error: Exception) -> None:
        self.responses.append(error)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest_asyncio.fixture
async def http_client(vendor: FakeVendor):
    async with httpx.AsyncClient(transport=httpx.MockTransport(vendor.handler)) as client:
        yield client


@pytest.fixture
def channel_config() -> ChannelConfig:
    return ChannelConfig(
        bland_base_url="https://bland.test/v1",
        twilio_base_url="https://twilio.test/2010-04-01",
        resend_base_url="https://resend.test",
    )


@pytest.fixture
def credentials() -> OrganizationCredentials:
    return OrganizationCredentials(
        organization_id="org-001",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-token",
        twilio_phone_number="+15550009999",
        bland_api_key="bland-key",
        resend_api_key="re_key",
        resend_from_email="leasing@example.com",
    )


@pytest.fixture
def make_request(lead_factory, task_factory, credentials):
    """构造 DispatchRequest"""

    def _make(task=None, lead=None, creds=None, webhook_url=None, **task_overrides):
        return DispatchRequest(
            task=task or task_factory(**task_overrides),
            lead=lead or lead_factory(),
            credentials=creds or credentials,
            webhook_url=webhook_url,
        )

    return _make
