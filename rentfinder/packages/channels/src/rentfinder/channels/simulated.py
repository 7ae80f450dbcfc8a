"""SimulatedAdapter -- 演练模式渠道

RENTFINDER_DISPATCH_MODE=simulated 时替代所有真实渠道：
不发出任何外部请求，受理即完成，不计费。
用于演示环境与本地联调，完整走一遍合规闸门、状态流转与活动日志。
"""

import asyncio

from ulid import ULID

from rentfinder.core.models.enums import ActionType
from rentfinder.core.models.policy import OrganizationCredentials

from .models import CallStatusReport, DispatchOutcome, DispatchRequest
from .templates import render_email, render_sms, render_voice_task


class SimulatedAdapter:
    """模拟适配器 -- 同步完成，external_ref 以 sim- 开头"""

    is_async = False
    vendor = "simulated"

    def __init__(self, action_type: ActionType) -> None:
        self.action_type = action_type

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """模拟一次外呼

        内容渲染与真实渠道一致，营销活动缺正文时同样永久失败。
        """
        task, lead = request.task, request.lead
        if self.action_type == ActionType.CALL:
            body = render_voice_task(task, lead)
            recipient = lead.phone or ""
        elif self.action_type == ActionType.SMS:
            body = render_sms(task, lead)
            recipient = lead.phone or ""
        else:
            _, body = render_email(task, lead)
            recipient = lead.email or ""

        # 模拟少量延迟
        await asyncio.sleep(0.01)

        return DispatchOutcome(
            is_async=False,
            vendor=self.vendor,
            external_ref=f"sim-{self.action_type.value}-{ULID()}",
            recipient=recipient,
            body=body,
            status="simulated",
        )

    async def fetch_status(
        self,
        external_ref: str,
        credentials: OrganizationCredentials,
    ) -> CallStatusReport | None:
        return None
