"""BlandVoiceAdapter -- Bland.ai 语音外呼

外呼是异步渠道：下单成功只返回 call_id，通话结果通过 webhook 回传，
成本在完成回调时按通话时长记录。支持按 call_id 主动查询通话状态，供卡单回收使用。
"""

import structlog

from rentfinder.core.models.enums import ActionType
from rentfinder.core.models.policy import OrganizationCredentials

from .base import BaseChannelAdapter
from .contact import normalize_phone
from .exceptions import MissingContactInfoError, MissingCredentialsError, PermanentDispatchError
from .models import CallStatusReport, DispatchOutcome, DispatchRequest
from .templates import render_voice_task

log = structlog.get_logger()

# 单通外呼最长时长（分钟）
MAX_CALL_DURATION_MINUTES = 5


class BlandVoiceAdapter(BaseChannelAdapter):
    """Bland.ai 外呼适配器"""

    action_type = ActionType.CALL
    is_async = True
    vendor = "bland"

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """下单一通外呼

        Raises:
            MissingCredentialsError: 组织未配置 bland_api_key
            MissingContactInfoError: 线索没有电话号码
            DispatchError: 渠道调用失败
        """
        api_key = request.credentials.bland_api_key
        if api_key is None or not api_key.get_secret_value():
            raise MissingCredentialsError(self.vendor, "bland_api_key")
        phone = normalize_phone(request.lead.phone)
        if phone is None:
            raise MissingContactInfoError(ActionType.CALL.value, "phone")

        prompt = render_voice_task(request.task, request.lead)
        body = {
            "phone_number": phone,
            "task": prompt,
            "record": True,
            "max_duration": MAX_CALL_DURATION_MINUTES,
            "metadata": request.correlation_metadata(),
        }
        if request.webhook_url:
            body["webhook"] = request.webhook_url

        data = await self._request(
            "POST",
            f"{self._config.bland_base_url}/calls",
            json=body,
            headers={
                "Authorization": api_key.get_secret_value(),
                "Idempotency-Key": request.idempotency_key,
            },
        )
        call_id = data.get("call_id")
        if data.get("status") == "error" or not call_id:
            message = data.get("message") or "no call_id in response"
            raise PermanentDispatchError(f"bland rejected call: {message}")

        log.info("voice_call_queued", task_id=request.task.task_id, call_id=call_id)
        return DispatchOutcome(
            is_async=True,
            vendor=self.vendor,
            external_ref=str(call_id),
            recipient=phone,
            body=prompt,
            status=str(data.get("status") or "queued"),
        )

    async def fetch_status(
        self,
        external_ref: str,
        credentials: OrganizationCredentials,
    ) -> CallStatusReport | None:
        """查询通话详情

        Bland 的 call_length 以分钟计，completed 表示通话已结束。
        凭证缺失时返回 None（无法查询）。
        """
        api_key = credentials.bland_api_key
        if api_key is None or not api_key.get_secret_value():
            return None
        data = await self._request(
            "GET",
            f"{self._config.bland_base_url}/calls/{external_ref}",
            headers={"Authorization": api_key.get_secret_value()},
        )
        final = bool(data.get("completed"))
        status = str(data.get("status") or ("completed" if final else "in_progress"))
        if data.get("answered_by") == "voicemail":
            status = "voicemail"
        call_length = data.get("call_length") or 0
        try:
            duration_seconds = max(int(round(float(call_length) * 60)), 0)
        except (TypeError, ValueError):
            duration_seconds = 0
        return CallStatusReport(
            external_ref=external_ref,
            final=final,
            status=status,
            duration_seconds=duration_seconds,
            transcript=data.get("concatenated_transcript"),
            summary=data.get("summary"),
            recording_url=data.get("recording_url"),
        )
