"""TwilioSmsAdapter -- Twilio 短信

短信是同步渠道：Twilio 受理即视为完成，按分段数计费。
"""

from urllib.parse import urlencode

from rentfinder.core.models.enums import ActionType, CostService

from .base import BaseChannelAdapter
from .contact import normalize_phone
from .exceptions import MissingContactInfoError, MissingCredentialsError, PermanentDispatchError
from .models import DispatchOutcome, DispatchRequest
from .templates import render_sms


class TwilioSmsAdapter(BaseChannelAdapter):
    """Twilio Messages API 适配器"""

    action_type = ActionType.SMS
    is_async = False
    vendor = "twilio"

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        creds = request.credentials
        if not creds.twilio_account_sid:
            raise MissingCredentialsError(self.vendor, "twilio_account_sid")
        if creds.twilio_auth_token is None or not creds.twilio_auth_token.get_secret_value():
            raise MissingCredentialsError(self.vendor, "twilio_auth_token")
        if not creds.twilio_phone_number:
            raise MissingCredentialsError(self.vendor, "twilio_phone_number")
        phone = normalize_phone(request.lead.phone)
        if phone is None:
            raise MissingContactInfoError(ActionType.SMS.value, "phone")

        text = render_sms(request.task, request.lead)
        form = {
            "To": phone,
            "From": creds.twilio_phone_number,
            "Body": text,
        }
        # Twilio 不支持自定义 metadata，关联信息放在状态回调的 query string 中
        if request.webhook_url:
            form["StatusCallback"] = (
                f"{request.webhook_url}?{urlencode(request.correlation_metadata())}"
            )

        data = await self._request(
            "POST",
            f"{self._config.twilio_base_url}/Accounts/{creds.twilio_account_sid}/Messages.json",
            data=form,
            auth=(creds.twilio_account_sid, creds.twilio_auth_token.get_secret_value()),
            headers={"I-Twilio-Idempotency-Token": request.idempotency_key},
        )
        sid = data.get("sid")
        if not sid:
            raise PermanentDispatchError("twilio response has no message sid")
        try:
            segments = max(int(data.get("num_segments") or 1), 1)
        except (TypeError, ValueError):
            segments = 1

        return DispatchOutcome(
            is_async=False,
            vendor=self.vendor,
            external_ref=str(sid),
            recipient=phone,
            body=text,
            status=str(data.get("status") or "queued"),
            service=CostService.TWILIO_SMS,
            usage_quantity=float(segments),
            usage_unit="messages",
        )
