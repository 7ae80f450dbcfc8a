"""ResendEmailAdapter -- Resend 邮件（纯文本）"""

from rentfinder.core.models.enums import ActionType, CostService

from .base import BaseChannelAdapter
from .contact import normalize_email
from .exceptions import MissingContactInfoError, MissingCredentialsError, PermanentDispatchError
from .models import DispatchOutcome, DispatchRequest
from .templates import render_email


class ResendEmailAdapter(BaseChannelAdapter):
    """Resend Emails API 适配器"""

    action_type = ActionType.EMAIL
    is_async = False
    vendor = "resend"

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        creds = request.credentials
        if creds.resend_api_key is None or not creds.resend_api_key.get_secret_value():
            raise MissingCredentialsError(self.vendor, "resend_api_key")
        if not creds.resend_from_email:
            raise MissingCredentialsError(self.vendor, "resend_from_email")
        email = normalize_email(request.lead.email)
        if email is None:
            raise MissingContactInfoError(ActionType.EMAIL.value, "email")

        subject, text = render_email(request.task, request.lead)
        data = await self._request(
            "POST",
            f"{self._config.resend_base_url}/emails",
            json={
                "from": creds.resend_from_email,
                "to": [email],
                "subject": subject,
                "text": text,
                "tags": [
                    {"name": name, "value": value}
                    for name, value in request.correlation_metadata().items()
                ],
            },
            headers={
                "Authorization": f"Bearer {creds.resend_api_key.get_secret_value()}",
                "Idempotency-Key": request.idempotency_key,
            },
        )
        email_id = data.get("id")
        if not email_id:
            raise PermanentDispatchError("resend response has no email id")

        return DispatchOutcome(
            is_async=False,
            vendor=self.vendor,
            external_ref=str(email_id),
            recipient=email,
            body=text,
            status="sent",
            service=CostService.RESEND,
            usage_quantity=1.0,
            usage_unit="emails",
        )
