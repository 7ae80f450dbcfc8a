"""渠道回调路由

POST /api/webhooks/bland: Bland.ai 通话完成回调。
无论处理结果如何都返回 200，内部异常只记日志，不暴露给渠道。
配置了 RENTFINDER_WEBHOOK_SECRET 时校验 X-Webhook-Secret，不匹配的请求记录后丢弃。
"""

import hmac

import structlog
from fastapi import APIRouter, Depends, Request
from rentfinder.channels import ChannelConfig

from ..deps import get_channel_config, get_webhook_handler
from ..services.webhook_service import WebhookCompletionHandler

log = structlog.get_logger()

router = APIRouter()


def _secret_matches(config: ChannelConfig, provided: str | None) -> bool:
    if config.webhook_secret is None:
        return True
    expected = config.webhook_secret.get_secret_value()
    return provided is not None and hmac.compare_digest(provided, expected)


@router.post("/api/webhooks/bland")
async def bland_webhook(
    request: Request,
    handler: WebhookCompletionHandler = Depends(get_webhook_handler),
    config: ChannelConfig = Depends(get_channel_config),
):
    """接收语音外呼完成回调"""
    if not _secret_matches(config, request.headers.get("X-Webhook-Secret")):
        await log.awarning("webhook_secret_mismatch", vendor="bland")
        return {"success": False, "message": "ignored"}

    try:
        payload = await request.json()
    except ValueError:
        await log.awarning("webhook_invalid_json", vendor="bland")
        return {"success": False, "message": "invalid json"}
    if not isinstance(payload, dict):
        await log.awarning("webhook_invalid_payload", vendor="bland")
        return {"success": False, "message": "invalid payload"}

    try:
        result = await handler.handle_voice_callback(payload)
    except Exception:
        log.exception("webhook_processing_failed", vendor="bland")
        return {"success": False, "message": "processing failed"}
    return result.model_dump(mode="json")
