"""线索人工接管路由

POST /api/leads/{lead_id}/takeover: 人工接管（原因必填），取消 pending/claimed 任务。
POST /api/leads/{lead_id}/release: 解除接管，不恢复已取消的任务。
GET /api/leads/{lead_id}/timeline: 线索时间线（任务 + 活动日志 + 通讯记录）。
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from rentfinder.core.exceptions import LeadNotFoundError
from starlette.responses import JSONResponse

from ..deps import get_override_controller, get_store_group
from ..services.override_service import HumanOverrideController
from ..services.task_service import TaskService

router = APIRouter()


class TakeoverRequest(BaseModel):
    """人工接管请求体"""

    reason: str = Field(description="接管原因（必填）")
    actor_id: str = Field(default="operator", description="操作人 ID")


class ReleaseRequest(BaseModel):
    """解除接管请求体"""

    actor_id: str = Field(default="operator", description="操作人 ID")


def _lead_not_found(lead_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": {
                "code": "LEAD_NOT_FOUND",
                "message": f"Lead with id {lead_id} does not exist",
            }
        },
    )


@router.post("/api/leads/{lead_id}/takeover")
async def takeover_lead(
    lead_id: str,
    body: TakeoverRequest,
    controller: HumanOverrideController = Depends(get_override_controller),
):
    """人工接管线索

    - 200: 接管成功，返回被取消的 task_id 列表
    - 404: 线索不存在
    - 422: 原因为空
    """
    try:
        result = await controller.pause_lead(lead_id, body.reason, body.actor_id)
    except ValueError as e:
        return JSONResponse(
            status_code=422,
            content={"error": {"code": "REASON_REQUIRED", "message": str(e)}},
        )
    except LeadNotFoundError:
        return _lead_not_found(lead_id)
    return result.model_dump(mode="json")


@router.post("/api/leads/{lead_id}/release")
async def release_lead(
    lead_id: str,
    body: ReleaseRequest | None = None,
    controller: HumanOverrideController = Depends(get_override_controller),
):
    """解除人工接管"""
    actor_id = body.actor_id if body is not None else "operator"
    try:
        lead = await controller.resume_lead(lead_id, actor_id)
    except LeadNotFoundError:
        return _lead_not_found(lead_id)
    return {"lead_id": lead.lead_id, "is_human_controlled": lead.is_human_controlled}


@router.get("/api/leads/{lead_id}/timeline")
async def lead_timeline(lead_id: str, store_group=Depends(get_store_group)):
    """线索时间线"""
    service = TaskService(store_group)
    try:
        return await service.lead_timeline(lead_id)
    except LeadNotFoundError:
        return _lead_not_found(lead_id)
