"""任务路由

POST /api/tasks: 创建任务（idempotency_key 命中返回 200，新建返回 201）。
GET /api/tasks: 任务列表，支持 status / lead_id / organization_id / failure_scope 筛选。
GET /api/tasks/{task_id}: 任务详情，含活动日志、通讯记录、成本与外部引用。
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ValidationError
from rentfinder.core.exceptions import (
    ComplianceDeniedError,
    InvalidPolicyError,
    LeadNotFoundError,
)
from rentfinder.core.models import FailureScope, TaskStatus
from starlette.responses import JSONResponse

from ..deps import get_compliance_gate, get_store_group
from ..services.task_service import CreateTaskRequest, TaskService

router = APIRouter()


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    organization_id: str
    lead_id: str
    agent_type: str
    action_type: str
    status: str
    scheduled_for: str
    attempt_number: int
    max_attempts: int
    failure_reason: str | None = None
    failure_scope: str | None = None


class TaskListResponse(BaseModel):
    """任务列表响应"""

    tasks: list[TaskSummary]


class CreateTaskResponse(BaseModel):
    """任务创建响应"""

    task_id: str
    status: str
    created: bool


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


@router.post("/api/tasks", response_model=CreateTaskResponse)
async def create_task(
    body: CreateTaskRequest,
    store_group=Depends(get_store_group),
    compliance_gate=Depends(get_compliance_gate),
):
    """创建外呼任务

    - 201: 新建
    - 200: idempotency_key 已存在，返回已有任务
    - 404: 线索不存在
    - 409: 合规预检拒绝
    - 422: 上下文校验失败 / 线索不属于该组织 / 组织策略配置无效
    """
    service = TaskService(store_group, compliance_gate)
    try:
        task, created = await service.create_task(body)
    except LeadNotFoundError as e:
        return _error(404, "LEAD_NOT_FOUND", str(e))
    except ComplianceDeniedError as e:
        return _error(409, "COMPLIANCE_DENIED", str(e))
    except InvalidPolicyError as e:
        return _error(422, "INVALID_POLICY", str(e))
    except ValidationError as e:
        return _error(422, "INVALID_CONTEXT", str(e))
    except ValueError as e:
        return _error(422, "INVALID_REQUEST", str(e))

    return JSONResponse(
        status_code=201 if created else 200,
        content=CreateTaskResponse(
            task_id=task.task_id,
            status=task.status.value,
            created=created,
        ).model_dump(),
    )


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: TaskStatus | None = Query(default=None, description="按状态筛选"),
    lead_id: str | None = Query(default=None),
    organization_id: str | None = Query(default=None),
    failure_scope: FailureScope | None = Query(default=None, description="contact / integration"),
    limit: int = Query(default=200, ge=1, le=1000),
    store_group=Depends(get_store_group),
):
    """查询任务列表，按 scheduled_for 倒序"""
    service = TaskService(store_group)
    tasks = await service.list_tasks(status, lead_id, organization_id, failure_scope, limit)
    return TaskListResponse(
        tasks=[
            TaskSummary(
                task_id=t.task_id,
                organization_id=t.organization_id,
                lead_id=t.lead_id,
                agent_type=t.agent_type.value,
                action_type=t.action_type.value,
                status=t.status.value,
                scheduled_for=t.scheduled_for.isoformat(),
                attempt_number=t.attempt_number,
                max_attempts=t.max_attempts,
                failure_reason=t.failure_reason,
                failure_scope=t.failure_scope.value if t.failure_scope else None,
            )
            for t in tasks
        ]
    )


@router.get("/api/tasks/{task_id}")
async def get_task_detail(task_id: str, store_group=Depends(get_store_group)):
    """查询任务详情"""
    service = TaskService(store_group)
    detail = await service.get_task_detail(task_id)
    if detail is None:
        return _error(404, "TASK_NOT_FOUND", f"Task with id {task_id} does not exist")
    return detail
