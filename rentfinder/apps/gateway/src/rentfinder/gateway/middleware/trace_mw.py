"""TraceMiddleware -- 从路径中提取 task_id / lead_id 绑定到日志上下文

/api/tasks/{task_id} 与 /api/leads/{lead_id}/... 的请求日志都带上对应 ID，
便于把一次人工接管或任务查询与调度日志串起来。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# 路径段 -> 绑定的日志字段
_PATH_BINDINGS = {"tasks": "task_id", "leads": "lead_id"}


class TraceMiddleware(BaseHTTPMiddleware):
    """实体级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        parts = [p for p in request.url.path.split("/") if p]
        bindings: dict[str, str] = {}
        for i, part in enumerate(parts[:-1]):
            field = _PATH_BINDINGS.get(part)
            if field is not None:
                bindings[field] = parts[i + 1]

        if bindings:
            structlog.contextvars.bind_contextvars(**bindings)

        return await call_next(request)
