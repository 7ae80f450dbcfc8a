"""渠道计费

单价表按服务计价，用量乘以单价得到总成本。
"""

from datetime import datetime

from ulid import ULID

from rentfinder.core.models.enums import CostService
from rentfinder.core.models.ledger import CostRecord
from rentfinder.core.models.task import Task

# 服务 -> (单价 USD, 计量单位)
UNIT_PRICES: dict[CostService, tuple[float, str]] = {
    CostService.BLAND_AI: (0.09, "minutes"),
    CostService.TWILIO_VOICE: (0.014, "minutes"),
    CostService.TWILIO_SMS: (0.0079, "messages"),
    CostService.RESEND: (0.0, "emails"),
}


def usage_unit(service: CostService) -> str:
    """服务的计量单位"""
    return UNIT_PRICES[service][1]


def price(service: CostService, quantity: float) -> tuple[float, float]:
    """计算 (单价, 总价)

    Args:
        service: 计费服务
        quantity: 用量

    Returns:
        (unit_cost, total_cost)，总价保留 6 位小数
    """
    unit_cost, _ = UNIT_PRICES[service]
    return unit_cost, round(unit_cost * quantity, 6)


def voice_minutes(duration_seconds: int) -> float:
    """通话秒数折算为计费分钟"""
    return round(duration_seconds / 60, 4)


def build_cost_record(
    task: Task,
    service: CostService,
    quantity: float,
    billable_event: str,
    recorded_at: datetime,
    communication_id: str | None = None,
) -> CostRecord:
    """构造成本记录

    Args:
        task: 产生费用的任务
        service: 计费服务
        quantity: 用量
        billable_event: 计费事件键（同一任务内唯一，保证重复投递不重复计费）
        recorded_at: 记录时间
        communication_id: 关联的通讯记录

    Returns:
        CostRecord
    """
    unit_cost, total_cost = price(service, quantity)
    return CostRecord(
        cost_id=str(ULID()),
        organization_id=task.organization_id,
        service=service,
        usage_quantity=quantity,
        usage_unit=usage_unit(service),
        unit_cost=unit_cost,
        total_cost=total_cost,
        task_id=task.task_id,
        lead_id=task.lead_id,
        communication_id=communication_id,
        billable_event=billable_event,
        recorded_at=recorded_at,
    )
