"""枚举定义

包含 TaskStatus 状态机、智能体/动作/消息类型、失败分类、活动日志类型等枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """外呼任务状态机"""

    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"

    # 终态
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 合法状态流转
# claimed -> pending 仅用于瞬时失败重试与崩溃遗留回收
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.CLAIMED, TaskStatus.CANCELLED},
    TaskStatus.CLAIMED: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.PENDING,
        TaskStatus.CANCELLED,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

# 人工接管时可被取消的状态（in_progress 已有外部副作用，不可取消）
CANCELLABLE_ON_TAKEOVER: set[TaskStatus] = {TaskStatus.PENDING, TaskStatus.CLAIMED}


class AgentType(StrEnum):
    """拥有该任务的自动化智能体"""

    RECAPTURE = "recapture"
    NO_SHOW_FOLLOW_UP = "no_show_follow_up"
    SHOWING_CONFIRMATION = "showing_confirmation"
    POST_SHOWING = "post_showing"
    CAMPAIGN = "campaign"
    WELCOME_SEQUENCE = "welcome_sequence"


class ActionType(StrEnum):
    """外呼渠道"""

    CALL = "call"
    SMS = "sms"
    EMAIL = "email"


class MessageType(StrEnum):
    """消息性质：营销类受联系时段约束，事务类豁免"""

    MARKETING = "marketing"
    TRANSACTIONAL = "transactional"


# 与具体看房/预约直接相关的智能体发送事务类消息
TRANSACTIONAL_AGENT_TYPES: set[AgentType] = {
    AgentType.SHOWING_CONFIRMATION,
    AgentType.NO_SHOW_FOLLOW_UP,
    AgentType.POST_SHOWING,
}


def message_type_for(agent_type: AgentType) -> MessageType:
    """由智能体类型推导消息性质"""
    if agent_type in TRANSACTIONAL_AGENT_TYPES:
        return MessageType.TRANSACTIONAL
    return MessageType.MARKETING


class FailureKind(StrEnum):
    """任务失败分类"""

    COMPLIANCE = "compliance"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"


class FailureScope(StrEnum):
    """失败影响范围：单个联系人 vs 整个集成（如凭证缺失）"""

    CONTACT = "contact"
    INTEGRATION = "integration"


class BackoffStrategy(StrEnum):
    """瞬时失败重试退避策略"""

    LINEAR = "linear"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class CostService(StrEnum):
    """计费服务"""

    BLAND_AI = "bland_ai"
    TWILIO_VOICE = "twilio_voice"
    TWILIO_SMS = "twilio_sms"
    RESEND = "resend"


class ActivityType(StrEnum):
    """活动日志类型"""

    TASK_CREATED = "TASK_CREATED"
    TASK_CLAIMED = "TASK_CLAIMED"
    COMPLIANCE_DENIED = "COMPLIANCE_DENIED"
    DISPATCH_ACCEPTED = "DISPATCH_ACCEPTED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    TASK_CANCELLED = "TASK_CANCELLED"
    TASK_REQUEUED = "TASK_REQUEUED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"
    WEBHOOK_DUPLICATE = "WEBHOOK_DUPLICATE"
    WEBHOOK_UNMATCHED = "WEBHOOK_UNMATCHED"
    LEAD_PAUSED = "LEAD_PAUSED"
    LEAD_RESUMED = "LEAD_RESUMED"
    FOLLOW_UP_SCHEDULED = "FOLLOW_UP_SCHEDULED"
    BATCH_COMPLETED = "BATCH_COMPLETED"


class ActorType(StrEnum):
    """操作者类型"""

    SYSTEM = "system"
    SCHEDULER = "scheduler"
    WEBHOOK = "webhook"
    OPERATOR = "operator"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
