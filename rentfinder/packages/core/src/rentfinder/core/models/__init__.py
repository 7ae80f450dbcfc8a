"""RentFinder Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .activity import Activity, new_activity
from .compliance import ComplianceDecision, ComplianceRule
from .context import (
    CampaignContext,
    NoShowFollowUpContext,
    PostShowingContext,
    RecaptureContext,
    ShowingConfirmationContext,
    TaskContext,
    WelcomeSequenceContext,
    context_from_json,
    parse_context,
)
from .enums import (
    CANCELLABLE_ON_TAKEOVER,
    TERMINAL_STATES,
    TRANSACTIONAL_AGENT_TYPES,
    VALID_TRANSITIONS,
    ActionType,
    ActivityType,
    ActorType,
    AgentType,
    BackoffStrategy,
    CostService,
    FailureKind,
    FailureScope,
    MessageType,
    TaskStatus,
    message_type_for,
    validate_transition,
)
from .lead import ChannelConsent, ContactWindow, Lead
from .ledger import Communication, CostRecord, ExternalReference
from .payloads import (
    BatchCompletedPayload,
    CallCompletedPayload,
    ComplianceDeniedPayload,
    DispatchAcceptedPayload,
    DispatchFailedPayload,
    FollowUpScheduledPayload,
    LeadControlPayload,
    RetryScheduledPayload,
    StateTransitionPayload,
    TaskCreatedPayload,
    WebhookUnmatchedPayload,
)
from .policy import OrganizationCredentials, OrganizationPolicy
from .task import Task

__all__ = [
    # 枚举
    "TaskStatus",
    "AgentType",
    "ActionType",
    "MessageType",
    "FailureKind",
    "FailureScope",
    "BackoffStrategy",
    "CostService",
    "ActivityType",
    "ActorType",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "CANCELLABLE_ON_TAKEOVER",
    "TRANSACTIONAL_AGENT_TYPES",
    "validate_transition",
    "message_type_for",
    # Task
    "Task",
    "TaskContext",
    "ShowingConfirmationContext",
    "NoShowFollowUpContext",
    "PostShowingContext",
    "RecaptureContext",
    "CampaignContext",
    "WelcomeSequenceContext",
    "parse_context",
    "context_from_json",
    # Lead / 策略
    "Lead",
    "ChannelConsent",
    "ContactWindow",
    "OrganizationPolicy",
    "OrganizationCredentials",
    # 合规
    "ComplianceDecision",
    "ComplianceRule",
    # 账本
    "CostRecord",
    "Communication",
    "ExternalReference",
    # Activity
    "Activity",
    "new_activity",
    # Payloads
    "TaskCreatedPayload",
    "ComplianceDeniedPayload",
    "DispatchAcceptedPayload",
    "DispatchFailedPayload",
    "RetryScheduledPayload",
    "StateTransitionPayload",
    "CallCompletedPayload",
    "WebhookUnmatchedPayload",
    "LeadControlPayload",
    "FollowUpScheduledPayload",
    "BatchCompletedPayload",
]
