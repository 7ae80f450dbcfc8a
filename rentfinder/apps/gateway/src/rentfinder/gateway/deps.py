"""依赖注入模块 -- 通过 FastAPI Depends 注入 Store 与服务实例

实例通过 app.state 管理，在 lifespan（或测试中的 build_services）中初始化/清理。
"""

from fastapi import Request
from rentfinder.channels import ChannelConfig
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.store import StoreGroup

from .services.dispatcher import Dispatcher
from .services.override_service import HumanOverrideController
from .services.reconciler import Reconciler
from .services.webhook_service import WebhookCompletionHandler


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_channel_config(request: Request) -> ChannelConfig:
    return request.app.state.channel_config


def get_compliance_gate(request: Request) -> ComplianceGate:
    return request.app.state.compliance_gate


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def get_webhook_handler(request: Request) -> WebhookCompletionHandler:
    return request.app.state.webhook_handler


def get_override_controller(request: Request) -> HumanOverrideController:
    return request.app.state.override_controller
