"""CLI 入口模块 -- python -m rentfinder.gateway <command>

支持的命令：
  run-dispatch-cycle  执行一个调度周期（供 cron 调用）
  sweep               执行一次卡单回收
  serve               启动 HTTP gateway
"""

import argparse
import asyncio
import json
import sys

import httpx
from rentfinder.channels import build_adapter_registry, load_channel_config
from rentfinder.core.compliance import ComplianceGate
from rentfinder.core.config import get_db_path
from rentfinder.core.store import create_store_group

from .middleware.logging_config import setup_logging
from .services.dispatcher import Dispatcher
from .services.followups import FollowUpPlanner
from .services.reconciler import Reconciler
from .services.webhook_service import WebhookCompletionHandler


async def _run(command: str) -> dict:
    """组装组件并执行一次调度或回收，返回汇总"""
    store_group = await create_store_group(get_db_path())
    channel_config = load_channel_config()
    async with httpx.AsyncClient(timeout=channel_config.http_timeout_s) as http_client:
        try:
            registry = build_adapter_registry(channel_config, http_client)
            if command == "run-dispatch-cycle":
                gate = ComplianceGate(
                    store_group.task_store,
                    store_group.lead_store,
                    store_group.policy_store,
                )
                dispatcher = Dispatcher(store_group, registry, gate, channel_config)
                report = await dispatcher.run_dispatch_cycle()
            else:
                handler = WebhookCompletionHandler(store_group, FollowUpPlanner(store_group))
                reconciler = Reconciler(store_group, registry, handler, channel_config)
                report = await reconciler.sweep()
            return report.model_dump(mode="json")
        finally:
            await store_group.conn.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rentfinder-gateway")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run-dispatch-cycle", help="执行一个调度周期")
    sub.add_parser("sweep", help="执行一次卡单回收")
    serve = sub.add_parser("serve", help="启动 HTTP gateway")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI 主入口"""
    args = _build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("rentfinder.gateway.main:app", host=args.host, port=args.port)
        return

    setup_logging()
    summary = asyncio.run(_run(args.command))
    json.dump(summary, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
