"""HTTP 路由测试

通过 httpx ASGITransport 直接调用 FastAPI app，服务实例由 build_services 手动组装。
调度接口使用真实当前时间，因此走合规时段豁免的事务类任务。
"""

from datetime import timedelta

from pydantic import SecretStr
from rentfinder.channels import ChannelConfig
from rentfinder.core.models import ActionType, AgentType, ExternalReference, TaskStatus

_SHOWING_CONTEXT = {"showing_id": "s-1", "property_id": "p-1"}


def _task_body(**overrides) -> dict:
    body = {
        "organization_id": "org-001",
        "lead_id": "lead-001",
        "agent_type": "showing_confirmation",
        "action_type": "sms",
        "context": _SHOWING_CONTEXT,
    }
    body.update(overrides)
    return body


class TestHealthRoutes:
    """健康检查"""

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ready"
        assert data["checks"]["sqlite"] == "ok"
        assert data["checks"]["channels"] == ["call", "email", "sms"]
        assert data["checks"]["dispatch_mode"] == "live"


class TestTaskRoutes:
    """任务接口"""

    async def test_create_and_fetch(self, client, seed_lead):
        await seed_lead()

        resp = await client.post("/api/tasks", json=_task_body())
        assert resp.status_code == 201
        created = resp.json()
        assert created["status"] == "pending"
        assert created["created"] is True

        detail = await client.get(f"/api/tasks/{created['task_id']}")
        assert detail.status_code == 200
        assert detail.json()["task"]["context"]["showing_id"] == "s-1"
        assert detail.json()["activities"][0]["type"] == "TASK_CREATED"

    async def test_idempotent_create(self, client, seed_lead):
        await seed_lead()
        body = _task_body(idempotency_key="showing:s-1:sms")

        first = await client.post("/api/tasks", json=body)
        second = await client.post("/api/tasks", json=body)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["task_id"] == first.json()["task_id"]
        assert second.json()["created"] is False

    async def test_invalid_context(self, client, seed_lead):
        await seed_lead()
        resp = await client.post("/api/tasks", json=_task_body(context={"property_id": "p-1"}))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_CONTEXT"

    async def test_invalid_body(self, client):
        resp = await client.post("/api/tasks", json=_task_body(action_type="fax"))
        assert resp.status_code == 422

    async def test_lead_not_found(self, client):
        resp = await client.post("/api/tasks", json=_task_body())
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "LEAD_NOT_FOUND"

    async def test_wrong_organization(self, client, seed_lead):
        await seed_lead()
        resp = await client.post("/api/tasks", json=_task_body(organization_id="org-other"))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_REQUEST"

    async def test_invalid_policy(self, client, seed_lead, seed_raw_policy):
        await seed_lead()
        await seed_raw_policy(contact_window_start_hour=9, contact_window_end_hour=9)

        resp = await client.post("/api/tasks", json=_task_body())

        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_POLICY"

    async def test_compliance_precheck_conflict(self, client, seed_lead):
        await seed_lead(do_not_contact=True)
        resp = await client.post("/api/tasks", json=_task_body(compliance_precheck=True))
        assert resp.status_code == 409
        assert resp.json()["error"] == {"code": "COMPLIANCE_DENIED", "message": "do not contact"}

    async def test_task_not_found(self, client):
        resp = await client.get("/api/tasks/nonexistent")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "TASK_NOT_FOUND"

    async def test_list_filters(self, client, seed_lead, seed_task):
        await seed_lead()
        await seed_lead(lead_id="lead-002")
        await seed_task()
        failed = await seed_task(
            lead_id="lead-002",
            status=TaskStatus.FAILED,
            failure_reason="twilio credentials not configured (twilio_auth_token)",
            failure_scope="integration",
        )

        resp = await client.get("/api/tasks", params={"failure_scope": "integration"})
        assert resp.status_code == 200
        tasks = resp.json()["tasks"]
        assert [t["task_id"] for t in tasks] == [failed.task_id]

        resp = await client.get("/api/tasks", params={"lead_id": "lead-001"})
        assert len(resp.json()["tasks"]) == 1

        resp = await client.get("/api/tasks", params={"status": "bogus"})
        assert resp.status_code == 422


class TestDispatchRoutes:
    """调度触发接口"""

    async def test_run_cycle(self, client, seed_lead, seed_task):
        await seed_lead()
        task = await seed_task(agent_type=AgentType.SHOWING_CONFIRMATION)

        resp = await client.post("/api/dispatch/run")

        assert resp.status_code == 200
        data = resp.json()
        assert data["claimed"] == 1
        assert data["completed"] == 1
        assert data["outcomes"] == {task.task_id: "completed"}

    async def test_sweep(self, client, seed_lead, seed_task, now):
        await seed_lead()
        await seed_task(
            status=TaskStatus.CLAIMED,
            claim_token="crashed",
            claimed_at=now - timedelta(hours=1),
        )

        resp = await client.post("/api/dispatch/sweep")

        assert resp.status_code == 200
        assert resp.json()["requeued"] == 1


class TestWebhookRoutes:
    """回调接口"""

    async def _seed_call(self, store_group, seed_lead, seed_task, now):
        await seed_lead()
        task = await seed_task(
            action_type=ActionType.CALL,
            status=TaskStatus.IN_PROGRESS,
            executed_at=now,
            external_ref="call-http",
        )
        async with store_group.transaction():
            await store_group.external_ref_store.put(
                ExternalReference(
                    task_id=task.task_id, vendor="bland", vendor_call_id="call-http", created_at=now
                )
            )
        return task

    async def test_completion(self, client, store_group, seed_lead, seed_task, now):
        task = await self._seed_call(store_group, seed_lead, seed_task, now)

        resp = await client.post(
            "/api/webhooks/bland",
            json={"call_id": "call-http", "status": "completed", "duration": 45},
        )

        assert resp.status_code == 200
        assert resp.json()["task_status"] == "completed"
        assert resp.json()["cost_recorded"] is True
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.COMPLETED

    async def test_unmatched_still_200(self, client):
        resp = await client.post("/api/webhooks/bland", json={"call_id": "ghost"})
        assert resp.status_code == 200
        assert resp.json()["matched"] is False

    async def test_invalid_json_still_200(self, client):
        resp = await client.post(
            "/api/webhooks/bland",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": False, "message": "invalid json"}

    async def test_non_object_payload(self, client):
        resp = await client.post("/api/webhooks/bland", json=["call-1"])
        assert resp.json() == {"success": False, "message": "invalid payload"}

    async def test_secret_enforced(self, app, client, store_group, seed_lead, seed_task, now):
        app.state.channel_config = ChannelConfig(webhook_secret=SecretStr("s3cret"))
        task = await self._seed_call(store_group, seed_lead, seed_task, now)
        payload = {"call_id": "call-http", "status": "completed"}

        rejected = await client.post("/api/webhooks/bland", json=payload)
        assert rejected.status_code == 200
        assert rejected.json()["message"] == "ignored"
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.IN_PROGRESS

        accepted = await client.post(
            "/api/webhooks/bland", json=payload, headers={"X-Webhook-Secret": "s3cret"}
        )
        assert accepted.json()["task_status"] == "completed"

    async def test_handler_crash_still_200(self, app, client, monkeypatch):
        async def boom(payload):
            raise RuntimeError("db locked")

        monkeypatch.setattr(app.state.webhook_handler, "handle_voice_callback", boom)

        resp = await client.post("/api/webhooks/bland", json={"call_id": "c-1"})

        assert resp.status_code == 200
        assert resp.json() == {"success": False, "message": "processing failed"}


class TestLeadRoutes:
    """线索接管接口"""

    async def test_takeover_and_release(self, client, store_group, seed_lead, seed_task):
        await seed_lead()
        task = await seed_task()

        resp = await client.post(
            "/api/leads/lead-001/takeover",
            json={"reason": "tenant called the office", "actor_id": "agent-3"},
        )
        assert resp.status_code == 200
        assert resp.json()["cancelled_task_ids"] == [task.task_id]

        resp = await client.post("/api/leads/lead-001/release", json={"actor_id": "agent-3"})
        assert resp.status_code == 200
        assert resp.json() == {"lead_id": "lead-001", "is_human_controlled": False}

        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.CANCELLED

    async def test_release_without_body(self, client, seed_lead):
        await seed_lead()
        resp = await client.post("/api/leads/lead-001/release")
        assert resp.status_code == 200

    async def test_takeover_requires_reason(self, client, seed_lead):
        await seed_lead()
        resp = await client.post("/api/leads/lead-001/takeover", json={"reason": " "})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "REASON_REQUIRED"

    async def test_takeover_unknown_lead(self, client):
        resp = await client.post("/api/leads/ghost/takeover", json={"reason": "vip"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "LEAD_NOT_FOUND"

    async def test_timeline(self, client, seed_lead, seed_task):
        await seed_lead()
        await seed_task()

        resp = await client.get("/api/leads/lead-001/timeline")

        assert resp.status_code == 200
        data = resp.json()
        assert data["lead"]["lead_id"] == "lead-001"
        assert len(data["tasks"]) == 1

    async def test_timeline_unknown_lead(self, client):
        resp = await client.get("/api/leads/ghost/timeline")
        assert resp.status_code == 404


class TestComplianceRoutes:
    """合规查询接口"""

    async def test_denied(self, client, seed_lead):
        await seed_lead(do_not_contact=True)
        resp = await client.post(
            "/api/compliance/check", json={"lead_id": "lead-001", "channel": "sms"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["allowed"] is False
        assert data["rule"] == "do_not_contact"
        assert data["message_type"] == "marketing"

    async def test_agent_type_sets_message_type(self, client, seed_lead):
        await seed_lead()
        resp = await client.post(
            "/api/compliance/check",
            json={"lead_id": "lead-001", "channel": "call", "agent_type": "no_show_follow_up"},
        )
        assert resp.json()["message_type"] == "transactional"
        assert resp.json()["allowed"] is True

    async def test_unknown_lead(self, client):
        resp = await client.post(
            "/api/compliance/check", json={"lead_id": "ghost", "channel": "sms"}
        )
        assert resp.status_code == 404

    async def test_invalid_policy(self, client, seed_lead, seed_raw_policy):
        await seed_lead()
        await seed_raw_policy(contact_window_start_hour=9, contact_window_end_hour=9)

        resp = await client.post(
            "/api/compliance/check", json={"lead_id": "lead-001", "channel": "sms"}
        )

        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_POLICY"
