"""端到端集成测试

真实服务组装 + 真实渠道适配器（供应商 HTTP 由 sandbox 应答）：
1. 语音：创建 -> 调度 -> in_progress -> 完成回调 -> 计费
2. 语音未接通 -> failed + 自动跟进；重复回调不重复记账
3. 短信：创建 -> 调度 -> completed + 计费
4. 人工接管 -> 调度跳过
调度接口使用真实当前时间，因此只用联系时段豁免的事务类任务。
"""

from rentfinder.core.models import CostService


async def _create_task(client, **overrides) -> str:
    body = {
        "organization_id": "org-001",
        "lead_id": "lead-001",
        "agent_type": "no_show_follow_up",
        "action_type": "call",
        "context": {"showing_id": "s-1", "property_id": "p-1", "property_address": "12 Elm St"},
    }
    body.update(overrides)
    resp = await client.post("/api/tasks", json=body)
    assert resp.status_code == 201
    return resp.json()["task_id"]


class TestVoiceLifecycle:
    """语音外呼全链路"""

    async def test_call_completes_via_webhook(self, client, sandbox, store_group, seed_lead):
        await seed_lead()
        task_id = await _create_task(client)

        run = await client.post("/api/dispatch/run")
        assert run.json()["in_progress"] == 1

        [call] = sandbox.bodies_for("bland.test")
        assert call["phone_number"] == "+15550100001"
        assert call["webhook"] == "https://gateway.example.com/api/webhooks/bland"
        assert call["metadata"]["task_id"] == task_id
        assert "12 Elm St" in call["task"]

        detail = (await client.get(f"/api/tasks/{task_id}")).json()
        assert detail["task"]["status"] == "in_progress"
        assert detail["costs"] == []
        call_id = detail["task"]["external_ref"]

        hook = await client.post(
            "/api/webhooks/bland",
            json={
                "call_id": call_id,
                "status": "completed",
                "call_length": 2.5,
                "concatenated_transcript": "agent: Can we reschedule?",
                "metadata": call["metadata"],
            },
        )
        assert hook.status_code == 200
        assert hook.json()["cost_recorded"] is True

        detail = (await client.get(f"/api/tasks/{task_id}")).json()
        assert detail["task"]["status"] == "completed"
        assert detail["costs"][0]["service"] == CostService.BLAND_AI
        assert detail["costs"][0]["total_cost"] == 0.225
        assert detail["communications"][0]["duration_seconds"] == 150

        total = await store_group.cost_ledger.total_for_organization("org-001")
        assert total == 0.225

    async def test_no_answer_schedules_follow_up(self, client, sandbox, seed_lead):
        await seed_lead()
        task_id = await _create_task(client)
        await client.post("/api/dispatch/run")
        call_id = (await client.get(f"/api/tasks/{task_id}")).json()["task"]["external_ref"]
        payload = {"call_id": call_id, "status": "no-answer"}

        first = await client.post("/api/webhooks/bland", json=payload)
        second = await client.post("/api/webhooks/bland", json=payload)

        follow_up_id = first.json()["follow_up_task_id"]
        assert follow_up_id is not None
        assert second.json()["duplicate"] is True

        detail = (await client.get(f"/api/tasks/{task_id}")).json()
        assert detail["task"]["status"] == "failed"
        assert detail["task"]["failure_reason"] == "call no_answer"
        assert len(detail["communications"]) == 1

        follow_up = (await client.get(f"/api/tasks/{follow_up_id}")).json()["task"]
        assert follow_up["status"] == "pending"
        assert follow_up["attempt_number"] == 2

        # 跟进任务明天才到期，本周期不会再外呼
        await client.post("/api/dispatch/run")
        assert len(sandbox.bodies_for("bland.test")) == 1

        timeline = (await client.get("/api/leads/lead-001/timeline")).json()
        assert {t["task_id"] for t in timeline["tasks"]} == {task_id, follow_up_id}


class TestMessaging:
    """同步渠道"""

    async def test_sms_completes_with_cost(self, client, sandbox, seed_lead):
        await seed_lead()
        task_id = await _create_task(
            client,
            agent_type="showing_confirmation",
            action_type="sms",
            context={"showing_id": "s-1", "property_id": "p-1"},
        )

        run = await client.post("/api/dispatch/run")
        assert run.json()["completed"] == 1

        [sms] = sandbox.bodies_for("twilio.test")
        assert sms["To"] == "+15550100001"
        assert sms["From"] == "+15550009999"

        detail = (await client.get(f"/api/tasks/{task_id}")).json()
        assert detail["task"]["status"] == "completed"
        assert detail["costs"][0]["service"] == CostService.TWILIO_SMS
        assert detail["costs"][0]["billable_event"] == f"sms:{detail['task']['external_ref']}"

    async def test_email_completes(self, client, sandbox, seed_lead):
        await seed_lead()
        task_id = await _create_task(
            client,
            agent_type="post_showing",
            action_type="email",
            context={"showing_id": "s-1", "property_id": "p-1"},
        )

        await client.post("/api/dispatch/run")

        [email] = sandbox.bodies_for("resend.test")
        assert email["to"] == ["jamie@example.com"]
        detail = (await client.get(f"/api/tasks/{task_id}")).json()
        assert detail["task"]["status"] == "completed"


class TestTakeover:
    """人工接管"""

    async def test_takeover_blocks_dispatch(self, client, sandbox, seed_lead):
        await seed_lead()
        task_id = await _create_task(client)

        resp = await client.post(
            "/api/leads/lead-001/takeover", json={"reason": "tenant is upset", "actor_id": "pm-1"}
        )
        assert resp.json()["cancelled_task_ids"] == [task_id]

        run = await client.post("/api/dispatch/run")
        assert run.json()["claimed"] == 0
        assert sandbox.requests == []
