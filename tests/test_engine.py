"""
执行引擎测试
"""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from workflow_automation.core import RUN_EVENTS_TOPIC
from workflow_automation.exceptions import (
    TransientDeliveryError, PermanentDeliveryError, StateTransitionError, RunNotFoundError
)
from workflow_automation.models.run import RunStatus, StepOutcome
from workflow_automation.models.workflow import ObjectType


def webhook_workflow(retry_policy=None):
    hook = {
        "step_key": "notify_zapier",
        "step_type": "webhook",
        "step_config": {"webhook_url": "https://hooks.example.com/lead", "webhook_body": {"id": "1"}},
        "next_step_key": "done"
    }
    if retry_policy:
        hook["retry_policy"] = retry_policy
    return {
        "workflow": {
            "name": "Push leads to Zapier",
            "object_type": "lead",
            "trigger_type": "record_create",
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "notify_zapier"},
                hook,
                {"step_key": "done", "step_type": "end"}
            ]
        }
    }


def entries_for(run, step_key):
    return [h for h in run.history if h.step_key == step_key]


class TestLinearExecution:
    """线性步骤执行"""

    async def test_email_workflow_completes(
        self, install_workflow, dispatcher, lead_event, collaborators, simple_email_workflow
    ):
        await install_workflow(simple_email_workflow)
        event = await lead_event({"first_name": "Ana", "last_name": "Lopez", "email": "ana@example.com"})

        runs = await dispatcher.handle_event(event)

        assert len(runs) == 1
        run = runs[0]
        assert run.status == RunStatus.COMPLETED
        assert run.completed_at is not None
        assert [h.step_key for h in run.history] == ["start", "welcome", "done"]
        sent = collaborators.notifications.sent
        assert len(sent) == 1
        assert sent[0].subject == "Welcome, Ana"
        assert sent[0].body == "Hi Ana Lopez, this is Maya Rivers."

    async def test_run_is_persisted(self, install_workflow, dispatcher, engine, lead_event, simple_email_workflow):
        await install_workflow(simple_email_workflow)
        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        stored = await engine.get_run(runs[0].id)

        assert stored.status == RunStatus.COMPLETED
        assert len(stored.history) == 3

    async def test_run_events_are_published(
        self, install_workflow, dispatcher, event_bus, lead_event, simple_email_workflow
    ):
        received = []

        async def collect(event):
            received.append(event.payload.event_type)

        await event_bus.subscribe(RUN_EVENTS_TOPIC, collect)
        await install_workflow(simple_email_workflow)
        await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        assert received[0] == "run_started"
        assert "step_completed" in received
        assert received[-1] == "run_completed"

    async def test_step_budget_fails_run(self, install_workflow, dispatcher, lead_event, settings):
        settings.max_steps_per_invocation = 2
        steps = [{"step_key": "start", "step_type": "trigger", "next_step_key": "s1"}]
        for i in range(1, 4):
            steps.append({
                "step_key": f"s{i}",
                "step_type": "update_field",
                "step_config": {"field": "lifecycle_stage", "value": f"stage-{i}"},
                "next_step_key": f"s{i + 1}" if i < 3 else "done"
            })
        steps.append({"step_key": "done", "step_type": "end"})
        await install_workflow({"name": "Long chain", "object_type": "lead", "steps": steps})

        runs = await dispatcher.handle_event(await lead_event({"status": "new"}))

        assert runs[0].status == RunStatus.FAILED
        assert "exceeded 2 steps" in runs[0].error_message


class TestRetryBehaviour:
    """重试与失败"""

    async def test_webhook_failing_every_attempt(
        self, install_workflow, dispatcher, lead_event, collaborators, sleeps
    ):
        collaborators.webhooks.call = AsyncMock(side_effect=TransientDeliveryError("503 from hook"))
        await install_workflow(webhook_workflow())

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        run = runs[0]
        assert run.status == RunStatus.FAILED
        entries = entries_for(run, "notify_zapier")
        assert len(entries) == 3
        assert [e.outcome for e in entries] == [
            StepOutcome.RETRYING, StepOutcome.RETRYING, StepOutcome.FAILED
        ]
        assert [e.attempt for e in entries] == [1, 2, 3]
        assert collaborators.webhooks.call.await_count == 3
        assert "after 3 attempts" in run.error_message
        # 指数退避：0.5s, 1.0s
        assert sleeps == [0.5, 1.0]

    async def test_transient_failure_then_success(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        collaborators.webhooks.call = AsyncMock(
            side_effect=[TransientDeliveryError("timeout"), {"status_code": 200}]
        )
        await install_workflow(webhook_workflow())

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        run = runs[0]
        assert run.status == RunStatus.COMPLETED
        entries = entries_for(run, "notify_zapier")
        assert [e.outcome for e in entries] == [StepOutcome.RETRYING, StepOutcome.COMPLETED]
        assert entries[1].attempt == 2

    async def test_step_retry_policy_overrides_default(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        collaborators.webhooks.call = AsyncMock(side_effect=TransientDeliveryError("503"))
        await install_workflow(webhook_workflow({"max_attempts": 1}))

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        entries = entries_for(runs[0], "notify_zapier")
        assert len(entries) == 1
        assert runs[0].error_message == "503"

    async def test_permanent_failure_is_not_retried(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        collaborators.webhooks.call = AsyncMock(side_effect=PermanentDeliveryError("404 from hook"))
        await install_workflow(webhook_workflow())

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        assert runs[0].status == RunStatus.FAILED
        assert len(entries_for(runs[0], "notify_zapier")) == 1
        assert collaborators.webhooks.call.await_count == 1

    async def test_unexpected_error_fails_run(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        collaborators.webhooks.call = AsyncMock(side_effect=RuntimeError("boom"))
        await install_workflow(webhook_workflow())

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        run = runs[0]
        assert run.status == RunStatus.FAILED
        assert run.error_message == "boom"
        assert entries_for(run, "notify_zapier")[0].error["type"] == "RuntimeError"

    async def test_custom_email_without_address_fails_before_sending(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        await install_workflow({
            "name": "Broken alert",
            "object_type": "lead",
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "alert"},
                {
                    "step_key": "alert",
                    "step_type": "send_email",
                    "step_config": {"template_name": "Alert", "to_type": "custom"},
                    "next_step_key": "done"
                },
                {"step_key": "done", "step_type": "end"}
            ]
        }, validate=False)

        runs = await dispatcher.handle_event(await lead_event({"email": "ana@example.com"}))

        run = runs[0]
        assert run.status == RunStatus.FAILED
        failed = entries_for(run, "alert")
        assert len(failed) == 1
        assert failed[0].error["type"] == "ConfigurationError"
        assert collaborators.notifications.sent == []


class TestDecisions:
    """分支使用最新记录"""

    async def test_decision_reads_live_record(
        self, install_workflow, dispatcher, lead_event, collaborators
    ):
        await install_workflow({
            "name": "Promote to client",
            "object_type": "lead",
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "promote"},
                {
                    "step_key": "promote",
                    "step_type": "update_field",
                    "step_config": {"field": "status", "value": "client"},
                    "next_step_key": "is_client"
                },
                {
                    "step_key": "is_client",
                    "step_type": "decision",
                    "step_config": {"condition_field": "status", "condition_value": "client"},
                    "branches": {"true": "onboard", "false": "done"}
                },
                {
                    "step_key": "onboard",
                    "step_type": "create_task",
                    "step_config": {"title": "Send contract", "action_type": "send_contract"},
                    "next_step_key": "done"
                },
                {"step_key": "done", "step_type": "end"}
            ]
        })

        event = await lead_event({"status": "qualified"})
        runs = await dispatcher.handle_event(event)

        run = runs[0]
        assert run.status == RunStatus.COMPLETED
        assert run.record_snapshot["status"] == "qualified"
        decision = entries_for(run, "is_client")[0]
        assert decision.outcome == StepOutcome.BRANCHED
        assert decision.output["result"] is True
        assert [h.step_key for h in run.history] == ["start", "promote", "is_client", "onboard", "done"]
        assert len(collaborators.tasks.tasks) == 1

    async def test_missing_decision_field_takes_false_branch(
        self, install_workflow, dispatcher, lead_event
    ):
        await install_workflow({
            "name": "Check due date",
            "object_type": "lead",
            "steps": [
                {"step_key": "start", "step_type": "trigger", "next_step_key": "has_date"},
                {
                    "step_key": "has_date",
                    "step_type": "decision",
                    "step_config": {
                        "condition_field": "expected_due_date",
                        "condition_operator": "greater_than",
                        "condition_value": "2026-01-01"
                    },
                    "branches": {"true": "done", "false": "ask"}
                },
                {
                    "step_key": "ask",
                    "step_type": "create_task",
                    "step_config": {"title": "Ask for due date", "action_type": "call"},
                    "next_step_key": "done"
                },
                {"step_key": "done", "step_type": "end"}
            ]
        })

        runs = await dispatcher.handle_event(await lead_event({"first_name": "Ana"}))

        run = runs[0]
        assert run.status == RunStatus.COMPLETED
        assert "ask" in [h.step_key for h in run.history]
        assert "evaluation_error" in entries_for(run, "has_date")[0].output


class TestWaitAndCancel:
    """等待与取消"""

    async def test_wait_suspends_run(
        self, install_workflow, dispatcher, lead_event, clock, follow_up_workflow
    ):
        await install_workflow(follow_up_workflow)

        runs = await dispatcher.handle_event(await lead_event({"status": "qualified", "email": "a@b.com"}))

        run = runs[0]
        assert run.status == RunStatus.WAITING
        assert run.current_step_key == "pause"
        assert run.wait_until == clock() + timedelta(days=3)
        assert entries_for(run, "pause")[0].outcome == StepOutcome.WAITING

    async def test_resume_before_due_does_nothing(
        self, install_workflow, dispatcher, engine, lead_event, clock, follow_up_workflow
    ):
        await install_workflow(follow_up_workflow)
        runs = await dispatcher.handle_event(await lead_event({"status": "qualified", "email": "a@b.com"}))

        assert await engine.resume_run(runs[0].id, clock() + timedelta(days=2)) is None
        assert (await engine.get_run(runs[0].id)).status == RunStatus.WAITING

    async def test_resume_continues_after_wait_step(
        self, install_workflow, dispatcher, engine, lead_event, clock, collaborators, follow_up_workflow
    ):
        await install_workflow(follow_up_workflow)
        event = await lead_event({"status": "qualified", "first_name": "Ana", "phone": "555-0199", "email": "a@b.com"})
        runs = await dispatcher.handle_event(event)

        clock.advance(days=3)
        run = await engine.resume_run(runs[0].id)

        assert run.status == RunStatus.COMPLETED
        keys = [h.step_key for h in run.history]
        assert keys == ["start", "welcome", "pause", "pause", "converted", "nudge", "done"]
        assert run.history[3].outcome == StepOutcome.RESUMED
        assert collaborators.notifications.sent[-1].channel == "sms"
        # 同一次到期不会被恢复两次
        assert await engine.resume_run(runs[0].id) is None

    async def test_cancel_waiting_run(
        self, install_workflow, dispatcher, engine, lead_event, follow_up_workflow
    ):
        await install_workflow(follow_up_workflow)
        runs = await dispatcher.handle_event(await lead_event({"status": "qualified", "email": "a@b.com"}))

        cancelled = await engine.cancel_run(runs[0].id)

        assert cancelled.status == RunStatus.CANCELLED
        assert cancelled.history[-1].outcome == StepOutcome.CANCELLED
        with pytest.raises(StateTransitionError):
            await engine.cancel_run(runs[0].id)

    async def test_cancel_unknown_run(self, engine):
        with pytest.raises(RunNotFoundError):
            await engine.cancel_run("missing")

    async def test_run_survives_deleted_record(
        self, install_workflow, dispatcher, engine, lead_event, clock, collaborators, follow_up_workflow
    ):
        await install_workflow(follow_up_workflow)
        event = await lead_event({"status": "qualified", "phone": "555-0199", "email": "a@b.com"})
        runs = await dispatcher.handle_event(event)
        del collaborators.records.records[ObjectType.LEAD][event.record_id]

        clock.advance(days=3)
        run = await engine.resume_run(runs[0].id)

        # 记录被删除后使用进入时的快照
        assert run.status == RunStatus.COMPLETED
        assert "nudge" in [h.step_key for h in run.history]
