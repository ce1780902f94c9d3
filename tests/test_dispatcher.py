"""
触发调度器测试
"""
import copy
import pytest

from workflow_automation.exceptions import WorkflowNotFoundError, WorkflowEngineError
from workflow_automation.models.events import RecordEventType
from workflow_automation.models.run import RunStatus


def ends_immediately(name, **overrides):
    definition = {
        "name": name,
        "object_type": "lead",
        "steps": [
            {"step_key": "start", "step_type": "trigger", "next_step_key": "done"},
            {"step_key": "done", "step_type": "end"}
        ]
    }
    definition.update(overrides)
    return definition


class TestEntryCriteria:
    """进入条件"""

    async def test_qualified_lead_enters(self, install_workflow, dispatcher, lead_event, follow_up_workflow):
        workflow = await install_workflow(follow_up_workflow)

        runs = await dispatcher.handle_event(await lead_event({"status": "qualified", "email": "a@b.com"}))

        assert len(runs) == 1
        assert runs[0].workflow_id == workflow.id
        assert runs[0].status == RunStatus.WAITING

    async def test_unqualified_lead_is_ignored(self, install_workflow, dispatcher, lead_event, follow_up_workflow):
        await install_workflow(follow_up_workflow)

        runs = await dispatcher.handle_event(await lead_event({"status": "new", "email": "a@b.com"}))

        assert runs == []

    async def test_inactive_workflow_is_ignored(self, manager, dispatcher, lead_event, follow_up_workflow):
        await manager.create(follow_up_workflow)

        runs = await dispatcher.handle_event(await lead_event({"status": "qualified"}))

        assert runs == []

    async def test_other_object_types_are_ignored(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Payments", object_type="payment"))

        assert await dispatcher.handle_event(await lead_event({"status": "new"})) == []

    async def test_execution_statistics(
        self, install_workflow, dispatcher, lead_event, workflow_repository, clock
    ):
        workflow = await install_workflow(ends_immediately("Stats"))

        await dispatcher.handle_event(await lead_event({"status": "new"}))
        await dispatcher.handle_event(await lead_event({"status": "new"}))

        stored = await workflow_repository.get(workflow.id)
        assert stored.execution_count == 2
        assert stored.last_executed_at == clock()

    async def test_workflows_run_in_evaluation_order(self, install_workflow, dispatcher, lead_event):
        second = await install_workflow(ends_immediately("Second", evaluation_order=2))
        first = await install_workflow(ends_immediately("First", evaluation_order=1))

        runs = await dispatcher.handle_event(await lead_event({"status": "new"}))

        assert [r.workflow_id for r in runs] == [first.id, second.id]

    async def test_one_failing_workflow_does_not_block_others(
        self, install_workflow, dispatcher, lead_event, engine
    ):
        broken = await install_workflow(ends_immediately("Broken", evaluation_order=1))
        healthy = await install_workflow(ends_immediately("Healthy", evaluation_order=2))
        create_run = engine.create_run

        async def flaky_create_run(run):
            if run.workflow_id == broken.id:
                raise RuntimeError("database unavailable")
            return await create_run(run)

        engine.create_run = flaky_create_run

        runs = await dispatcher.handle_event(await lead_event({"status": "new"}))

        assert [r.workflow_id for r in runs] == [healthy.id]


class TestTriggerTypes:
    """触发类型匹配"""

    async def test_record_create_ignores_updates(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Created only", trigger_type="record_create"))

        event = await lead_event({"status": "new"}, RecordEventType.UPDATED, previous={"status": "lead"})

        assert await dispatcher.handle_event(event) == []

    async def test_record_update_ignores_creates(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Updated only", trigger_type="record_update"))

        assert await dispatcher.handle_event(await lead_event({"status": "new"})) == []
        event = await lead_event({"status": "new"}, RecordEventType.UPDATED, previous={"status": "lead"})
        assert len(await dispatcher.handle_event(event)) == 1

    async def test_field_change_with_values(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately(
            "Became client",
            trigger_type="field_change",
            trigger_config={"field": "status", "from_value": "qualified", "to_value": "client"}
        ))

        created = await lead_event({"status": "client"})
        assert await dispatcher.handle_event(created) == []

        other_field = await lead_event(
            {"phone": "555"}, RecordEventType.UPDATED, previous={"phone": None},
            record_id=created.record_id
        )
        assert await dispatcher.handle_event(other_field) == []

        wrong_origin = await lead_event(
            {"status": "client"}, RecordEventType.UPDATED, previous={"status": "new"},
            record_id=created.record_id
        )
        assert await dispatcher.handle_event(wrong_origin) == []

        promoted = await lead_event(
            {"status": "client"}, RecordEventType.UPDATED, previous={"status": "qualified"},
            record_id=created.record_id
        )
        assert len(await dispatcher.handle_event(promoted)) == 1

    async def test_manual_workflows_ignore_events(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Manual", trigger_type="manual"))

        assert await dispatcher.handle_event(await lead_event({"status": "new"})) == []

    async def test_events_arrive_through_event_bus(
        self, install_workflow, dispatcher, event_bus, lead_event, run_repository
    ):
        workflow = await install_workflow(ends_immediately("Bus"))
        await dispatcher.attach(event_bus)

        event = await lead_event({"status": "new"})
        await event_bus.publish(event.topic, event)

        runs = await run_repository.list_for_record(workflow.id, event.record_id)
        assert len(runs) == 1
        await dispatcher.detach(event_bus)
        assert "record.created" not in event_bus.subscribers


class TestReentry:
    """重入策略"""

    async def test_reentry_after_days(self, install_workflow, dispatcher, lead_event, clock):
        await install_workflow(ends_immediately(
            "Monthly check-in", reentry_mode="reentry_after_days", reentry_wait_days=30
        ))
        first = await lead_event({"status": "qualified"})
        assert len(await dispatcher.handle_event(first)) == 1

        clock.advance(days=10)
        again = await lead_event({"status": "qualified"}, RecordEventType.UPDATED,
                                 previous={"status": "new"}, record_id=first.record_id)
        assert await dispatcher.handle_event(again) == []

        clock.advance(days=21)
        assert len(await dispatcher.handle_event(again)) == 1

    async def test_no_reentry(self, install_workflow, dispatcher, lead_event, clock):
        await install_workflow(ends_immediately("Once", reentry_mode="no_reentry"))
        first = await lead_event({"status": "new"})
        assert len(await dispatcher.handle_event(first)) == 1

        clock.advance(days=365)
        assert await dispatcher.handle_event(first) == []

    async def test_no_reentry_is_per_record(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Once", reentry_mode="no_reentry"))

        assert len(await dispatcher.handle_event(await lead_event({"status": "new"}))) == 1
        assert len(await dispatcher.handle_event(await lead_event({"status": "new"}))) == 1

    async def test_always_reentry(self, install_workflow, dispatcher, lead_event):
        await install_workflow(ends_immediately("Always"))
        event = await lead_event({"status": "new"})

        assert len(await dispatcher.handle_event(event)) == 1
        assert len(await dispatcher.handle_event(event)) == 1

    async def test_reentry_after_exit(
        self, install_workflow, dispatcher, engine, lead_event, follow_up_workflow
    ):
        definition = copy.deepcopy(follow_up_workflow)
        definition["workflow"]["reentry_mode"] = "reentry_after_exit"
        await install_workflow(definition)
        event = await lead_event({"status": "qualified", "email": "a@b.com"})

        runs = await dispatcher.handle_event(event)
        assert runs[0].status == RunStatus.WAITING
        assert await dispatcher.handle_event(event) == []

        await engine.cancel_run(runs[0].id)
        assert len(await dispatcher.handle_event(event)) == 1


class TestManualTrigger:
    """手动触发"""

    async def test_manual_trigger_bypasses_entry_criteria(
        self, install_workflow, dispatcher, lead_event, follow_up_workflow
    ):
        workflow = await install_workflow(follow_up_workflow)
        event = await lead_event({"status": "new", "email": "a@b.com"})

        run = await dispatcher.trigger_manually(workflow.id, event.record_id)

        assert run.status == RunStatus.WAITING
        assert run.trigger["type"] == "manual"

    async def test_manual_trigger_respects_reentry(self, install_workflow, dispatcher, lead_event):
        workflow = await install_workflow(ends_immediately("Once", reentry_mode="no_reentry"))
        event = await lead_event({"status": "new"})

        assert await dispatcher.trigger_manually(workflow.id, event.record_id) is not None
        assert await dispatcher.trigger_manually(workflow.id, event.record_id) is None

    async def test_manual_trigger_errors(self, manager, dispatcher, lead_event):
        with pytest.raises(WorkflowNotFoundError):
            await dispatcher.trigger_manually("missing", "lead-1")

        inactive = await manager.create(ends_immediately("Inactive"))
        with pytest.raises(WorkflowEngineError, match="not active"):
            await dispatcher.trigger_manually(inactive.id, "lead-1")

        await manager.activate(inactive.id)
        with pytest.raises(WorkflowEngineError, match="record not found"):
            await dispatcher.trigger_manually(inactive.id, "missing-lead")
