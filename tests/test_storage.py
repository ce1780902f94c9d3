"""
存储仓库测试（SQLite 内存数据库）
"""
import asyncio
import copy
import pytest
from datetime import datetime, timedelta, timezone

from workflow_automation.core import ExecutionEngine, WorkflowParser, TriggerDispatcher
from workflow_automation.exceptions import ValidationError
from workflow_automation.models.workflow import ObjectType
from workflow_automation.models.run import WorkflowRun, RunStatus, HistoryEntry, StepOutcome
from workflow_automation.storage.repository import InMemoryWorkflowRepository, InMemoryRunRepository
from workflow_automation.storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyWorkflowRepository, SQLAlchemyRunRepository
)


@pytest.fixture
def sql_workflows(test_database):
    return SQLAlchemyWorkflowRepository(test_database)


@pytest.fixture
def sql_runs(test_database):
    return SQLAlchemyRunRepository(test_database)


def parse(definition, **overrides):
    workflow = WorkflowParser().parse_dict(copy.deepcopy(definition))
    for key, value in overrides.items():
        setattr(workflow, key, value)
    return workflow


class TestWorkflowRepository:
    """工作流定义存储"""

    async def test_round_trip(self, sql_workflows, follow_up_workflow):
        workflow = parse(follow_up_workflow)
        await sql_workflows.save(workflow)

        stored = await sql_workflows.get(workflow.id)

        assert stored.name == workflow.name
        assert stored.object_type == ObjectType.LEAD
        assert stored.entry_criteria.conditions[0].value == "qualified"
        assert [s.step_key for s in stored.steps] == [s.step_key for s in workflow.steps]
        assert stored.get_step("pause").config.wait_days == 3
        assert stored.get_step("converted").branch_target(True) == "onboard"
        assert stored.created_at.tzinfo is not None

    async def test_missing_workflow(self, sql_workflows):
        assert await sql_workflows.get("missing") is None
        assert await sql_workflows.delete("missing") is False

    @pytest.mark.parametrize("repository", ["memory", "sql"])
    async def test_duplicate_step_keys_rejected(
        self, repository, sql_workflows, simple_email_workflow
    ):
        repo = sql_workflows if repository == "sql" else InMemoryWorkflowRepository()
        definition = copy.deepcopy(simple_email_workflow)
        definition["workflow"]["steps"].append({"step_key": "welcome", "step_type": "end"})

        with pytest.raises(ValidationError, match="Duplicate step_key 'welcome'"):
            await repo.save(parse(definition))

    async def test_list_active_orders_by_evaluation_order(self, sql_workflows, simple_email_workflow):
        later = parse(simple_email_workflow, is_active=True, evaluation_order=5)
        sooner = parse(simple_email_workflow, is_active=True, evaluation_order=1)
        inactive = parse(simple_email_workflow)
        other_type = parse(simple_email_workflow, is_active=True, object_type=ObjectType.PAYMENT)
        for workflow in (later, sooner, inactive, other_type):
            await sql_workflows.save(workflow)

        active = await sql_workflows.list_active(ObjectType.LEAD)

        assert [w.id for w in active] == [sooner.id, later.id]
        assert len(await sql_workflows.list(filters={"is_active": False})) == 1
        assert len(await sql_workflows.list(filters={"object_type": "payment"})) == 1

    async def test_update_replaces_steps(self, sql_workflows, simple_email_workflow, follow_up_workflow):
        workflow = parse(simple_email_workflow)
        await sql_workflows.save(workflow)

        replacement = parse(follow_up_workflow)
        replacement.id = workflow.id
        assert await sql_workflows.update(replacement) is True

        stored = await sql_workflows.get(workflow.id)
        assert len(stored.steps) == 7
        assert stored.name == "Qualified lead follow-up"

    async def test_record_execution(self, sql_workflows, simple_email_workflow, clock):
        workflow = parse(simple_email_workflow)
        await sql_workflows.save(workflow)

        await sql_workflows.record_execution(workflow.id, clock())
        await sql_workflows.record_execution(workflow.id, clock())

        stored = await sql_workflows.get(workflow.id)
        assert stored.execution_count == 2
        assert stored.last_executed_at == clock()

    async def test_delete(self, sql_workflows, simple_email_workflow):
        workflow = parse(simple_email_workflow)
        await sql_workflows.save(workflow)

        assert await sql_workflows.delete(workflow.id) is True
        assert await sql_workflows.get(workflow.id) is None


class TestRunRepository:
    """运行实例存储"""

    @pytest.fixture
    def make_run(self, clock):
        def make(record_id="lead-1", **kwargs):
            return WorkflowRun(
                workflow_id="wf-1",
                target_record_id=record_id,
                current_step_key="welcome",
                entered_at=clock(),
                last_transitioned_at=clock(),
                record_snapshot={"status": "qualified", "expected_due_date": clock().date()},
                **kwargs
            )
        return make

    async def test_round_trip(self, sql_runs, make_run, clock):
        run = make_run()
        run.record(HistoryEntry(step_key="start", outcome=StepOutcome.COMPLETED, started_at=clock()))
        await sql_runs.save(run)

        stored = await sql_runs.get(run.id)

        assert stored.status == RunStatus.ACTIVE
        assert stored.entered_at == clock()
        assert stored.record_snapshot["expected_due_date"] == clock().date().isoformat()
        assert [h.step_key for h in stored.history] == ["start"]

    async def test_update_appends_history(self, sql_runs, make_run, clock):
        run = make_run()
        await sql_runs.save(run)

        run.record(HistoryEntry(step_key="welcome", outcome=StepOutcome.COMPLETED, started_at=clock()))
        run.wait(clock() + timedelta(days=3), clock())
        await sql_runs.update(run)
        run.record(HistoryEntry(step_key="pause", outcome=StepOutcome.WAITING, started_at=clock()))
        await sql_runs.update(run)

        stored = await sql_runs.get(run.id)
        assert stored.status == RunStatus.WAITING
        assert stored.wait_until == clock() + timedelta(days=3)
        assert [h.step_key for h in stored.history] == ["welcome", "pause"]

    async def test_update_unknown_run(self, sql_runs, make_run):
        assert await sql_runs.update(make_run()) is False

    async def test_list_due(self, sql_runs, make_run, clock):
        due = make_run("lead-1")
        due.wait(clock() + timedelta(hours=1), clock())
        later = make_run("lead-2")
        later.wait(clock() + timedelta(days=2), clock())
        active = make_run("lead-3")
        for run in (due, later, active):
            await sql_runs.save(run)

        found = await sql_runs.list_due(clock() + timedelta(hours=2))

        assert [r.id for r in found] == [due.id]

    async def test_offset_wait_until_kept_as_utc_instant(self, sql_runs, make_run, clock):
        run = make_run()
        eastern = timezone(timedelta(hours=-5))
        run.wait(datetime(2026, 3, 5, 10, 0, tzinfo=eastern), clock())
        await sql_runs.save(run)

        stored = await sql_runs.get(run.id)

        assert stored.wait_until == datetime(2026, 3, 5, 15, 0, tzinfo=timezone.utc)
        assert stored.wait_until.utcoffset() == timedelta(0)

    async def test_list_due_compares_instants(self, sql_runs, make_run):
        eastern = timezone(timedelta(hours=-5))
        run = make_run()
        run.wait(datetime(2026, 3, 5, 10, 0, tzinfo=eastern))
        await sql_runs.save(run)

        # 14:30 UTC 时墙上时间 10:00 已过，但真实时刻还差半小时
        assert await sql_runs.list_due(datetime(2026, 3, 5, 14, 30, tzinfo=timezone.utc)) == []
        found = await sql_runs.list_due(datetime(2026, 3, 5, 10, 0, tzinfo=eastern))
        assert [r.id for r in found] == [run.id]

    async def test_claim_waiting_only_once(self, sql_runs, make_run, clock):
        run = make_run()
        run.wait(clock() + timedelta(hours=1), clock())
        await sql_runs.save(run)

        assert await sql_runs.claim_waiting(run.id, clock()) is False
        clock.advance(hours=1)
        assert await sql_runs.claim_waiting(run.id, clock()) is True
        assert await sql_runs.claim_waiting(run.id, clock()) is False

        stored = await sql_runs.get(run.id)
        assert stored.status == RunStatus.ACTIVE
        assert stored.wait_until is None

    async def test_list_for_record_and_status(self, sql_runs, make_run, clock):
        first = make_run("lead-1")
        second = make_run("lead-1")
        other = make_run("lead-2")
        second.complete(clock())
        for run in (first, second, other):
            await sql_runs.save(run)

        assert {r.id for r in await sql_runs.list_for_record("wf-1", "lead-1")} == {first.id, second.id}
        assert [r.id for r in await sql_runs.list_by_status(RunStatus.COMPLETED)] == [second.id]
        assert len(await sql_runs.list_by_workflow("wf-1", RunStatus.ACTIVE)) == 2


class TestEngineOnDatabase:
    """执行引擎使用 SQL 仓库"""

    async def test_run_waits_and_resumes(
        self, sql_workflows, sql_runs, collaborators, event_bus, settings, clock,
        lead_event, follow_up_workflow
    ):
        engine = ExecutionEngine(
            workflow_repository=sql_workflows,
            run_repository=sql_runs,
            collaborators=collaborators,
            event_bus=event_bus,
            settings=settings,
            clock=clock
        )
        dispatcher = TriggerDispatcher(sql_workflows, sql_runs, engine, clock=clock)
        await sql_workflows.save(parse(follow_up_workflow, is_active=True))

        event = await lead_event({"status": "qualified", "email": "a@b.com", "phone": "555-0199"})
        run = (await dispatcher.handle_event(event))[0]
        assert run.status == RunStatus.WAITING

        clock.advance(days=3)
        assert [r.id for r in await sql_runs.list_due(clock())] == [run.id]
        resumed = await engine.resume_run(run.id)

        assert resumed.status == RunStatus.COMPLETED
        stored = await sql_runs.get(run.id)
        assert [h.step_key for h in stored.history] == [
            "start", "welcome", "pause", "pause", "converted", "nudge", "done"
        ]

    async def test_resume_skipped_when_claimed_by_another_process(
        self, sql_workflows, sql_runs, collaborators, event_bus, settings, clock,
        lead_event, follow_up_workflow
    ):
        engine = ExecutionEngine(
            workflow_repository=sql_workflows,
            run_repository=sql_runs,
            collaborators=collaborators,
            event_bus=event_bus,
            settings=settings,
            clock=clock
        )
        dispatcher = TriggerDispatcher(sql_workflows, sql_runs, engine, clock=clock)
        await sql_workflows.save(parse(follow_up_workflow, is_active=True))
        event = await lead_event({"status": "qualified", "email": "a@b.com", "phone": "555-0199"})
        run = (await dispatcher.handle_event(event))[0]
        clock.advance(days=3)

        # 引擎读到的仍是 waiting，但另一个调度进程已先行领取
        stale = await sql_runs.get(run.id)
        original_get = sql_runs.get

        async def get_stale(run_id):
            return stale if run_id == run.id else await original_get(run_id)

        sql_runs.get = get_stale
        assert await sql_runs.claim_waiting(run.id, clock()) is True

        assert await engine.resume_run(run.id) is None
        assert [s for s in collaborators.notifications.sent if s.channel == "sms"] == []

    async def test_two_engines_share_database(
        self, tmp_path, collaborators, settings, clock, lead_event, follow_up_workflow
    ):
        url = f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}"
        databases = [DatabaseManager(url), DatabaseManager(url)]
        for database in databases:
            await database.initialize()
        try:
            engines = []
            for database in databases:
                workflows = SQLAlchemyWorkflowRepository(database)
                engines.append(ExecutionEngine(
                    workflow_repository=workflows,
                    run_repository=SQLAlchemyRunRepository(database),
                    collaborators=collaborators,
                    settings=settings,
                    clock=clock
                ))
            first = engines[0]
            await first.workflow_repository.save(parse(follow_up_workflow, is_active=True))
            dispatcher = TriggerDispatcher(
                first.workflow_repository, first.run_repository, first, clock=clock
            )
            event = await lead_event({"status": "qualified", "email": "a@b.com", "phone": "555-0199"})
            run = (await dispatcher.handle_event(event))[0]
            clock.advance(days=3)

            results = await asyncio.gather(*(e.resume_run(run.id) for e in engines))

            assert len([r for r in results if r is None]) == 1
            assert len([s for s in collaborators.notifications.sent if s.channel == "sms"]) == 1
            stored = await engines[1].run_repository.get(run.id)
            assert stored.status == RunStatus.COMPLETED
            assert [h.step_key for h in stored.history].count("nudge") == 1
        finally:
            for database in databases:
                await database.close()


class TestInMemoryClaim:
    """内存仓库的领取语义"""

    async def test_claim_waiting(self, clock):
        runs = InMemoryRunRepository()
        run = WorkflowRun(workflow_id="wf-1", target_record_id="lead-1", current_step_key="pause")
        run.wait(clock() + timedelta(days=1), clock())
        await runs.save(run)

        assert await runs.claim_waiting(run.id, clock()) is False
        clock.advance(days=1)
        assert await runs.claim_waiting(run.id, clock()) is True
        assert await runs.claim_waiting(run.id, clock()) is False
        assert (await runs.get(run.id)).status == RunStatus.ACTIVE
