"""
Doula CRM Workflow Automation CLI
"""
import click
import asyncio
import json
import logging

from .config import EngineSettings
from .core import WorkflowParser, GraphValidator
from .exceptions import WorkflowParseError, ValidationError
from .models.workflow import utcnow
from .models.events import RecordEvent, RecordEventType
from .runtime import WorkflowRuntime


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """Doula CRM Workflow Automation CLI"""
    _configure_logging(verbose)


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host, port, reload):
    """Start the API server"""
    import uvicorn

    settings = EngineSettings.from_env()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "workflow_automation.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload
    )


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True))
def validate(workflow_file):
    """Parse and validate a workflow definition file"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
        GraphValidator().validate(workflow)
    except (WorkflowParseError, ValidationError) as e:
        click.echo(f"Invalid: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Valid: {workflow.name} ({len(workflow.steps)} steps)")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True))
@click.option('--record', 'record_json', required=True, help='Record fields as JSON')
@click.option('--event', 'event_type', type=click.Choice(['created', 'updated']),
              default='created', help='Record event to simulate')
def simulate(workflow_file, record_json, event_type):
    """Run a workflow against a record using in-memory storage"""
    async def _simulate():
        try:
            record = json.loads(record_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"--record is not valid JSON: {e}")

        runtime = WorkflowRuntime(EngineSettings(database_url=None))
        workflow = await runtime.manager.create(workflow_file)
        workflow = await runtime.manager.activate(workflow.id)
        click.echo(f"Loaded workflow: {workflow.name} [{workflow.id}]")

        stored = runtime.collaborators.records.put(workflow.object_type, record)
        event = RecordEvent(
            object_type=workflow.object_type,
            record_id=stored["id"],
            event_type=RecordEventType(event_type),
            record=stored,
            previous_values={} if event_type == 'updated' else None,
            changed_fields=sorted(stored.keys()),
            occurred_at=utcnow()
        )

        runs = await runtime.dispatcher.handle_event(event)
        if not runs:
            click.echo("No run started (trigger, entry criteria or re-entry did not match)")
            return

        for run in runs:
            click.echo(f"Run {run.id}: {run.status.value}")
            for entry in run.history:
                line = f"  {entry.step_key:<24} {entry.outcome.value}"
                if entry.error:
                    line += f"  ({entry.error['message']})"
                click.echo(line)
            if run.wait_until:
                click.echo(f"  waiting until {run.wait_until.isoformat()}")
            if run.error_message:
                click.echo(f"  error: {run.error_message}")

    try:
        asyncio.run(_simulate())
    except (WorkflowParseError, ValidationError) as e:
        click.echo(f"Invalid: {e}", err=True)
        raise SystemExit(1)


@cli.command()
def sweep():
    """Resume all due waiting runs once"""
    async def _sweep():
        runtime = WorkflowRuntime(EngineSettings.from_env())
        await runtime.start(run_scheduler=False)
        try:
            result = await runtime.scheduler.sweep()
        finally:
            await runtime.stop()
        click.echo(json.dumps(result.to_dict(), indent=2))

    asyncio.run(_sweep())


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
