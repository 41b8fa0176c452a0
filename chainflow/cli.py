"""Command line interface for chainflow."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import typer

from . import persistence
from .chain import ChainRegistry
from .config import ChainflowConfig, WorkerConfig, load_config
from .constants import CronProcessKind, WorkflowStatus
from .contracts import ChainflowError
from .dispatch import WorkflowDispatcher
from .handlers import StepServices
from .nonce import NonceManager, NonceSource, get_nonce_cache
from .processes import ProcessRegistry
from .transports import get_transport
from .worker import WorkflowWorker
from .workflows import default_catalog

app = typer.Typer(help="chainflow command line interface")
worker_app = typer.Typer(help="Run workflow workers")
workflow_app = typer.Typer(help="Manage workflow runs")
process_app = typer.Typer(help="Manage registered worker processes")
app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(process_app, name="process")

_WORKER_OVERRIDES = ("topics", "queue", "prefetch_count", "lifespan", "message_timeout")

_state: Dict[str, Any] = {}


@app.callback()
def main(
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to the YAML configuration file"
    ),
) -> None:
    """chainflow: durable step workflows for blockchain transactions."""
    config = load_config(config_path)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config
    _state["explicit"] = config_path is not None


def _config() -> ChainflowConfig:
    return _state.get("config") or load_config()


def _repository() -> persistence.WorkflowRepository:
    if _state.get("explicit"):
        return persistence.get_repository(config=_state["config"])
    return persistence.get_repository()


def _parse_params(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        params = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON params: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(params, dict):
        typer.secho("Params must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return params


def build_services(
    config: ChainflowConfig, repository: persistence.WorkflowRepository
) -> StepServices:
    """Wire chain clients, the nonce manager and the repository from config."""
    chains = ChainRegistry(config.chains)
    source = NonceSource(get_nonce_cache(config.cache), chains, config.nonce)
    return StepServices(
        repository=repository,
        chains=chains,
        nonce_manager=NonceManager(repository, source, chains),
        grants=config.grants,
    )


def _worker_config(base: WorkerConfig, params: Dict[str, Any]) -> WorkerConfig:
    overrides = {key: params[key] for key in _WORKER_OVERRIDES if key in params}
    return base.model_copy(update=overrides) if overrides else base


@worker_app.command("run")
def worker_run(
    cron_process_id: Optional[int] = typer.Option(
        None, help="Registered process id; the worker refuses to start if it already runs"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds after which the worker stops consuming"
    ),
    queue: Optional[str] = typer.Option(None, help="Queue name to consume from"),
    topic: Optional[List[str]] = typer.Option(
        None, help="Topic pattern to bind; may be given several times"
    ),
) -> None:
    """
    Consume step messages and drive workflows until stopped.

    Settings come from the ``worker`` section of the config, then from the
    params of the registered process, then from the options given here.

    Example:
        chainflow worker run --cron-process-id 3
        chainflow worker run --topic 'workflow.#' --lifespan 600
    """
    config = _config()

    async def _run() -> None:
        repository = _repository()
        worker_config = config.worker
        registry = None
        if cron_process_id is not None:
            registry = ProcessRegistry(repository)
            process = await repository.get_cron_process(cron_process_id)
            if process is not None:
                worker_config = _worker_config(worker_config, process.params)
        cli_overrides: Dict[str, Any] = {}
        if lifespan is not None:
            cli_overrides["lifespan"] = lifespan
        if queue:
            cli_overrides["queue"] = queue
        if topic:
            cli_overrides["topics"] = list(topic)
        worker_config = _worker_config(worker_config, cli_overrides)

        transport = get_transport(config=config)
        services = build_services(config, repository)
        await transport.connect()
        try:
            worker = WorkflowWorker(
                transport,
                services,
                catalog=default_catalog(),
                config=worker_config,
                process_registry=registry,
                cron_process_id=cron_process_id,
            )
            await worker.start()
        finally:
            await services.nonce_manager.close()
            await services.chains.aclose()
            await transport.disconnect()

    try:
        asyncio.run(_run())
    except ChainflowError as exc:
        typer.secho(f"Worker refused to run: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List workflows in the database.

    Example:
        chainflow workflow list
        chainflow workflow list --status failed
        # Output: 12 grantEthOst completed
    """
    repo = _repository()
    workflows = asyncio.run(repo.list_workflows(status))
    if not workflows:
        typer.echo("No workflows found.")
        return
    for wf in workflows:
        typer.echo(f"{wf.id} {wf.kind} {wf.status.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: int) -> None:
    """
    Show a workflow and its steps.

    Example:
        chainflow workflow show 12
        # Output: Workflow 12 (grantEthOst): completed
        #         - 40 grantEthOstInit: taskDone
    """
    repo = _repository()

    async def _load():
        workflow = await repo.get_workflow(workflow_id)
        if workflow is None:
            return None, []
        return workflow, await repo.list_steps(workflow_id, include_retried=True)

    wf, steps = asyncio.run(_load())
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} ({wf.kind}): {wf.status.value}")
    if wf.request_params:
        typer.echo(f"Params: {json.dumps(wf.request_params, sort_keys=True)}")
    if wf.response_data:
        typer.echo(f"Response: {json.dumps(wf.response_data, sort_keys=True)}")
    if wf.debug_params:
        typer.echo(f"Debug: {json.dumps(wf.debug_params, sort_keys=True)}")
    for step in steps:
        typer.echo(
            f"- {step.id} {step.kind}: {step.status.value}"
            + (f" tx={step.transaction_hash}" if step.transaction_hash else "")
            + (f" parent={step.parent_id}" if step.parent_id is not None else "")
        )


@workflow_app.command("start")
def workflow_start(
    kind: str,
    params: Optional[str] = typer.Option(None, help="JSON object of request params"),
    chain_id: Optional[int] = typer.Option(None, help="Chain the workflow acts on"),
    client_id: Optional[int] = typer.Option(None, help="Owning client id"),
) -> None:
    """
    Start a workflow and print its id.

    Example:
        chainflow workflow start grantEthOst --chain-id 3 \\
            --params '{"address": "0xabc..."}'
        # Output: Started workflow 12 (grantEthOst)
    """
    config = _config()
    request_params = _parse_params(params)

    async def _start():
        transport = get_transport(config=config)
        await transport.connect()
        try:
            dispatcher = WorkflowDispatcher(transport, _repository())
            return await dispatcher.start_workflow(
                kind, request_params, chain_id=chain_id, client_id=client_id
            )
        finally:
            await transport.disconnect()

    try:
        workflow = asyncio.run(_start())
    except ChainflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Started workflow {workflow.id} ({workflow.kind})")


@workflow_app.command("retry")
def workflow_retry(step_id: int) -> None:
    """
    Re-run a workflow from one of its steps.

    The step and everything after it are marked retried; a fresh row of the
    same kind is queued.

    Example:
        chainflow workflow retry 41
    """
    config = _config()

    async def _retry():
        transport = get_transport(config=config)
        await transport.connect()
        try:
            dispatcher = WorkflowDispatcher(transport, _repository())
            return await dispatcher.retry_from_step(step_id)
        finally:
            await transport.disconnect()

    try:
        step = asyncio.run(_retry())
    except ChainflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Queued {step.kind} as step {step.id} for workflow {step.workflow_id}")


@process_app.command("register")
def process_register(
    kind: CronProcessKind,
    params: Optional[str] = typer.Option(None, help="JSON object of process params"),
    ip_address: Optional[str] = typer.Option(None, help="Host expected to run it"),
) -> None:
    """
    Register a long-running process so it can be started by id.

    Example:
        chainflow process register workflowWorker --params '{"chain_id": 3}'
        # Output: Registered workflowWorker as process 1
    """
    registry = ProcessRegistry(_repository())
    try:
        process = asyncio.run(
            registry.register(kind, _parse_params(params), ip_address=ip_address)
        )
    except ChainflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Registered {process.kind} as process {process.id}")


@process_app.command("list")
def process_list() -> None:
    """List registered processes and their status."""
    repo = _repository()
    processes = asyncio.run(repo.list_cron_processes())
    if not processes:
        typer.echo("No processes registered.")
        return
    for process in processes:
        typer.echo(
            f"{process.id} {process.kind} {process.status.value}"
            + (f" since {process.last_started_at}" if process.last_started_at else "")
        )


@process_app.command("monitor")
def process_monitor() -> None:
    """
    Report running processes that outlived their restart interval.

    Exits with code 1 when any process is stuck, so it can back an alert.

    Example:
        chainflow process monitor
    """
    registry = ProcessRegistry(_repository())
    stuck = asyncio.run(registry.find_stuck())
    if not stuck:
        typer.echo("All processes healthy.")
        return
    for process in stuck:
        typer.secho(
            f"Process {process.id} ({process.kind}) stuck since {process.last_started_at}",
            fg=typer.colors.RED,
        )
    raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
