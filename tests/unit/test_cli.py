import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

import chainflow.persistence as persistence
from chainflow.cli import app
from chainflow.constants import CronProcessStatus, WorkflowStatus
from chainflow.persistence import InMemoryWorkflowRepository

runner = CliRunner()


@pytest.fixture
def cli_repo(tmp_path, monkeypatch) -> InMemoryWorkflowRepository:
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    repo = InMemoryWorkflowRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def test_workflow_list_and_status_filter(cli_repo):
    first = asyncio.run(cli_repo.create_workflow("grantEthOst", {}))
    second = asyncio.run(cli_repo.create_workflow("grantEthOst", {}))
    asyncio.run(cli_repo.update_workflow_status(second.id, WorkflowStatus.FAILED))

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.stdout
    assert f"{first.id} grantEthOst inProgress" in result.stdout
    assert f"{second.id} grantEthOst failed" in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--status", "failed"])
    assert f"{first.id} grantEthOst" not in result.stdout


def test_workflow_show_details_and_missing(cli_repo):
    result = runner.invoke(
        app, ["workflow", "start", "grantEthOst", "--chain-id", "3", "--params", '{"address": "0xff"}']
    )
    assert result.exit_code == 0, result.stdout
    assert "Started workflow 1 (grantEthOst)" in result.stdout

    result = runner.invoke(app, ["workflow", "show", "1"])
    assert result.exit_code == 0, result.stdout
    assert "Workflow 1 (grantEthOst): inProgress" in result.stdout
    assert '"address": "0xff"' in result.stdout
    assert "grantEthOstInit: queued" in result.stdout

    result_missing = runner.invoke(app, ["workflow", "show", "99"])
    assert result_missing.exit_code == 1
    assert "Workflow not found" in result_missing.stdout


def test_workflow_start_rejects_bad_input(cli_repo):
    result = runner.invoke(app, ["workflow", "start", "grantEthOst", "--params", "{not json"])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.stdout

    result = runner.invoke(app, ["workflow", "start", "noSuchWorkflow"])
    assert result.exit_code == 1
    assert asyncio.run(cli_repo.list_workflows()) == []


def test_workflow_retry(cli_repo):
    runner.invoke(app, ["workflow", "start", "grantEthOst", "--params", '{"address": "0xff"}'])

    result = runner.invoke(app, ["workflow", "retry", "1"])
    assert result.exit_code == 0, result.stdout
    assert "Queued grantEthOstInit as step 2 for workflow 1" in result.stdout

    result = runner.invoke(app, ["workflow", "retry", "42"])
    assert result.exit_code == 1


def test_process_register_list_and_duplicates(cli_repo):
    result = runner.invoke(app, ["process", "register", "workflowWorker", "--params", '{"chain_id": 3}'])
    assert result.exit_code == 0, result.stdout
    assert "Registered workflowWorker as process 1" in result.stdout

    result = runner.invoke(app, ["process", "register", "workflowWorker", "--params", '{"chain_id": 3}'])
    assert result.exit_code == 1

    result = runner.invoke(app, ["process", "list"])
    assert "1 workflowWorker stopped" in result.stdout


def test_process_monitor_flags_stuck_processes(cli_repo):
    result = runner.invoke(app, ["process", "monitor"])
    assert result.exit_code == 0
    assert "All processes healthy" in result.stdout

    process = asyncio.run(cli_repo.create_cron_process("workflowWorker", {"chain_id": 3}))
    asyncio.run(
        cli_repo.update_cron_process(
            process.id,
            CronProcessStatus.RUNNING,
            last_started_at=datetime.now(timezone.utc) - timedelta(days=1),
        )
    )
    result = runner.invoke(app, ["process", "monitor"])
    assert result.exit_code == 1
    assert f"Process {process.id} (workflowWorker) stuck" in result.stdout


def test_worker_run_respects_lifespan_and_process_registry(cli_repo):
    runner.invoke(app, ["process", "register", "workflowWorker", "--params", '{"chain_id": 3}'])

    result = runner.invoke(app, ["worker", "run", "--cron-process-id", "1", "--lifespan", "0.2"])
    assert result.exit_code == 0, result.stdout
    process = asyncio.run(cli_repo.get_cron_process(1))
    assert process.status == CronProcessStatus.STOPPED
    assert process.last_ended_at is not None

    asyncio.run(cli_repo.update_cron_process(1, CronProcessStatus.RUNNING))
    result = runner.invoke(app, ["worker", "run", "--cron-process-id", "1", "--lifespan", "0.2"])
    assert result.exit_code == 1
    assert "Worker refused to run" in result.stdout
