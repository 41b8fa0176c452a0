import pytest

from chainflow.constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)
from chainflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    WorkflowStep,
    get_repository,
    step_unique_key,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return InMemoryWorkflowRepository()


@pytest.mark.asyncio
async def test_workflow_crud(repository):
    wf = await repository.create_workflow("grantEthOst", {"address": "0xabc"}, chain_id=3, client_id=7)
    assert wf.status == WorkflowStatus.IN_PROGRESS

    await repository.merge_workflow_response(wf.id, {"a": 1})
    await repository.merge_workflow_response(wf.id, {"b": 2})
    assert await repository.update_workflow_status(wf.id, WorkflowStatus.FAILED, {"error": "x"})
    assert not await repository.update_workflow_status(999, WorkflowStatus.FAILED)

    loaded = await repository.get_workflow(wf.id)
    assert loaded.request_params == {"address": "0xabc"}
    assert loaded.response_data == {"a": 1, "b": 2}
    assert loaded.debug_params == {"error": "x"}
    assert loaded.chain_id == 3 and loaded.client_id == 7
    assert [w.id for w in await repository.list_workflows(WorkflowStatus.FAILED)] == [wf.id]
    assert await repository.list_workflows(WorkflowStatus.COMPLETED) == []


@pytest.mark.asyncio
async def test_step_unique_key_makes_inserts_idempotent(repository):
    wf = await repository.create_workflow("grantEthOst", {})
    key = step_unique_key(wf.id, "grantEth")

    first = await repository.insert_step(WorkflowStep(workflow_id=wf.id, kind="grantEth", unique_key=key))
    duplicate = await repository.insert_step(WorkflowStep(workflow_id=wf.id, kind="grantEth", unique_key=key))

    assert first is not None and first.id is not None
    assert duplicate is None
    assert len(await repository.list_steps(wf.id)) == 1


@pytest.mark.asyncio
async def test_step_update_and_outbox(repository):
    wf = await repository.create_workflow("grantEthOst", {})
    step = await repository.insert_step(WorkflowStep(workflow_id=wf.id, kind="grantEthOstInit"))
    assert [s.id for s in await repository.list_unpublished_steps()] == [step.id]

    await repository.update_step(step.id, published=True)
    assert await repository.list_unpublished_steps() == []

    await repository.update_step(
        step.id,
        status=StepStatus.TASK_PENDING,
        response_data={"transaction_hash": "0x1"},
        transaction_hash="0x1",
        attempts=2,
    )
    loaded = await repository.get_step(step.id)
    assert loaded.status == StepStatus.TASK_PENDING
    assert loaded.response_data == {"transaction_hash": "0x1"}
    assert loaded.transaction_hash == "0x1"
    assert loaded.attempts == 2

    with pytest.raises(ValueError):
        await repository.update_step(step.id, workflow_id=42)


@pytest.mark.asyncio
async def test_mark_steps_retried_frees_unique_keys(repository):
    wf = await repository.create_workflow("grantEthOst", {})
    ids = []
    for kind in ("grantEthOstInit", "grantEth", "verifyGrantEth"):
        step = await repository.insert_step(
            WorkflowStep(workflow_id=wf.id, kind=kind, unique_key=step_unique_key(wf.id, kind))
        )
        ids.append(step.id)

    assert await repository.mark_steps_retried(wf.id, ids[1]) == 2
    assert [s.kind for s in await repository.list_steps(wf.id)] == ["grantEthOstInit"]
    assert len(await repository.list_steps(wf.id, include_retried=True)) == 3

    again = await repository.insert_step(
        WorkflowStep(workflow_id=wf.id, kind="grantEth", unique_key=step_unique_key(wf.id, "grantEth"))
    )
    assert again is not None


@pytest.mark.asyncio
async def test_transaction_meta_lock_is_one_shot(repository):
    meta = await repository.create_transaction_meta(3, "granter")
    assert meta.status == TransactionMetaStatus.QUEUED

    assert await repository.acquire_transaction_meta_lock(meta.id, "lock-a")
    assert not await repository.acquire_transaction_meta_lock(meta.id, "lock-b")

    await repository.release_lock_and_mark_status(meta.id, TransactionMetaStatus.SUBMITTED, "0xabc")
    loaded = await repository.get_transaction_meta(meta.id)
    assert loaded.lock_id is None
    assert loaded.status == TransactionMetaStatus.SUBMITTED
    assert loaded.transaction_hash == "0xabc"
    assert not await repository.acquire_transaction_meta_lock(meta.id, "lock-c")


@pytest.mark.asyncio
async def test_claim_step_has_a_single_winner(repository):
    wf = await repository.create_workflow("grantEthOst")
    step = await repository.insert_step(WorkflowStep(workflow_id=wf.id, kind="grantEth"))
    claimable = (StepStatus.QUEUED, StepStatus.RETRYING, StepStatus.TASK_PENDING)

    assert await repository.claim_step(step.id, claimable)
    assert not await repository.claim_step(step.id, claimable)
    assert (await repository.get_step(step.id)).status == StepStatus.IN_PROGRESS

    await repository.update_step(step.id, status=StepStatus.TASK_PENDING, transaction_hash="0xabc")
    assert not await repository.claim_step(step.id, claimable)

    polled = await repository.insert_step(WorkflowStep(workflow_id=wf.id, kind="verifyGrantEth"))
    await repository.update_step(polled.id, status=StepStatus.TASK_PENDING)
    assert await repository.claim_step(polled.id, claimable)

@pytest.mark.asyncio
async def test_cron_process_rows(repository):
    process = await repository.create_cron_process("workflowWorker", {"chain_id": 3}, ip_address="10.0.0.1")
    assert process.status == CronProcessStatus.STOPPED

    await repository.update_cron_process(process.id, CronProcessStatus.RUNNING)
    loaded = await repository.get_cron_process(process.id)
    assert loaded.status == CronProcessStatus.RUNNING
    assert loaded.params == {"chain_id": 3}
    assert [p.id for p in await repository.list_cron_processes("workflowWorker")] == [process.id]
    assert await repository.list_cron_processes("auxWorkflowWorker") == []


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    wf = await repo.create_workflow("grantEthOst", {"address": "0xabc"})
    await repo.insert_step(WorkflowStep(workflow_id=wf.id, kind="grantEthOstInit"))

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_workflow(wf.id)).request_params == {"address": "0xabc"}
    assert [s.kind for s in await reopened.list_steps(wf.id)] == ["grantEthOstInit"]


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository("sqlite://" + str(tmp_path / "wf.db")), SQLiteWorkflowRepository)
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
