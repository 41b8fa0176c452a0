from chainflow.constants import TaskStatus
from chainflow.contracts import StepMessage, StepResult
from chainflow.utils.retry import compute_backoff


def test_step_message_defaults_and_next_attempt():
    message = StepMessage(workflow_id=1, workflow_kind="grantEthOst", step_kind="verifyGrantEth", current_step_id=3)
    assert message.task_status == TaskStatus.READY_TO_START
    assert message.attempt == 1

    again = message.next_attempt()
    assert again.attempt == 2
    assert again.message_id != message.message_id
    assert again.current_step_id == 3

    parsed = StepMessage.from_json(again.to_json())
    assert parsed.attempt == 2 and parsed.step_kind == "verifyGrantEth"


def test_step_result_helpers():
    assert StepResult.done({"a": 1}).task_response_data == {"a": 1}
    pending = StepResult.pending("0xabc")
    assert pending.task_status == TaskStatus.PENDING and pending.transaction_hash == "0xabc"
    failed = StepResult.failed({"error": "x"}, retry_from_step_id=4)
    assert failed.task_status == TaskStatus.FAILED and failed.retry_from_step_id == 4


def test_backoff_grows_and_is_capped():
    assert 1.5 <= compute_backoff(1) <= 2.0
    assert compute_backoff(3, jitter=0) > compute_backoff(2, jitter=0)
    assert compute_backoff(50, jitter=0) == 60.0
