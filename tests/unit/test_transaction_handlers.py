import pytest

from chainflow.constants import TaskStatus, TransactionMetaStatus
from chainflow.contracts import EngineError, RetryableStepError
from chainflow.handlers import GrantEthHandler, GrantOstHandler, StepServices, encode_erc20_transfer

from tests.fakes import CHAIN_ID, GRANTER, SIMPLE_TOKEN

RECIPIENT = "0x00000000000000000000000000000000000000Ff"


def test_encode_erc20_transfer():
    data = encode_erc20_transfer(RECIPIENT, 10)
    assert data.startswith("0xa9059cbb")
    assert len(data) == 10 + 128
    assert data.endswith("0" * 63 + "a")
    assert "ff" in data[10:74]


@pytest.mark.asyncio
async def test_grant_eth_submits_with_allocated_nonce(services, fake_client, repo):
    fake_client.mined = 7
    result = await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})

    assert result.task_status == TaskStatus.PENDING
    assert result.transaction_hash
    sent = fake_client.sent[0]
    assert sent["from"] == GRANTER
    assert sent["nonce"] == hex(7)
    assert sent["to"] == RECIPIENT
    assert sent["value"] == hex(services.grants.eth_amount_wei)

    meta = await repo.get_transaction_meta(result.task_response_data["transaction_meta_id"])
    assert meta.status == TransactionMetaStatus.SUBMITTED
    assert meta.transaction_hash == result.transaction_hash


@pytest.mark.asyncio
async def test_grant_ost_calls_simple_token(services, fake_client):
    first = await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})
    second = await GrantOstHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})

    assert second.task_status == TaskStatus.PENDING
    assert second.task_response_data["nonce"] == first.task_response_data["nonce"] + 1
    sent = fake_client.sent[1]
    assert sent["to"] == SIMPLE_TOKEN
    assert sent["data"] == encode_erc20_transfer(RECIPIENT, services.grants.ost_amount_wei)


@pytest.mark.asyncio
async def test_missing_params_fail_without_submitting(services, fake_client):
    result = await GrantEthHandler(services).perform({"chain_id": CHAIN_ID}, {})
    assert result.task_status == TaskStatus.FAILED
    assert result.debug_params["missing"] == ["address"]
    assert fake_client.sent == []


@pytest.mark.asyncio
async def test_unknown_signer_fails_step(services, chain_config, fake_client):
    chain_config.signers.clear()
    result = await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})
    assert result.task_status == TaskStatus.FAILED
    assert result.debug_params["error_type"] == "SignerAddressNotFound"


@pytest.mark.asyncio
async def test_nonce_source_down_is_retryable(services, fake_client):
    fake_client.down = True
    with pytest.raises(RetryableStepError):
        await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})


@pytest.mark.asyncio
async def test_send_failure_releases_meta_and_resyncs(services, fake_client, repo):
    fake_client.send_down = True
    with pytest.raises(RetryableStepError):
        await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})

    meta = await repo.get_transaction_meta(1)
    assert meta.status == TransactionMetaStatus.GETH_DOWN
    assert meta.lock_id is None

    fake_client.send_down = False
    result = await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})
    assert result.task_response_data["nonce"] == 0


@pytest.mark.asyncio
async def test_submit_without_nonce_manager_is_engine_error(repo, chains):
    with pytest.raises(EngineError):
        await GrantEthHandler(StepServices(repository=repo, chains=chains)).perform(
            {"chain_id": CHAIN_ID, "address": RECIPIENT}, {}
        )


@pytest.mark.asyncio
async def test_unexpected_allocation_error_is_retryable(services, nonce_source, repo, monkeypatch):
    async def _blip(chain_id, address):
        raise ConnectionError("cache connection reset")

    monkeypatch.setattr(nonce_source, "next_nonce", _blip)
    with pytest.raises(RetryableStepError):
        await GrantEthHandler(services).perform({"chain_id": CHAIN_ID, "address": RECIPIENT}, {})

    meta = await repo.get_transaction_meta(1)
    assert meta.status == TransactionMetaStatus.GETH_DOWN
    assert meta.lock_id is None
