import json
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from eth_account import Account

from src.oracle.errors import (
    ApiExtractionError,
    ApiFetchError,
    InsufficientFundsError,
    NotCreatorError,
    OracleNotDeployedError,
    OracleNotFoundError,
    ValidationError,
)
from src.oracle.inflight import UpdateTracker
from src.oracle.models import SkipReason, UpdateStatus
from src.utils.state import OracleConfigStore

from tests.conftest import FIXED_NOW, FakeChain, FakeSigner, json_api, oracle_record, write_records

ORACLE_ID = "btc-usd"
PRICE_RESPONSE = {"data": {"price": "42.5"}}


@pytest.fixture
def deployed(config_path: Path, chain: FakeChain, signer: FakeSigner) -> str:
    write_records(config_path, {ORACLE_ID: oracle_record(ORACLE_ID)})
    creator = signer.account_for(ORACLE_ID).address
    chain.add_oracle(ORACLE_ID, value=4000, creator=creator)
    return creator


async def test_update_writes_new_value(make_executor, deployed, chain: FakeChain, store: OracleConfigStore) -> None:
    result = await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert result.status is UpdateStatus.UPDATED
    assert (result.old_value, result.new_value) == (4000, 4250)
    assert result.block_number == 1234
    assert len(chain.sent) == 1
    assert Account.recover_transaction(chain.sent[0]) == deployed

    config = store.get(ORACLE_ID)
    assert config.last_update == FIXED_NOW
    assert config.next_update == FIXED_NOW + timedelta(minutes=60)
    assert config.last_tx_hash == result.tx_hash
    assert config.last_value == 4250
    assert config.has_error is False


async def test_unchanged_value_is_skipped_without_transaction(
    make_executor, deployed, chain: FakeChain, signer: FakeSigner, store: OracleConfigStore
) -> None:
    chain.oracles[ORACLE_ID].value = 4250

    result = await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert result.is_skipped
    assert result.skip_reason is SkipReason.UNCHANGED
    assert chain.sent == []
    assert signer.sign_calls == []
    assert store.get(ORACLE_ID).next_update == FIXED_NOW + timedelta(minutes=60)


async def test_in_flight_oracle_is_skipped(make_executor, deployed, tracker: UpdateTracker) -> None:
    calls = []
    assert tracker.try_acquire(ORACLE_ID)

    result = await make_executor(json_api(PRICE_RESPONSE, calls=calls)).execute(ORACLE_ID)

    assert result.skip_reason is SkipReason.ALREADY_UPDATING
    assert calls == []
    assert tracker.is_updating(ORACLE_ID)


async def test_creator_mismatch_fails_before_building(
    make_executor, deployed, chain: FakeChain, signer: FakeSigner, store: OracleConfigStore
) -> None:
    chain.oracles[ORACLE_ID].creator = "0x000000000000000000000000000000000000dEaD"

    with pytest.raises(NotCreatorError):
        await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert signer.sign_calls == []
    assert chain.sent == []
    config = store.get(ORACLE_ID)
    assert config.has_error is True
    assert "not the creator" in config.error_message
    assert config.last_error_at == FIXED_NOW


async def test_low_balance_reports_shortfall(make_executor, deployed, chain: FakeChain) -> None:
    chain.balances[deployed] = 4 * 10**14

    with pytest.raises(InsufficientFundsError) as excinfo:
        await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert excinfo.value.shortfall == 6 * 10**14
    assert excinfo.value.retryable
    assert chain.sent == []


async def test_api_failure_is_persisted_and_raised(make_executor, deployed, store: OracleConfigStore) -> None:
    with pytest.raises(ApiFetchError, match="500"):
        await make_executor(json_api({"error": "down"}, status_code=500)).execute(ORACLE_ID)

    config = store.get(ORACLE_ID)
    assert config.has_error is True
    assert "500" in config.error_message


async def test_bad_data_path_becomes_extraction_error(make_executor, deployed, store: OracleConfigStore) -> None:
    with pytest.raises(ApiExtractionError, match="data.price"):
        await make_executor(json_api({"data": {"cost": 1}})).execute(ORACLE_ID)
    assert store.get(ORACLE_ID).has_error is True


async def test_unknown_oracle_is_not_found(make_executor, deployed, config_path: Path) -> None:
    before = config_path.read_text()
    with pytest.raises(OracleNotFoundError):
        await make_executor(json_api(PRICE_RESPONSE)).execute("eth-usd")
    assert config_path.read_text() == before


async def test_undeployed_oracle_is_not_persisted_as_error(
    make_executor, deployed, chain: FakeChain, store: OracleConfigStore
) -> None:
    del chain.oracles[ORACLE_ID]
    with pytest.raises(OracleNotDeployedError):
        await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)
    assert store.get(ORACLE_ID).has_error is False


async def test_in_flight_slot_released_after_failure(make_executor, deployed, tracker: UpdateTracker) -> None:
    with pytest.raises(ApiFetchError):
        await make_executor(json_api({}, status_code=503)).execute(ORACLE_ID)
    assert not tracker.is_updating(ORACLE_ID)
    assert len(tracker) == 0


async def test_success_clears_previous_error(make_executor, deployed, store: OracleConfigStore) -> None:
    store.update(ORACLE_ID, {"has_error": True, "error_message": "old", "last_error_at": FIXED_NOW})

    await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    config = store.get(ORACLE_ID)
    assert config.has_error is False
    assert config.error_message == ""
    assert config.last_error_at is None


async def test_legacy_fields_are_backfilled(
    make_executor, chain: FakeChain, signer: FakeSigner, config_path: Path
) -> None:
    legacy = {
        "apiEndpoint": "https://api.example.com/btc",
        "dataPath": "data.price",
        "multiplier": 100,
        "updateInterval": 5,
    }
    write_records(config_path, {ORACLE_ID: legacy})
    chain.add_oracle(ORACLE_ID, value=0, creator=signer.account_for(ORACLE_ID).address)

    result = await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert result.new_value == 4250
    on_disk = json.loads(config_path.read_text())[ORACLE_ID]
    assert on_disk["priceMultiplier"] == 100
    assert on_disk["updateIntervalMinutes"] == 5
    assert "multiplier" not in on_disk


async def test_oversized_price_is_a_validation_error(
    make_executor, deployed, chain: FakeChain, store: OracleConfigStore
) -> None:
    with pytest.raises(ValidationError, match="overflows uint256"):
        await make_executor(json_api({"data": {"price": "1e100"}})).execute(ORACLE_ID)

    config = store.get(ORACLE_ID)
    assert config.has_error is True
    assert "overflows uint256" in config.error_message
    assert chain.sent == []


async def test_price_inside_array_response(
    make_executor, chain: FakeChain, signer: FakeSigner, config_path: Path
) -> None:
    write_records(config_path, {ORACLE_ID: oracle_record(ORACLE_ID, dataPath="data.0.price")})
    chain.add_oracle(ORACLE_ID, value=4000, creator=signer.account_for(ORACLE_ID).address)

    result = await make_executor(json_api({"data": [{"price": "42.5"}]})).execute(ORACLE_ID)

    assert result.new_value == 4250
    assert len(chain.sent) == 1


async def test_store_access_runs_off_the_event_loop_thread(
    make_executor, deployed, store: OracleConfigStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    loop_thread = threading.get_ident()
    seen = []

    def recording(method):
        def _wrapped(*args, **kwargs):
            seen.append((method.__name__, threading.get_ident()))
            return method(*args, **kwargs)
        return _wrapped

    for name in ("get", "backfill", "update"):
        monkeypatch.setattr(store, name, recording(getattr(store, name)))

    await make_executor(json_api(PRICE_RESPONSE)).execute(ORACLE_ID)

    assert {name for name, _ in seen} == {"get", "backfill", "update"}
    assert all(thread != loop_thread for _, thread in seen)
