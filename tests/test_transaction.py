import pytest
from eth_account import Account
from eth_utils import to_bytes

from src.oracle.errors import BroadcastError, NonceConflictError, PendingTransactionError, SigningError
from src.oracle.signer import RsvSignature
from src.oracle.transaction import (
    DEFAULT_GAS_LIMIT,
    LegacyTransactionBuilder,
    TxState,
    classify_broadcast_error,
    with_gas_margin,
)

from tests.conftest import THETA_TESTNET_CHAIN_ID, FakeChain, FakeSigner

PATH = "btc-usd"


def _builder(chain: FakeChain, signer: FakeSigner, **kwargs) -> LegacyTransactionBuilder:
    sender = signer.account_for(PATH).address
    return LegacyTransactionBuilder(
        chain=chain,
        signer=signer,
        sender=sender,
        derivation_path=PATH,
        to=chain.contract_address,
        data=chain.encode_update(PATH, 4250),
        oracle_id=PATH,
        **kwargs,
    )


async def test_signed_transaction_matches_local_legacy_signing(chain: FakeChain, signer: FakeSigner) -> None:
    account = signer.account_for(PATH)
    chain.nonces[account.address] = 7
    builder = _builder(chain, signer)

    result = await builder.sign_and_send()

    expected = Account.sign_transaction(
        {
            "nonce": 7,
            "gasPrice": chain.gas_price_value,
            "gas": with_gas_margin(chain.gas_estimate),
            "to": chain.contract_address,
            "value": 0,
            "data": to_bytes(hexstr=chain.encode_update(PATH, 4250)),
            "chainId": THETA_TESTNET_CHAIN_ID,
        },
        account.key,
    )
    assert chain.sent == [bytes(expected.raw_transaction)]
    assert Account.recover_transaction(chain.sent[0]) == account.address
    assert result.block_number == 1234
    assert builder.state is TxState.CONFIRMED


async def test_signing_request_carries_the_transaction_hash(chain: FakeChain, signer: FakeSigner) -> None:
    builder = _builder(chain, signer)
    await builder.attach_gas_and_nonce()
    digest = builder.compute_hash()

    await builder.request_signature()

    assert len(signer.sign_calls) == 1
    assert signer.sign_calls[0].payload == digest
    assert signer.sign_calls[0].derivation_path == PATH
    assert builder.state is TxState.SIGNED


def test_gas_margin_is_twenty_percent() -> None:
    assert with_gas_margin(50_000) == 60_000
    assert with_gas_margin(21_001) == 25_202


async def test_failed_gas_estimation_uses_default_limit(chain: FakeChain, signer: FakeSigner) -> None:
    chain.gas_estimate = None
    builder = _builder(chain, signer)

    tx = await builder.attach_gas_and_nonce()

    assert tx.gas == DEFAULT_GAS_LIMIT
    assert builder.state is TxState.GAS_ESTIMATED


async def test_explicit_gas_limit_skips_estimation(chain: FakeChain, signer: FakeSigner) -> None:
    chain.gas_estimate = None
    tx = await _builder(chain, signer, gas=90_000).attach_gas_and_nonce()
    assert tx.gas == 90_000


@pytest.mark.parametrize("v_offset", [0, 27, "eip155"])
async def test_any_signer_v_encoding_is_normalized(chain: FakeChain, signer: FakeSigner, v_offset) -> None:
    account = signer.account_for(PATH)

    def sign(request):
        signed = account.unsafe_sign_hash(request.payload)
        recovery_id = signed.v - 27
        if v_offset == "eip155":
            v = recovery_id + 35 + 2 * THETA_TESTNET_CHAIN_ID
        else:
            v = recovery_id + v_offset
        return RsvSignature(r=signed.r, s=signed.s, v=v)

    signer.sign_override = sign
    await _builder(chain, signer).sign_and_send()

    assert Account.recover_transaction(chain.sent[0]) == account.address


def test_legacy_v_values() -> None:
    assert RsvSignature(r=1, s=1, v=27).legacy_v(1) == 37
    assert RsvSignature(r=1, s=1, v=1).legacy_v(365) == 766
    assert RsvSignature(r=1, s=1, v=766).recovery_id == 1
    with pytest.raises(SigningError):
        RsvSignature(r=1, s=1, v=5).recovery_id


async def test_signature_from_wrong_key_is_rejected(chain: FakeChain, signer: FakeSigner) -> None:
    other = signer.account_for("eth-usd")

    def sign(request):
        signed = other.unsafe_sign_hash(request.payload)
        return RsvSignature(r=signed.r, s=signed.s, v=signed.v)

    signer.sign_override = sign
    builder = _builder(chain, signer)

    with pytest.raises(SigningError):
        await builder.sign_and_send()
    assert builder.state is TxState.FAILED
    assert chain.sent == []


async def test_signer_timeout_fails_the_attempt(chain: FakeChain, signer: FakeSigner) -> None:
    signer.sign_delay = 1.0
    builder = _builder(chain, signer, signer_timeout=0.01)

    with pytest.raises(SigningError, match="did not respond"):
        await builder.sign_and_send()
    assert builder.state is TxState.FAILED


async def test_nonce_rejection_is_classified(chain: FakeChain, signer: FakeSigner) -> None:
    chain.send_error = ValueError({"code": -32000, "message": "nonce too low"})
    builder = _builder(chain, signer)

    with pytest.raises(NonceConflictError):
        await builder.sign_and_send()
    assert builder.state is TxState.FAILED


async def test_reverted_receipt_is_a_broadcast_error(chain: FakeChain, signer: FakeSigner) -> None:
    chain.receipt = {"status": 0, "blockNumber": 99}
    with pytest.raises(BroadcastError, match="reverted"):
        await _builder(chain, signer).sign_and_send()


async def test_missing_receipt_still_counts_as_success(chain: FakeChain, signer: FakeSigner) -> None:
    chain.receipt = None
    result = await _builder(chain, signer).sign_and_send()
    assert result.block_number is None
    assert result.tx_hash.startswith("0x")


async def test_steps_must_run_in_order(chain: FakeChain, signer: FakeSigner) -> None:
    builder = _builder(chain, signer)
    with pytest.raises(RuntimeError):
        builder.compute_hash()
    with pytest.raises(RuntimeError):
        await builder.broadcast()


@pytest.mark.parametrize(
    "message, expected",
    [
        ("nonce too low", NonceConflictError),
        ("already known", NonceConflictError),
        ("Nonce has already been used", NonceConflictError),
        ("replacement transaction underpriced", PendingTransactionError),
        ("tx already pending in pool", PendingTransactionError),
        ("insufficient funds for gas * price + value", BroadcastError),
    ],
)
def test_classify_broadcast_error(message: str, expected) -> None:
    error = classify_broadcast_error(ValueError(message), "btc-usd")
    assert type(error) is expected
    assert error.oracle_id == "btc-usd"
    assert error.retryable
