"""
Tests for the Solana ledger client against a mocked RPC.

Tests cover:
- Keypair loading
- RPC error classification
- Three-way signature verification
- Send/confirm: reference hook ordering, resends and timeouts
- Acquire through Jupiter Ultra: observed output, error mapping

Note: These tests require solders and solana-py to be installed.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

try:
    from solders.keypair import Keypair
    from solders.signature import Signature
    from solders.transaction_status import TransactionConfirmationStatus
    _HAS_SOLDERS = True
except ImportError:
    _HAS_SOLDERS = False

pytestmark = pytest.mark.skipif(
    not _HAS_SOLDERS,
    reason="solders is required for Solana client tests",
)

from inferno.errors import ConfigurationError, RemoteRejected, RemoteTimeout, VerificationUnavailable

MINT_ADDRESS = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class FakeTx:
    """Signed transaction stand-in: one signature and some bytes."""

    def __init__(self, signature):
        self.signatures = [signature]

    def __bytes__(self):
        return b"signed-tx"


def status(confirmation=None, err=None, slot=42):
    return SimpleNamespace(value=[SimpleNamespace(err=err, slot=slot, confirmation_status=confirmation)])


@pytest.fixture
def solana_client():
    from inferno.chain.solana_client import SolanaLedgerClient

    client = SolanaLedgerClient(
        "http://localhost:8899",
        Keypair(),
        MINT_ADDRESS,
        timeout_seconds=1.0,
        max_retries=3,
        retry_delay=0.0,
    )
    client._client = AsyncMock()
    return client


@pytest.fixture
def reference():
    return str(Signature.default())


class TestHelpers:
    def test_load_keypair_base58_and_json(self):
        """Both wallet export formats load the same key."""
        import base58

        from inferno.chain.solana_client import load_keypair

        keypair = Keypair()
        raw = bytes(keypair)
        assert load_keypair(base58.b58encode(raw).decode()).pubkey() == keypair.pubkey()
        assert load_keypair(json.dumps(list(raw))).pubkey() == keypair.pubkey()

    def test_load_keypair_invalid(self):
        """Garbage is a configuration error."""
        from inferno.chain.solana_client import load_keypair

        with pytest.raises(ConfigurationError):
            load_keypair("not-a-key")

    @pytest.mark.parametrize("error,verdict", [
        ("Transaction already been processed", "landed"),
        ("Blockhash not found", "permanent"),
        ("Attempt to debit an account but found no record of a prior credit: insufficient funds", "permanent"),
        ("custom program error: 0x1771", "permanent"),
        ("Request timed out", "retryable"),
        ("429 Too Many Requests", "retryable"),
        ("something odd", "unknown"),
        (None, "unknown"),
    ])
    def test_classify_rpc_error(self, error, verdict):
        """Errors map to the retry decision."""
        from inferno.chain.solana_client import classify_rpc_error

        assert classify_rpc_error(error) == verdict

    def test_associated_token_address_matches_spl(self):
        """ATA derivation agrees with spl-token for the classic token program."""
        from solders.pubkey import Pubkey
        from spl.token.constants import TOKEN_PROGRAM_ID
        from spl.token.instructions import get_associated_token_address

        from inferno.chain.solana_client import derive_associated_token_address

        owner = Keypair().pubkey()
        mint = Pubkey.from_string(MINT_ADDRESS)
        assert derive_associated_token_address(owner, mint, TOKEN_PROGRAM_ID) == get_associated_token_address(owner, mint)


class TestVerifyFinalized:
    """Test three-way verification."""

    @pytest.mark.asyncio
    async def test_confirmed(self, solana_client, reference):
        """Confirmed or finalized without error verifies."""
        solana_client._client.get_signature_statuses.return_value = status(TransactionConfirmationStatus.Finalized)
        result = await solana_client.verify_finalized(reference)
        assert result.verified is True
        assert result.slot == 42

    @pytest.mark.asyncio
    async def test_not_found(self, solana_client, reference):
        """An unknown signature definitively failed."""
        solana_client._client.get_signature_statuses.return_value = SimpleNamespace(value=[None])
        result = await solana_client.verify_finalized(reference)
        assert result.verified is False
        assert result.error == "not_found"

    @pytest.mark.asyncio
    async def test_errored(self, solana_client, reference):
        """A landed but failed transaction is not verified."""
        solana_client._client.get_signature_statuses.return_value = status(
            TransactionConfirmationStatus.Finalized, err="InstructionError"
        )
        assert (await solana_client.verify_finalized(reference)).verified is False

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self, solana_client, reference):
        """A failed lookup is never read as failure."""
        solana_client._client.get_signature_statuses.side_effect = OSError("connection reset")
        with pytest.raises(VerificationUnavailable):
            await solana_client.verify_finalized(reference)

    @pytest.mark.asyncio
    async def test_processed_only_is_unavailable(self, solana_client, reference):
        """A transaction seen only at processed may still roll back."""
        solana_client._client.get_signature_statuses.return_value = status(TransactionConfirmationStatus.Processed)
        with pytest.raises(VerificationUnavailable):
            await solana_client.verify_finalized(reference)


class TestSendAndConfirm:
    """Test the send loop."""

    @pytest.mark.asyncio
    async def test_hook_runs_before_send(self, solana_client, reference):
        """The reference is handed out before anything is sent."""
        events = []

        async def send(raw, opts=None):
            events.append("send")

        solana_client._client.send_raw_transaction.side_effect = send
        solana_client._client.get_signature_statuses.return_value = status(TransactionConfirmationStatus.Confirmed)

        signature = await solana_client._send_and_confirm(
            FakeTx(Signature.default()), lambda ref: events.append(("hook", ref))
        )

        assert signature == reference
        assert events == [("hook", reference), "send"]

    @pytest.mark.asyncio
    async def test_transient_errors_resend_same_bytes(self, solana_client, reference):
        """Transport errors resend the identical transaction."""
        solana_client._client.send_raw_transaction.side_effect = [OSError("reset"), None]
        solana_client._client.get_signature_statuses.return_value = status(TransactionConfirmationStatus.Confirmed)

        await solana_client._send_and_confirm(FakeTx(Signature.default()), None)

        calls = solana_client._client.send_raw_transaction.await_args_list
        assert len(calls) == 2
        assert calls[0].args[0] == calls[1].args[0] == b"signed-tx"

    @pytest.mark.asyncio
    async def test_send_exhausted_is_timeout_with_reference(self, solana_client, reference):
        """Exhausted resends raise a timeout carrying the signature."""
        solana_client._client.send_raw_transaction.side_effect = OSError("unreachable")

        with pytest.raises(RemoteTimeout) as exc_info:
            await solana_client._send_and_confirm(FakeTx(Signature.default()), None)

        assert exc_info.value.reference == reference
        assert solana_client._client.send_raw_transaction.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_transaction_rejected(self, solana_client, reference):
        """A transaction that landed with an error is rejected."""
        solana_client._client.get_signature_statuses.return_value = status(err="InstructionError")

        with pytest.raises(RemoteRejected) as exc_info:
            await solana_client._send_and_confirm(FakeTx(Signature.default()), None)
        assert exc_info.value.reference == reference

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, solana_client, reference):
        """No confirmation within the timeout raises a timeout with the reference."""
        solana_client.timeout_seconds = 0
        with pytest.raises(RemoteTimeout) as exc_info:
            await solana_client._send_and_confirm(FakeTx(Signature.default()), None)
        assert exc_info.value.reference == reference


class TestClientProperties:
    def test_addresses(self, solana_client):
        """The fee vault is the creator vault of the operating wallet."""
        from inferno.chain.pump import derive_creator_vault

        assert solana_client.token_mint == MINT_ADDRESS
        assert solana_client.fee_vault_address == str(derive_creator_vault(solana_client.operator_address))


def unsigned_order(keypair, out_amount="5000"):
    """A Jupiter /order response carrying a real serialized transaction."""
    import base64

    from solders.hash import Hash
    from solders.message import MessageV0
    from solders.transaction import VersionedTransaction

    message = MessageV0.try_compile(keypair.pubkey(), [], [], Hash.default())
    tx = VersionedTransaction(message, [keypair])
    order = {
        "transaction": base64.b64encode(bytes(tx)).decode("ascii"),
        "requestId": "req-1",
        "outAmount": out_amount,
    }
    return order, str(tx.signatures[0])


@pytest.fixture
def jupiter_buy(solana_client):
    order, signature = unsigned_order(solana_client.keypair)
    solana_client.jupiter = AsyncMock()
    solana_client.jupiter.get_order.return_value = order
    return solana_client, signature


class TestBuyWithJupiter:
    """Test the acquire step through Jupiter Ultra."""

    @pytest.mark.asyncio
    async def test_hook_runs_before_execute(self, jupiter_buy):
        """Should hand out the signature before the order is executed."""
        client, signature = jupiter_buy
        events = []

        async def execute(signed_b64, request_id, reference):
            events.append(("execute", reference))
            return {"status": "Success", "outputAmountResult": "4700"}

        client.jupiter.execute.side_effect = execute

        await client._buy_with_jupiter(1_000_000, 1000, lambda ref: events.append(("hook", ref)))

        assert events == [("hook", signature), ("execute", signature)]
        assert client.jupiter.execute.await_args.args[1] == "req-1"

    @pytest.mark.asyncio
    async def test_reports_executed_output_not_quote(self, jupiter_buy):
        """Should report the amount Jupiter says arrived, not the order quote."""
        client, signature = jupiter_buy
        client.jupiter.execute.return_value = {"status": "Success", "outputAmountResult": "4700"}

        result = await client._buy_with_jupiter(1_000_000, 1000, None)

        assert result.reference == signature
        assert result.reported_quantity == 4700

    @pytest.mark.asyncio
    @pytest.mark.parametrize("execute_result", [
        {"status": "Success"},
        {"status": "Success", "outputAmountResult": "0"},
    ])
    async def test_missing_output_rejected(self, jupiter_buy, execute_result):
        """Should reject a swap with no observed output instead of trusting the quote."""
        client, signature = jupiter_buy
        client.jupiter.execute.return_value = execute_result

        with pytest.raises(RemoteRejected) as exc_info:
            await client._buy_with_jupiter(1_000_000, 1000, None)
        assert exc_info.value.reference == signature

    @pytest.mark.asyncio
    async def test_submit_action_routes_acquire(self, jupiter_buy):
        """Should route ACQUIRE_OUTPUT through Jupiter with amount and slippage."""
        from inferno.chain.client import ActionKind
        from inferno.chain.jupiter import SOL_MINT

        client, _ = jupiter_buy
        client.jupiter.execute.return_value = {"status": "Success", "outputAmountResult": "10"}

        result = await client.submit_action(
            ActionKind.ACQUIRE_OUTPUT, {"amount": 2_000, "slippage_bps": 500}
        )

        assert result.reported_quantity == 10
        assert client.jupiter.get_order.await_args.args == (
            SOL_MINT, MINT_ADDRESS, 2_000, client.operator_address, 500
        )


class FakeResponse:
    def __init__(self, data, status=200):
        self._data = data
        self.status = status

    async def json(self, content_type=None):
        return self._data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeSession:
    """aiohttp session stand-in returning one canned response or error."""

    closed = False

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _request(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

    get = _request
    post = _request


@pytest.fixture
def jupiter():
    from inferno.chain.jupiter import JupiterUltraClient

    return JupiterUltraClient(base_url="http://jupiter.test/ultra/v1/")


class TestJupiterUltraClient:
    """Test order/execute error mapping."""

    @pytest.mark.asyncio
    async def test_get_order(self, jupiter):
        """Should pass amounts as strings and return the order."""
        jupiter._session = FakeSession(FakeResponse({"transaction": "dHg=", "requestId": "r", "outAmount": "9"}))

        order = await jupiter.get_order("in", "out", 1_500, "taker", 300)

        url, kwargs = jupiter._session.calls[0]
        assert url == "http://jupiter.test/ultra/v1/order"
        assert kwargs["params"]["amount"] == "1500"
        assert kwargs["params"]["slippageBps"] == "300"
        assert order["requestId"] == "r"

    @pytest.mark.asyncio
    async def test_get_order_error_rejected(self, jupiter):
        """Should reject an order carrying an error message."""
        jupiter._session = FakeSession(FakeResponse({"error": "Insufficient funds"}, status=400))
        with pytest.raises(RemoteRejected):
            await jupiter.get_order("in", "out", 1, "taker")

    @pytest.mark.asyncio
    async def test_get_order_server_error_retryable(self, jupiter):
        """Should mark rate limits as retryable and never rejected."""
        from inferno.errors import RemoteError

        jupiter._session = FakeSession(FakeResponse({}, status=429))
        with pytest.raises(RemoteError) as exc_info:
            await jupiter.get_order("in", "out", 1, "taker")
        assert exc_info.value.retryable is True
        assert not isinstance(exc_info.value, RemoteRejected)

    @pytest.mark.asyncio
    async def test_execute_not_success_rejected(self, jupiter):
        """Should reject a non-Success execute status with the reference attached."""
        jupiter._session = FakeSession(FakeResponse({"status": "Failed", "error": "slippage"}))
        with pytest.raises(RemoteRejected) as exc_info:
            await jupiter.execute("c2lnbmVk", "req-1", "sig-1")
        assert exc_info.value.reference == "sig-1"

    @pytest.mark.asyncio
    async def test_execute_connection_error_is_timeout(self, jupiter):
        """Should treat a broken connection as a timeout carrying the signature."""
        import aiohttp

        jupiter._session = FakeSession(error=aiohttp.ClientConnectionError("reset"))
        with pytest.raises(RemoteTimeout) as exc_info:
            await jupiter.execute("c2lnbmVk", "req-1", "sig-1")
        assert exc_info.value.reference == "sig-1"

    @pytest.mark.asyncio
    async def test_execute_success(self, jupiter):
        """Should post the signed transaction and request id."""
        jupiter._session = FakeSession(FakeResponse({"status": "Success", "outputAmountResult": "7"}))

        result = await jupiter.execute("c2lnbmVk", "req-1", "sig-1")

        url, kwargs = jupiter._session.calls[0]
        assert url.endswith("/execute")
        assert kwargs["json"] == {"signedTransaction": "c2lnbmVk", "requestId": "req-1"}
        assert result["outputAmountResult"] == "7"
