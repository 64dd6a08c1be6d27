# tests/test_x402_verifier.py
"""
Unit tests for on-chain USDC payment verification.
"""
import pytest
from unittest.mock import patch, MagicMock
from requests.exceptions import Timeout, ConnectionError

from app.x402.chains import CHAINS
from app.x402.verifier import (
    TRANSFER_TOPIC,
    VerificationOutcome,
    find_usdc_transfer,
    verify_payment,
)

RECIPIENT = "0x1234567890AbcdEF1234567890aBcdef12345678"
PAYER = "0x9999999999999999999999999999999999999999"
TX_HASH = "0x" + "ab" * 32
BASE_USDC = CHAINS["base"].usdc_contract


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(amount: int, to: str = RECIPIENT, token: str = BASE_USDC, sender: str = PAYER) -> dict:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(to)],
        "data": hex(amount),
    }


def rpc_response(receipt) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": receipt}
    return response


def receipt_with(*logs, status: str = "0x1") -> dict:
    return {"status": status, "logs": list(logs)}


@pytest.fixture
def mock_settings():
    with patch("app.x402.verifier.settings") as settings:
        settings.WALLET_ADDRESS = RECIPIENT
        settings.RPC_TIMEOUT_SECONDS = 10
        yield settings


class TestFindUsdcTransfer:
    """Test log scanning."""

    def test_exact_minimum_accepted(self):
        """A transfer of exactly the minimum is accepted."""
        outcome = find_usdc_transfer([transfer_log(50000)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is True
        assert outcome.observed_amount == 50000
        assert outcome.payer == PAYER.lower()

    def test_one_unit_below_rejected(self):
        """One unit below the minimum is rejected."""
        outcome = find_usdc_transfer([transfer_log(49999)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is False
        assert outcome.observed_amount == 49999
        assert outcome.reason == "insufficient amount"

    def test_overpayment_accepted(self):
        """Any amount above the minimum is accepted."""
        outcome = find_usdc_transfer([transfer_log(10_000_000)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is True

    def test_wrong_token_rejected(self):
        """A transfer from another contract is ignored even with correct recipient and amount."""
        fake_token = "0x" + "de" * 20
        outcome = find_usdc_transfer([transfer_log(50000, token=fake_token)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is False
        assert outcome.reason == "no matching USDC transfer"

    def test_wrong_recipient_rejected(self):
        """A transfer to another address is ignored."""
        other = "0x" + "11" * 20
        outcome = find_usdc_transfer([transfer_log(50000, to=other)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is False

    def test_address_comparison_is_case_insensitive(self):
        """Checksummed and lowercase addresses match."""
        log = transfer_log(50000, token=BASE_USDC.lower())
        outcome = find_usdc_transfer([log], BASE_USDC.upper().replace("0X", "0x"), RECIPIENT.lower(), 50000)
        assert outcome.accepted is True

    def test_non_transfer_events_ignored(self):
        """Logs with another event signature are skipped."""
        log = transfer_log(50000)
        log["topics"][0] = "0x" + "00" * 32
        outcome = find_usdc_transfer([log], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is False

    def test_malformed_logs_skipped(self):
        """Logs with too few topics or bad data do not break the scan."""
        short = {"address": BASE_USDC, "topics": [TRANSFER_TOPIC], "data": "0x1"}
        bad_data = transfer_log(50000)
        bad_data["data"] = "not-hex"
        good = transfer_log(60000)
        outcome = find_usdc_transfer([short, bad_data, good], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is True
        assert outcome.observed_amount == 60000

    def test_second_log_can_qualify(self):
        """An insufficient transfer followed by a sufficient one is accepted."""
        outcome = find_usdc_transfer(
            [transfer_log(100), transfer_log(50000)], BASE_USDC, RECIPIENT, 50000
        )
        assert outcome.accepted is True

    def test_empty_logs(self):
        outcome = find_usdc_transfer([], BASE_USDC, RECIPIENT, 1)
        assert outcome.accepted is False

    @pytest.mark.parametrize("entry", [None, "0xdeadbeef", 42, ["topics"]])
    def test_non_dict_entries_skipped(self, entry):
        outcome = find_usdc_transfer([entry, transfer_log(50000)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is True

    @pytest.mark.parametrize("logs", [None, "not-a-list", {"0": transfer_log(50000)}, 7])
    def test_non_list_logs_treated_as_empty(self, logs):
        outcome = find_usdc_transfer(logs, BASE_USDC, RECIPIENT, 1)
        assert outcome.accepted is False
        assert outcome.reason == "no matching USDC transfer"

    def test_non_string_topics_skipped(self):
        odd = {"address": BASE_USDC, "topics": [TRANSFER_TOPIC, 12345, 67890], "data": hex(50000)}
        outcome = find_usdc_transfer([odd], BASE_USDC, RECIPIENT, 1)
        assert outcome.accepted is False

    def test_topics_not_a_list_skipped(self):
        odd = {"address": BASE_USDC, "topics": "0xddf252ad", "data": hex(50000)}
        outcome = find_usdc_transfer([odd, transfer_log(50000)], BASE_USDC, RECIPIENT, 50000)
        assert outcome.accepted is True


class TestVerifyPayment:
    """Test verify_payment with a mocked RPC transport."""

    @pytest.mark.parametrize("receipt", [
        {"status": "0x1", "logs": [None]},
        {"status": "0x1", "logs": "garbage"},
        {"status": "0x1", "logs": [{"topics": [TRANSFER_TOPIC, None, 5], "address": BASE_USDC}]},
        ["not", "a", "receipt"],
    ])
    @patch("app.x402.verifier.requests.post")
    def test_malformed_receipt_rejected_not_raised(self, mock_post, mock_settings, receipt):
        """A structurally broken receipt is a rejection, never an exception."""
        mock_post.return_value = rpc_response(receipt)

        outcome = verify_payment(TX_HASH, 1000, "base")

        assert outcome.accepted is False

    @patch("app.x402.verifier.requests.post")
    def test_valid_payment(self, mock_post, mock_settings):
        """Successful receipt with a qualifying transfer is accepted."""
        mock_post.return_value = rpc_response(receipt_with(transfer_log(20000)))

        outcome = verify_payment(TX_HASH, 20000, "base")

        assert outcome.accepted is True
        assert bool(outcome) is True
        args, kwargs = mock_post.call_args
        assert args[0] == CHAINS["base"].rpc_url
        assert kwargs["json"]["method"] == "eth_getTransactionReceipt"
        assert kwargs["json"]["params"] == [TX_HASH]
        assert kwargs["timeout"] == 10

    @patch("app.x402.verifier.requests.post")
    def test_hash_is_normalized(self, mock_post, mock_settings):
        """Hash is trimmed and lowercased before the RPC call."""
        mock_post.return_value = rpc_response(receipt_with(transfer_log(20000)))

        verify_payment("  " + TX_HASH.upper().replace("0X", "0x") + " ", 20000, "base")

        assert mock_post.call_args.kwargs["json"]["params"] == [TX_HASH]

    @patch("app.x402.verifier.requests.post")
    def test_wrong_length_rejected_without_rpc(self, mock_post, mock_settings):
        """A hash of the wrong length is rejected before any network call."""
        outcome = verify_payment("0x1234", 20000, "base")

        assert outcome.accepted is False
        mock_post.assert_not_called()

    @patch("app.x402.verifier.requests.post")
    def test_failed_transaction_rejected(self, mock_post, mock_settings):
        """Receipt with status 0x0 is rejected."""
        mock_post.return_value = rpc_response(receipt_with(transfer_log(20000), status="0x0"))

        outcome = verify_payment(TX_HASH, 20000, "base")

        assert outcome.accepted is False
        assert outcome.reason == "transaction failed or not found"

    @patch("app.x402.verifier.requests.post")
    def test_missing_receipt_rejected(self, mock_post, mock_settings):
        """Unknown transaction (null receipt) is rejected."""
        mock_post.return_value = rpc_response(None)

        assert verify_payment(TX_HASH, 20000, "base").accepted is False

    @patch("app.x402.verifier.requests.post")
    def test_rpc_timeout_rejected(self, mock_post, mock_settings):
        """RPC timeout resolves to a rejection, not an exception."""
        mock_post.side_effect = Timeout("RPC timeout")

        outcome = verify_payment(TX_HASH, 20000, "base")

        assert outcome.accepted is False
        assert outcome.reason == "rpc unavailable"

    @patch("app.x402.verifier.requests.post")
    def test_rpc_connection_error_rejected(self, mock_post, mock_settings):
        mock_post.side_effect = ConnectionError("refused")

        assert verify_payment(TX_HASH, 20000, "base").accepted is False

    @patch("app.x402.verifier.requests.post")
    def test_rpc_error_payload_rejected(self, mock_post, mock_settings):
        """JSON-RPC error object resolves to a rejection."""
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "boom"}}
        mock_post.return_value = response

        outcome = verify_payment(TX_HASH, 20000, "base")

        assert outcome.accepted is False
        assert outcome.reason == "rpc error"

    @patch("app.x402.verifier.requests.post")
    def test_uses_chain_specific_contract(self, mock_post, mock_settings):
        """A Base USDC transfer does not satisfy a SKALE verification."""
        mock_post.return_value = rpc_response(receipt_with(transfer_log(20000, token=BASE_USDC)))

        outcome = verify_payment(TX_HASH, 20000, "skale")

        assert outcome.accepted is False
        assert mock_post.call_args.args[0] == CHAINS["skale"].rpc_url

    @patch("app.x402.verifier.requests.post")
    def test_no_recipient_configured(self, mock_post, mock_settings):
        """Without WALLET_ADDRESS nothing can be verified."""
        mock_settings.WALLET_ADDRESS = None

        outcome = verify_payment(TX_HASH, 20000, "base")

        assert outcome.accepted is False
        mock_post.assert_not_called()

    @patch("app.x402.verifier.requests.post")
    def test_deterministic(self, mock_post, mock_settings):
        """Identical inputs against an unchanged receipt give the same outcome."""
        mock_post.return_value = rpc_response(receipt_with(transfer_log(20000)))

        first = verify_payment(TX_HASH, 20000, "base")
        second = verify_payment(TX_HASH, 20000, "base")

        assert first == second


class TestVerificationOutcome:
    def test_falsy_when_rejected(self):
        assert not VerificationOutcome(accepted=False, reason="x")

    def test_truthy_when_accepted(self):
        assert VerificationOutcome(accepted=True, observed_amount=1)
