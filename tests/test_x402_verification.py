# tests/test_x402_verification.py
"""
Unit tests for on-chain payment verification.
"""
import pytest
from unittest.mock import MagicMock, patch
from requests.exceptions import ConnectionError, Timeout

from app.core.errors import LedgerUnavailableError, PaymentValidationError
from app.services.ledger import LedgerRpcError
from app.x402.verification import (
    PaymentLeg,
    RetryPolicy,
    TransactionNotFound,
    get_account_keys,
    get_signer_keys,
    meets_tolerance,
    verify_payment,
    verify_split_payment,
    with_retry,
)
from ledger_fakes import FakeLedger, native_transfer_tx, new_address

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
NO_WAIT = RetryPolicy(attempts=3, base_delay=0)


def _token_tx(owner, pre_amount, post_amount, mint=USDC_MINT, err=None):
    return {
        "meta": {
            "err": err,
            "preBalances": [0, 0],
            "postBalances": [0, 0],
            "preTokenBalances": [
                {"accountIndex": 1, "mint": mint, "owner": owner, "uiTokenAmount": {"amount": str(pre_amount)}},
            ],
            "postTokenBalances": [
                {"accountIndex": 1, "mint": mint, "owner": owner, "uiTokenAmount": {"amount": str(post_amount)}},
            ],
        },
        "transaction": {"message": {"accountKeys": [new_address(), new_address()]}},
    }


class TestRetryPolicy:
    """Test bounded linear backoff."""

    def test_linear_delays(self):
        """Waits grow linearly with the attempt number."""
        policy = RetryPolicy(attempts=3, base_delay=1.0)
        assert [policy.delay_for(n) for n in (1, 2)] == [1.0, 2.0]

    def test_from_settings(self):
        """Policy comes from LEDGER_RETRY_* settings."""
        policy = RetryPolicy.from_settings()
        assert policy.attempts == 3
        assert policy.base_delay == 0

    def test_succeeds_after_transient_failures(self):
        """A call that succeeds on the last attempt returns its value."""
        fn = MagicMock(side_effect=[TransactionNotFound("pending"), Timeout("slow"), "tx"])
        sleep = MagicMock()

        assert with_retry(fn, "fetch", RetryPolicy(attempts=3, base_delay=1.0), sleep) == "tx"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_exhaustion_raises_unavailable(self):
        """After the last attempt LedgerUnavailableError is raised without a final sleep."""
        fn = MagicMock(side_effect=ConnectionError("down"))
        sleep = MagicMock()

        with pytest.raises(LedgerUnavailableError):
            with_retry(fn, "fetch", RetryPolicy(attempts=3, base_delay=1.0), sleep)
        assert fn.call_count == 3
        assert sleep.call_count == 2

    def test_rpc_errors_are_retried(self):
        """JSON-RPC errors count as transient."""
        fn = MagicMock(side_effect=[LedgerRpcError("getTransaction", {"code": -32005}), "tx"])
        assert with_retry(fn, "fetch", NO_WAIT, MagicMock()) == "tx"

    def test_other_errors_propagate(self):
        """Programming errors are not retried."""
        fn = MagicMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            with_retry(fn, "fetch", NO_WAIT, MagicMock())
        assert fn.call_count == 1


class TestTolerance:
    """Test the 95% acceptance rule."""

    def test_exact_boundary(self):
        """Exactly 95% is accepted."""
        assert meets_tolerance(95, 100) is True

    def test_below_boundary(self):
        """Anything below 95% is rejected."""
        assert meets_tolerance(94, 100) is False

    def test_integer_exact(self):
        """No float rounding at large amounts."""
        assert meets_tolerance(950_000_000_000_000_000, 10 ** 18) is True
        assert meets_tolerance(949_999_999_999_999_999, 10 ** 18) is False

    def test_custom_tolerance(self):
        """The tolerance percentage is configurable."""
        assert meets_tolerance(99, 100, tolerance_percent=100) is False


class TestAccountKeys:
    """Test account key extraction."""

    def test_plain_and_parsed_keys(self):
        """String and {'pubkey': ...} entries are both supported."""
        tx = {"transaction": {"message": {"accountKeys": ["A", {"pubkey": "B"}]}}, "meta": {}}
        assert get_account_keys(tx) == ["A", "B"]

    def test_loaded_addresses_appended(self):
        """v0 loaded addresses follow the static keys (writable, then readonly)."""
        tx = {
            "transaction": {"message": {"accountKeys": ["A"]}},
            "meta": {"loadedAddresses": {"writable": ["W"], "readonly": ["R"]}},
        }
        assert get_account_keys(tx) == ["A", "W", "R"]


class TestVerifyPayment:
    """Test single-recipient verification."""

    def setup_method(self):
        self.ledger = FakeLedger()
        self.recipient = new_address()

    def test_native_payment_accepted(self):
        """A full native transfer verifies."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.recipient: 1_000_000})
        result = verify_payment("sig1", 1_000_000, self.recipient, "SOL", ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is True
        assert result.retryable is False
        assert result.signature == "sig1"

    def test_96_percent_accepted(self):
        """A 96% delta is within tolerance."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.recipient: 960_000})
        result = verify_payment("sig1", 1_000_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is True

    def test_94_percent_rejected(self):
        """A 94% delta is a definitive rejection."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.recipient: 940_000})
        result = verify_payment("sig1", 1_000_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.retryable is False
        assert "Insufficient payment" in result.reason

    def test_wrong_recipient_rejected(self):
        """Paying someone else is rejected."""
        self.ledger.transactions["sig1"] = native_transfer_tx({new_address(): 1_000_000})
        result = verify_payment("sig1", 1_000_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.reason == "Recipient not found in transaction"

    def test_failed_transaction_rejected(self):
        """A transaction that recorded an execution error is rejected."""
        self.ledger.transactions["sig1"] = native_transfer_tx(
            {self.recipient: 1_000_000}, err={"InstructionError": [0, "Custom"]}
        )
        result = verify_payment("sig1", 1_000_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.retryable is False
        assert result.reason.startswith("Transaction failed")

    def test_missing_meta_rejected(self):
        """Transactions without metadata are rejected."""
        self.ledger.transactions["sig1"] = {"transaction": {"message": {"accountKeys": []}}, "meta": None}
        result = verify_payment("sig1", 1_000_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.reason == "Transaction metadata not available"

    def test_not_found_is_retryable(self):
        """A transaction that never appears is a retryable failure, after exactly 3 fetches."""
        result = verify_payment("missing", 1_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.retryable is True
        fetches = [c for c in self.ledger.calls if c[0] == "get_transaction"]
        assert len(fetches) == 3

    def test_transport_error_is_retryable(self):
        """Timeouts exhaust the budget and report retryable."""
        self.ledger.error = Timeout("rpc timeout")
        sleep = MagicMock()
        result = verify_payment(
            "sig1", 1_000, self.recipient, ledger=self.ledger,
            policy=RetryPolicy(attempts=3, base_delay=1.0), sleep=sleep,
        )
        assert result.valid is False
        assert result.retryable is True
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_appears_on_second_attempt(self):
        """A transaction visible on a later attempt verifies."""
        tx = native_transfer_tx({self.recipient: 1_000})
        ledger = MagicMock()
        ledger.get_transaction.side_effect = [None, tx]
        result = verify_payment("sig1", 1_000, self.recipient, ledger=ledger, policy=NO_WAIT)
        assert result.valid is True
        assert ledger.get_transaction.call_count == 2

    def test_token_payment_accepted(self):
        """USDC payments use the owner's token-account delta for the mint."""
        self.ledger.transactions["sig1"] = _token_tx(self.recipient, 0, 2_000_000)
        result = verify_payment("sig1", 2_000_000, self.recipient, "USDC", ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is True

    def test_token_payment_wrong_mint(self):
        """Token transfers of another mint do not count."""
        self.ledger.transactions["sig1"] = _token_tx(self.recipient, 0, 2_000_000, mint="OtherMint")
        result = verify_payment("sig1", 2_000_000, self.recipient, "USDC", ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.reason == "Token transfer not found"

    def test_token_payment_insufficient(self):
        """Token deltas below tolerance are rejected."""
        self.ledger.transactions["sig1"] = _token_tx(self.recipient, 500_000, 2_000_000)
        result = verify_payment("sig1", 2_000_000, self.recipient, "USDC", ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert "Insufficient payment" in result.reason

    def test_malformed_transaction(self):
        """Transactions missing balance arrays are rejected, not crashed on."""
        self.ledger.transactions["sig1"] = {"transaction": {"message": {"accountKeys": [self.recipient]}}, "meta": {"err": None}}
        result = verify_payment("sig1", 1_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.reason.startswith("Malformed transaction")

    @pytest.mark.parametrize("signature", ["", None])
    def test_missing_signature_is_validation_error(self, signature):
        """An empty signature is rejected before any ledger call."""
        with pytest.raises(PaymentValidationError):
            verify_payment(signature, 1_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert self.ledger.calls == []

    def test_unknown_asset_is_validation_error(self):
        """Unknown asset kinds are rejected."""
        with pytest.raises(PaymentValidationError):
            verify_payment("sig1", 1_000, self.recipient, "BTC", ledger=self.ledger, policy=NO_WAIT)

    def test_idempotent(self):
        """Verifying the same signature twice gives the same answer."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.recipient: 1_000})
        first = verify_payment("sig1", 1_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        second = verify_payment("sig1", 1_000, self.recipient, ledger=self.ledger, policy=NO_WAIT)
        assert first == second


class TestVerifySplitPayment:
    """Test verification of creator + platform legs in one transaction."""

    def setup_method(self):
        self.ledger = FakeLedger()
        self.creator = new_address()
        self.vault = new_address()

    def test_both_legs_paid(self):
        """A transaction paying both legs verifies."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 992_500, self.vault: 7_500})
        legs = [PaymentLeg(self.creator, 992_500), PaymentLeg(self.vault, 7_500)]
        result = verify_split_payment("sig1", legs, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is True
        fetches = [c for c in self.ledger.calls if c[0] == "get_transaction"]
        assert len(fetches) == 1

    def test_missing_platform_leg(self):
        """Skipping the platform fee is rejected."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 1_000_000})
        legs = [PaymentLeg(self.creator, 992_500), PaymentLeg(self.vault, 7_500)]
        result = verify_split_payment("sig1", legs, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is False
        assert result.retryable is False

    def test_zero_legs_skipped(self):
        """Zero-amount legs (e.g. a fee that floors to 0) are not required on-chain."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 133})
        legs = [PaymentLeg(self.creator, 133), PaymentLeg(self.vault, 0)]
        result = verify_split_payment("sig1", legs, ledger=self.ledger, policy=NO_WAIT)
        assert result.valid is True

    @patch("app.x402.verification.SolanaRpcClient")
    def test_default_ledger_client(self, mock_client_cls):
        """Without an injected ledger a SolanaRpcClient is created."""
        mock_client_cls.return_value.get_transaction.return_value = native_transfer_tx({self.creator: 10})
        result = verify_split_payment("sig1", [PaymentLeg(self.creator, 10)], policy=NO_WAIT)
        assert result.valid is True
        mock_client_cls.assert_called_once()


class TestPayerBinding:
    """Test the optional check that the buyer signed the payment."""

    def setup_method(self):
        self.ledger = FakeLedger()
        self.creator = new_address()
        self.buyer = new_address()

    def test_signer_keys_from_header(self):
        """With json encoding the first numRequiredSignatures keys signed."""
        tx = native_transfer_tx({self.creator: 10}, fee_payer=self.buyer)
        assert get_signer_keys(tx) == [self.buyer]

    def test_signer_keys_from_parsed_accounts(self):
        """jsonParsed account keys carry a signer flag."""
        tx = {"transaction": {"message": {"accountKeys": [
            {"pubkey": self.buyer, "signer": True, "writable": True},
            {"pubkey": self.creator, "signer": False, "writable": True},
        ]}}}
        assert get_signer_keys(tx) == [self.buyer]

    def test_signed_by_payer(self):
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 1_000}, fee_payer=self.buyer)
        result = verify_split_payment("sig1", [PaymentLeg(self.creator, 1_000)],
                                      ledger=self.ledger, policy=NO_WAIT, payer=self.buyer)
        assert result.valid is True

    def test_signed_by_someone_else(self):
        """A payment from another wallet is rejected without retrying."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 1_000})
        result = verify_split_payment("sig1", [PaymentLeg(self.creator, 1_000)],
                                      ledger=self.ledger, policy=NO_WAIT, payer=self.buyer)
        assert result.valid is False
        assert result.retryable is False
        assert result.reason == "Payment transaction was not signed by the buyer"

    def test_recipient_is_not_a_signer(self):
        """Receiving funds in the transaction does not count as signing it."""
        self.ledger.transactions["sig1"] = native_transfer_tx({self.creator: 1_000, self.buyer: 1})
        result = verify_split_payment("sig1", [PaymentLeg(self.creator, 1_000)],
                                      ledger=self.ledger, policy=NO_WAIT, payer=self.buyer)
        assert result.valid is False
