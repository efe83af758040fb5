# app/x402/sponsor.py
"""
Gas fee sponsorship for new wallets.

A wallet moves Unknown -> Eligible -> Sponsored (terminal), or is found
Ineligible (re-evaluated on the next request). Eligibility requires, in
order:
1. no sponsorship record for the address
2. no transaction history on the ledger
3. a balance at or below SPONSOR_DUST_THRESHOLD_LAMPORTS

Any ledger failure while evaluating makes the wallet ineligible.

Sponsored transactions use the vault as fee payer. The server builds the
unsigned transaction, the user signs it, and on submit the server adds
the vault signature and sends it. Check-and-record is serialized per
wallet address so concurrent submits cannot sponsor a wallet twice.
"""
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from requests.exceptions import RequestException
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from app.core.config import settings
from app.core.errors import LedgerUnavailableError, PaymentValidationError, SponsorshipRejected
from app.services.ledger import LedgerRpcError, SolanaRpcClient
from app.services.store import JsonStore
from app.x402.vault import VaultWallet

logger = logging.getLogger(__name__)

REASON_ALREADY_SPONSORED = "already sponsored"
REASON_HAS_HISTORY = "wallet has prior transactions"
REASON_HAS_BALANCE = "wallet already has balance"


class SponsorshipStatus(Enum):
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    SPONSORED = "sponsored"


@dataclass
class EligibilityResult:
    eligible: bool
    status: SponsorshipStatus
    reason: Optional[str] = None
    sponsorship_amount: Optional[int] = None


@dataclass
class SponsorshipReceipt:
    signature: str
    amount: int
    confirmation: str


def parse_wallet_address(address: str) -> Pubkey:
    """Parse a base58 wallet address, rejecting malformed input."""
    if not address or not isinstance(address, str):
        raise PaymentValidationError("walletAddress is required")
    try:
        return Pubkey.from_string(address)
    except Exception as e:
        raise PaymentValidationError(f"Invalid wallet address: {address}") from e


def check_sponsorship_eligibility(
    wallet_address: str,
    store: JsonStore,
    ledger: SolanaRpcClient
) -> EligibilityResult:
    """Evaluate whether a wallet may receive a sponsored transaction."""
    parse_wallet_address(wallet_address)

    if store.get("sponsorships", wallet_address) is not None:
        return EligibilityResult(
            eligible=False,
            status=SponsorshipStatus.SPONSORED,
            reason=REASON_ALREADY_SPONSORED,
        )

    try:
        signatures = ledger.get_signatures_for_address(wallet_address, limit=1)
        if signatures:
            return EligibilityResult(
                eligible=False,
                status=SponsorshipStatus.INELIGIBLE,
                reason=REASON_HAS_HISTORY,
            )

        balance = ledger.get_balance(wallet_address)
    except (RequestException, LedgerRpcError, KeyError, ValueError) as e:
        logger.error(f"Error checking sponsorship eligibility for {wallet_address}: {e}")
        return EligibilityResult(
            eligible=False,
            status=SponsorshipStatus.INELIGIBLE,
            reason=f"eligibility check failed: {e}",
        )

    if balance > settings.SPONSOR_DUST_THRESHOLD_LAMPORTS:
        return EligibilityResult(
            eligible=False,
            status=SponsorshipStatus.INELIGIBLE,
            reason=REASON_HAS_BALANCE,
        )

    return EligibilityResult(
        eligible=True,
        status=SponsorshipStatus.ELIGIBLE,
        sponsorship_amount=settings.VAULT_SPONSORSHIP_AMOUNT,
    )


def parse_instruction(spec: Dict[str, Any]) -> Instruction:
    """
    Build an instruction from its JSON form:
    {"programId": str, "keys": [{"pubkey", "isSigner", "isWritable"}], "data": base64}
    """
    try:
        accounts = [
            AccountMeta(
                pubkey=Pubkey.from_string(key["pubkey"]),
                is_signer=bool(key.get("isSigner", False)),
                is_writable=bool(key.get("isWritable", False)),
            )
            for key in spec.get("keys", [])
        ]
        return Instruction(
            program_id=Pubkey.from_string(spec["programId"]),
            data=base64.b64decode(spec.get("data") or "", validate=True),
            accounts=accounts,
        )
    except Exception as e:
        raise PaymentValidationError(f"Invalid instruction: {e}") from e


def _check_programs(program_ids: List[Pubkey]) -> None:
    allowed = settings.sponsor_allowed_programs
    if not allowed:
        return
    for program_id in program_ids:
        if str(program_id) not in allowed:
            raise SponsorshipRejected(f"program {program_id} is not eligible for sponsorship")


def build_sponsored_transaction(
    wallet_address: str,
    instructions: List[Dict[str, Any]],
    vault: VaultWallet,
    ledger: SolanaRpcClient
) -> Dict[str, Any]:
    """
    Assemble an unsigned transaction whose fee payer is the vault.

    Returns:
        Dict with base64 "transaction", "blockhash", "lastValidBlockHeight", "feePayer"

    Raises:
        PaymentValidationError: On malformed input
        SponsorshipRejected: If the instructions are not sponsorable
        LedgerUnavailableError: If no recent blockhash could be fetched
    """
    user = parse_wallet_address(wallet_address)
    if not instructions:
        raise PaymentValidationError("At least one instruction is required")

    parsed = [parse_instruction(spec) for spec in instructions]

    for ix in parsed:
        if any(meta.pubkey == vault.pubkey for meta in ix.accounts):
            raise SponsorshipRejected("instructions may not reference the vault account")
    _check_programs([ix.program_id for ix in parsed])

    try:
        latest = ledger.get_latest_blockhash()
    except (RequestException, LedgerRpcError) as e:
        logger.error(f"Error fetching blockhash for sponsored transaction: {e}")
        raise LedgerUnavailableError(f"Could not fetch recent blockhash: {e}") from e

    message = Message.new_with_blockhash(parsed, vault.pubkey, Hash.from_string(latest["blockhash"]))
    signers = message.account_keys[:message.header.num_required_signatures]
    if user not in signers:
        raise PaymentValidationError("Instructions must require the user's signature")

    transaction = Transaction.new_unsigned(message)
    return {
        "transaction": base64.b64encode(bytes(transaction)).decode("ascii"),
        "blockhash": latest["blockhash"],
        "lastValidBlockHeight": latest.get("lastValidBlockHeight"),
        "feePayer": vault.address,
    }


def decode_signed_transaction(signed_transaction: str) -> Transaction:
    try:
        return Transaction.from_bytes(base64.b64decode(signed_transaction, validate=True))
    except Exception as e:
        raise PaymentValidationError(f"Invalid signed transaction: {e}") from e


def validate_sponsored_transaction(transaction: Transaction, user: Pubkey, vault: VaultWallet) -> None:
    """
    Check a user-signed transaction before the vault co-signs it.

    Raises:
        SponsorshipRejected: If the vault is not the fee payer, the
            instructions touch the vault account, a program is not allowed,
            or the user's signature is missing/invalid
    """
    message = transaction.message
    keys = message.account_keys
    if not keys or keys[0] != vault.pubkey:
        raise SponsorshipRejected("fee payer must be the platform vault")

    signers = keys[:message.header.num_required_signatures]
    if user not in signers:
        raise SponsorshipRejected("transaction is not signed by the sponsored wallet")

    for ix in message.instructions:
        if ix.program_id_index == 0 or 0 in bytes(ix.accounts):
            raise SponsorshipRejected("instructions may not reference the vault account")
    _check_programs([keys[ix.program_id_index] for ix in message.instructions])

    results = transaction.verify_with_results()
    if not results[signers.index(user)]:
        raise SponsorshipRejected("user signature is missing or invalid")


def submit_sponsored_transaction(
    wallet_address: str,
    signed_transaction: str,
    vault: VaultWallet,
    store: JsonStore,
    ledger: SolanaRpcClient,
    client_ip: Optional[str] = None
) -> SponsorshipReceipt:
    """
    Co-sign a user-signed transaction with the vault, send it and record the sponsorship.

    Raises:
        PaymentValidationError: On malformed input
        SponsorshipRejected: If the wallet is ineligible or the transaction is not sponsorable
        LedgerUnavailableError: If the ledger could not be reached
    """
    user = parse_wallet_address(wallet_address)
    transaction = decode_signed_transaction(signed_transaction)

    with store.key_lock("sponsorships", wallet_address):
        eligibility = check_sponsorship_eligibility(wallet_address, store, ledger)
        if not eligibility.eligible:
            raise SponsorshipRejected(eligibility.reason)

        validate_sponsored_transaction(transaction, user, vault)

        transaction.partial_sign([vault.keypair], transaction.message.recent_blockhash)
        if not all(transaction.verify_with_results()):
            raise SponsorshipRejected("transaction signatures are invalid")

        try:
            signature = ledger.send_raw_transaction(bytes(transaction))
        except LedgerRpcError as e:
            logger.warning(f"Ledger rejected sponsored transaction for {wallet_address}: {e}")
            raise SponsorshipRejected(f"transaction rejected by ledger: {e.error}") from e
        except RequestException as e:
            logger.error(f"Error sending sponsored transaction for {wallet_address}: {e}")
            raise LedgerUnavailableError(f"Could not submit transaction: {e}") from e

        confirmation = ledger.confirm_transaction(signature)
        amount = eligibility.sponsorship_amount or settings.VAULT_SPONSORSHIP_AMOUNT

        record = store.create_if_absent("sponsorships", wallet_address, {
            "wallet_address": wallet_address,
            "sponsored_at": datetime.now(timezone.utc).isoformat(),
            "tx_signature": signature,
            "amount": amount,
            "client_ip": client_ip,
            "confirmation": confirmation,
        })
        if record is None:
            logger.error(f"Sponsorship record for {wallet_address} already existed after submit {signature[:16]}...")

    logger.info(f"Sponsored transaction submitted for {wallet_address}: {signature[:16]}... ({confirmation})")
    return SponsorshipReceipt(signature=signature, amount=amount, confirmation=confirmation)


def get_sponsorship_stats(store: JsonStore) -> Dict[str, Any]:
    """Totals and the ten most recent sponsorships."""
    records = store.list("sponsorships")
    recent = sorted(records, key=lambda r: r.get("sponsored_at") or "", reverse=True)[:10]
    return {
        "total_sponsored": len(records),
        "total_amount": sum(r.get("amount") or 0 for r in records),
        "recent_sponsorships": recent,
    }
