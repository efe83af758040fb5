# app/api/endpoints/sponsor.py
from fastapi import APIRouter, Depends, HTTPException, Path, Request, status
from typing import Any
import logging

from app.api.deps import get_client_ip, get_ledger, get_store, get_vault, rate_limit_general, rate_limit_sponsor
from app.api.models.sponsor import (
    BuildTransactionRequest,
    BuildTransactionResponse,
    EligibilityResponse,
    SponsorStatsResponse,
    SubmitTransactionRequest,
    SubmitTransactionResponse,
    VaultStatusResponse,
)
from app.core.errors import LedgerUnavailableError, PaymentValidationError, SponsorshipRejected
from app.services.ledger import SolanaRpcClient
from app.services.store import JsonStore
from app.x402 import audit
from app.x402.abuse import detect_suspicious_activity
from app.x402.sponsor import (
    build_sponsored_transaction,
    check_sponsorship_eligibility,
    get_sponsorship_stats,
    submit_sponsored_transaction,
)
from app.x402.vault import VaultWallet, check_vault_balance

router = APIRouter()
logger = logging.getLogger(__name__)


@router.api_route(
    "/sponsor/check-eligibility/{wallet_address}",
    methods=["GET", "POST"],
    response_model=EligibilityResponse,
    dependencies=[Depends(rate_limit_sponsor)],
    summary="Check Sponsorship Eligibility"
)
def check_eligibility(
    request: Request,
    wallet_address: str = Path(..., description="Wallet to evaluate."),
    store: JsonStore = Depends(get_store),
    ledger: SolanaRpcClient = Depends(get_ledger)
) -> Any:
    """
    Reports whether a wallet can have its next transaction fee paid by the vault.

    Abuse heuristics are reported alongside but never change the answer.
    """
    client_ip = get_client_ip(request)
    try:
        eligibility = check_sponsorship_eligibility(wallet_address, store, ledger)
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    suspicion = detect_suspicious_activity(wallet_address, client_ip, store)
    if suspicion.suspicious:
        audit.log_suspicious_activity(wallet_address, suspicion.patterns, client_ip=client_ip)
    audit.log_sponsorship_checked(wallet_address, eligibility.eligible, eligibility.reason, client_ip=client_ip)

    return EligibilityResponse(
        walletAddress=wallet_address,
        eligible=eligibility.eligible,
        status=eligibility.status.value,
        reason=eligibility.reason,
        sponsorshipAmount=eligibility.sponsorship_amount,
        suspicious=suspicion.suspicious,
        suspiciousPatterns=suspicion.patterns,
    )


@router.post(
    "/sponsor/build-transaction",
    response_model=BuildTransactionResponse,
    dependencies=[Depends(rate_limit_sponsor)],
    summary="Build a Sponsored Transaction"
)
def build_transaction(
    request_body: BuildTransactionRequest,
    store: JsonStore = Depends(get_store),
    ledger: SolanaRpcClient = Depends(get_ledger),
    vault: VaultWallet = Depends(get_vault)
) -> Any:
    """
    Builds an unsigned transaction with the vault as fee payer.

    Raises:
        HTTPException: 400 for malformed input, 403 if not eligible, 503 if the ledger is unreachable
    """
    try:
        eligibility = check_sponsorship_eligibility(request_body.walletAddress, store, ledger)
        if not eligibility.eligible:
            raise SponsorshipRejected(eligibility.reason)

        built = build_sponsored_transaction(
            request_body.walletAddress,
            [ix.model_dump() for ix in request_body.instructions],
            vault,
            ledger,
        )
        return BuildTransactionResponse(**built)

    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SponsorshipRejected as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.reason)
    except LedgerUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error building sponsored transaction: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while building the transaction."
        )


@router.post(
    "/sponsor/submit",
    response_model=SubmitTransactionResponse,
    dependencies=[Depends(rate_limit_sponsor)],
    summary="Submit a Sponsored Transaction"
)
def submit_transaction(
    request: Request,
    request_body: SubmitTransactionRequest,
    store: JsonStore = Depends(get_store),
    ledger: SolanaRpcClient = Depends(get_ledger),
    vault: VaultWallet = Depends(get_vault)
) -> Any:
    """
    Co-signs a user-signed transaction with the vault and submits it.

    Each wallet is sponsored at most once.

    Raises:
        HTTPException: 400 for malformed input, 403 if not eligible or not sponsorable,
            503 if the ledger is unreachable
    """
    client_ip = get_client_ip(request)
    try:
        receipt = submit_sponsored_transaction(
            request_body.walletAddress,
            request_body.signedTransaction,
            vault,
            store,
            ledger,
            client_ip=client_ip,
        )
    except PaymentValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SponsorshipRejected as e:
        logger.warning(f"Sponsorship rejected for {request_body.walletAddress}: {e.reason}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.reason)
    except LedgerUnavailableError as e:
        audit.log_error(client_ip, "ledger_unavailable", str(e), wallet_address=request_body.walletAddress)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error submitting sponsored transaction: {e}", exc_info=True)
        audit.log_error(client_ip, type(e).__name__, str(e), wallet_address=request_body.walletAddress)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred while submitting the transaction."
        )

    audit.log_sponsorship_submitted(request_body.walletAddress, receipt.signature, receipt.amount, client_ip=client_ip)
    return SubmitTransactionResponse(
        signature=receipt.signature,
        amount=receipt.amount,
        confirmation=receipt.confirmation,
    )


@router.get(
    "/sponsor/stats",
    response_model=SponsorStatsResponse,
    dependencies=[Depends(rate_limit_general)],
    summary="Sponsorship Statistics"
)
def sponsor_stats(store: JsonStore = Depends(get_store)) -> Any:
    return SponsorStatsResponse(**get_sponsorship_stats(store))


@router.get(
    "/vault/status",
    response_model=VaultStatusResponse,
    dependencies=[Depends(rate_limit_general)],
    summary="Vault Funding Status"
)
def vault_status(
    ledger: SolanaRpcClient = Depends(get_ledger),
    vault: VaultWallet = Depends(get_vault)
) -> Any:
    """Vault balance compared against the warning and critical thresholds."""
    return VaultStatusResponse(**check_vault_balance(vault, ledger))
