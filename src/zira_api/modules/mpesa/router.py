"""M-Pesa API router."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, Query, Response, status
from sqlalchemy.orm import Session

from ...api.deps import get_account_id, get_db, get_draft_store, get_settings_dep, get_status_watcher
from ...core.config import Settings
from .drafts import DraftManager, DraftStore
from .schemas import (
    AllocateRequest,
    AllocationCandidates,
    AllocationResponse,
    CallbackAck,
    ConfigSummary,
    DraftResponse,
    InitiationResponse,
    PaymentInitiationRequest,
    SaveConfigRequest,
    SaveConfigResponse,
    TransactionStatusView,
    UnallocatedPayment,
    VerificationResult,
    VerifyConfigRequest,
)
from .service import MpesaService
from .watcher import StatusWatcher

router = APIRouter(prefix="/mpesa", tags=["mpesa"])


def get_draft_manager(
    account_id: UUID = Depends(get_account_id),
    session_id: str = Header(default="default", alias="X-Session-ID"),
    store: DraftStore = Depends(get_draft_store),
    settings: Settings = Depends(get_settings_dep),
) -> DraftManager:
    return DraftManager(
        store,
        user_id=str(account_id),
        session_id=session_id,
        ttl_seconds=settings.MPESA_DRAFT_TTL_SECONDS,
    )


# ==== CONFIGURATION DRAFTS ====


@router.get(
    "/configs/draft",
    response_model=DraftResponse,
    summary="Load configuration draft",
    description="Return the unexpired in-progress configuration edit for this session",
)
async def load_draft(drafts: DraftManager = Depends(get_draft_manager)) -> DraftResponse:
    fields = await drafts.load_draft()
    return DraftResponse(fields=fields, editing=await drafts.is_editing())


@router.put(
    "/configs/draft",
    response_model=DraftResponse,
    summary="Save configuration draft",
    description="Merge fields into the draft and restart its 30 minute expiry",
)
async def save_draft(
    fields: dict[str, Any] = Body(...),
    drafts: DraftManager = Depends(get_draft_manager),
) -> DraftResponse:
    merged = await drafts.save_draft(fields)
    await drafts.set_editing(True)
    return DraftResponse(fields=merged, editing=True)


@router.delete(
    "/configs/draft",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Discard configuration draft",
)
async def clear_draft(drafts: DraftManager = Depends(get_draft_manager)) -> Response:
    await drafts.clear_draft()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==== CONFIGURATIONS ====


@router.get(
    "/configs",
    response_model=list[ConfigSummary],
    summary="List M-Pesa configurations",
    description="Non-sensitive metadata of every configuration of the account. Secrets are never returned.",
)
async def list_configs(
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> list[ConfigSummary]:
    service = MpesaService(db)
    return await service.list_configs(account_id)


@router.post(
    "/configs",
    response_model=SaveConfigResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save M-Pesa configuration",
    description="Create or re-save one provider variant. Blank secrets keep the stored ones.",
)
async def save_config(
    request: SaveConfigRequest,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
    drafts: DraftManager = Depends(get_draft_manager),
) -> SaveConfigResponse:
    """Save credentials.

    The connectivity test runs right after saving unless ``verify`` is false;
    its failure is reported in ``verification_error`` and the configuration
    stays unverified.
    """
    service = MpesaService(db)
    return await service.save_config(account_id, request, drafts=drafts)


@router.post(
    "/configs/platform-default",
    response_model=list[ConfigSummary],
    summary="Use platform default",
    description="Deactivate all configurations so payments use the platform default account",
)
async def switch_to_platform_default(
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> list[ConfigSummary]:
    service = MpesaService(db)
    return await service.switch_to_platform_default(account_id)


@router.delete(
    "/configs/{config_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete M-Pesa configuration",
)
async def delete_config(
    config_id: UUID,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> Response:
    service = MpesaService(db)
    await service.delete_config(account_id, config_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/configs/{config_id}/verify",
    response_model=VerificationResult,
    summary="Test OAuth connectivity",
    description="Request a token with the stored credentials; supply client_secret only when rotating it",
)
async def verify_config(
    config_id: UUID,
    request: VerifyConfigRequest | None = None,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> VerificationResult:
    service = MpesaService(db)
    return await service.verify_config(
        account_id,
        config_id,
        client_secret=request.client_secret if request else None,
    )


@router.post(
    "/configs/{config_id}/activate",
    response_model=ConfigSummary,
    summary="Activate M-Pesa configuration",
    description="Make a verified configuration the single active one of the account",
)
async def activate_config(
    config_id: UUID,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> ConfigSummary:
    service = MpesaService(db)
    return await service.activate_config(account_id, config_id)


# ==== PAYMENTS ====


@router.post(
    "/stk-push",
    response_model=InitiationResponse,
    summary="Initiate STK push",
    description="Send a payment prompt to the payer's phone. dry_run reports the effective shortcode only.",
)
async def initiate_stk_push(
    request: PaymentInitiationRequest,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
    watcher: StatusWatcher = Depends(get_status_watcher),
) -> InitiationResponse:
    service = MpesaService(db)
    response = await service.initiate_payment(account_id, request)
    if settings.MPESA_SERVER_POLLING and response.correlation_id:
        watcher.watch(response.correlation_id)
    return response


@router.get(
    "/transactions/{checkout_request_id}",
    response_model=TransactionStatusView,
    summary="Get transaction status",
)
async def get_transaction_status(
    checkout_request_id: str,
    query_gateway: bool = Query(default=False, description="Ask the provider when still pending"),
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> TransactionStatusView:
    service = MpesaService(db)
    return await service.get_transaction_status(account_id, checkout_request_id, query_gateway)


# ==== ALLOCATION ====


@router.get(
    "/allocations/payments",
    response_model=list[UnallocatedPayment],
    summary="List unallocated payments",
)
async def list_unallocated_payments(
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> list[UnallocatedPayment]:
    service = MpesaService(db)
    return await service.list_unallocated_payments(account_id)


@router.get(
    "/allocations/payments/{payment_id}/candidates",
    response_model=AllocationCandidates,
    summary="Candidate invoices for a payment",
    description="Outstanding invoices by due date with the first exact amount match pre-selected",
)
async def allocation_candidates(
    payment_id: UUID,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> AllocationCandidates:
    service = MpesaService(db)
    return await service.allocation_candidates(account_id, payment_id)


@router.post(
    "/allocations",
    response_model=AllocationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Allocate payment to invoice",
)
async def allocate_payment(
    request: AllocateRequest,
    account_id: UUID = Depends(get_account_id),
    db: Session = Depends(get_db),
) -> AllocationResponse:
    service = MpesaService(db)
    return await service.allocate(account_id, request)


# ==== CALLBACKS (called by providers) ====


@router.post(
    "/callbacks/daraja",
    response_model=CallbackAck,
    summary="Daraja STK callback",
)
async def daraja_callback(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> CallbackAck:
    service = MpesaService(db)
    result = await service.handle_daraja_callback(payload)
    return CallbackAck(ResultDesc=result.message or "Accepted")


@router.post(
    "/callbacks/kopokopo",
    response_model=CallbackAck,
    summary="Kopo Kopo incoming payment callback",
)
async def kopokopo_callback(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> CallbackAck:
    service = MpesaService(db)
    result = await service.handle_kopokopo_callback(payload)
    return CallbackAck(ResultDesc=result.message or "Accepted")
