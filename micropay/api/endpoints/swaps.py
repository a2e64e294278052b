# micropay/api/endpoints/swaps.py
from fastapi import APIRouter, Depends, Path, Query, status
from fastapi.responses import JSONResponse
from requests.exceptions import RequestException
from typing import Any, Optional
import logging

from micropay.api.deps import get_catalog, get_payment_client, get_store
from micropay.api.models.swap import (
    ErrorResponse,
    OracleStatusResponse,
    SwapCreateRequest,
    SwapCreateResponse,
    SwapListResponse,
    SwapRecordResponse,
)
from micropay.core.config import settings
from micropay.oracle import audit
from micropay.oracle.pricing import ContentCatalog
from micropay.oracle.records import SwapRecord, SwapStatus
from micropay.oracle.store import DuplicateSwapError, SwapRecordStore
from micropay.services.payment_state import PaymentStateClient, SwapCreationError

router = APIRouter()
logger = logging.getLogger(__name__)


def error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


@router.post(
    "/swaps",
    response_model=SwapCreateResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Create a BTC Swap for a Content Item"
)
async def create_swap(
    request: SwapCreateRequest,
    store: SwapRecordStore = Depends(get_store),
    payment_client: PaymentStateClient = Depends(get_payment_client),
    catalog: ContentCatalog = Depends(get_catalog),
) -> Any:
    """
    Creates a swap at the provider paying the content price to the user, and
    starts tracking it as PENDING_DEPOSIT so the oracle can unlock the content
    once the deposit settles.

    Returns:
        SwapCreateResponse: Deposit address, BTC amount and swap id

    Raises:
        404 if the content is unknown, 409 if the provider reuses a tracked swap id,
        502 if the swap provider fails
    """
    if request.contentId not in catalog:
        return error_response(status.HTTP_404_NOT_FOUND, "Content not found")

    price = catalog.price_of(request.contentId)

    try:
        quote = payment_client.create_swap(recipient=request.userAddress, to_amount=price)
    except (RequestException, SwapCreationError) as e:
        logger.error(f"Error creating swap for content {request.contentId}: {e}")
        return error_response(status.HTTP_502_BAD_GATEWAY, "Failed to create swap", str(e))

    record = SwapRecord(
        swap_id=quote.swap_id,
        user_address=request.userAddress,
        content_id=request.contentId,
        creator_address=settings.CREATOR_ADDRESS,
    )
    try:
        store.append(record)
    except DuplicateSwapError as e:
        logger.error(f"Swap provider returned an already tracked swap id: {e}")
        return error_response(status.HTTP_409_CONFLICT, "Swap already tracked", str(e))

    audit.log_swap_created(quote.swap_id, request.userAddress, request.contentId, quote.amount)
    return SwapCreateResponse(depositAddress=quote.deposit_address, amount=quote.amount, swapId=quote.swap_id)


@router.get("/swaps", response_model=SwapListResponse, summary="List Tracked Swaps")
async def list_swaps(
    status_filter: Optional[SwapStatus] = Query(None, alias="status", description="Only return swaps in this status."),
    store: SwapRecordStore = Depends(get_store),
) -> Any:
    records = store.load_all()
    if status_filter is not None:
        records = [record for record in records if record.status is status_filter]
    swaps = [SwapRecordResponse(**record.to_storage()) for record in records]
    return SwapListResponse(swaps=swaps, total_count=len(swaps))


@router.get(
    "/swaps/{swap_id}",
    response_model=SwapRecordResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get a Tracked Swap"
)
async def get_swap(
    swap_id: str = Path(..., description="Swap identifier returned at creation."),
    store: SwapRecordStore = Depends(get_store),
) -> Any:
    """Front ends poll this to learn when the content has been unlocked."""
    record = store.get(swap_id)
    if record is None:
        return error_response(status.HTTP_404_NOT_FOUND, "Swap not found", f"No swap with id '{swap_id}'")
    return SwapRecordResponse(**record.to_storage())


@router.get("/oracle/status", response_model=OracleStatusResponse, summary="Oracle Status")
async def oracle_status(store: SwapRecordStore = Depends(get_store)) -> Any:
    return OracleStatusResponse(
        protocol=settings.SETTLEMENT_PROTOCOL,
        swaps_by_status=store.count_by_status(),
        audit=audit.get_audit_stats(),
    )
