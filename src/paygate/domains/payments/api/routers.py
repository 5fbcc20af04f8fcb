"""Payment API FastAPI routers."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from ....shared.exceptions.base import (
    BusinessRuleViolationError,
    ConfigurationError,
    EntityNotFoundError,
    PaygateError,
    ValidationError,
)
from ..application.orchestrator import PaymentOrchestrator
from ..domain.exceptions import (
    ConcurrentUpdateError,
    DuplicateReferenceError,
    GatewayRejectedError,
    GatewayUnavailableError,
    SignatureError,
)
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    ErrorResponse,
    PaymentIntentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payment", tags=["payment"])

_UNAVAILABLE_MESSAGE = "Payment provider is temporarily unavailable, please try again"
_REJECTED_MESSAGE = "Payment was not completed, choose another payment method or card"


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    """Orchestrator built at application startup."""
    return request.app.state.orchestrator


def to_http_error(error: PaygateError) -> HTTPException:
    """Map the payment error taxonomy onto HTTP status codes."""
    if isinstance(error, SignatureError):
        # Details stay in the logs
        status_code, message = status.HTTP_400_BAD_REQUEST, "Webhook rejected"
    elif isinstance(error, GatewayUnavailableError):
        status_code, message = status.HTTP_503_SERVICE_UNAVAILABLE, _UNAVAILABLE_MESSAGE
    elif isinstance(error, GatewayRejectedError):
        status_code, message = status.HTTP_402_PAYMENT_REQUIRED, _REJECTED_MESSAGE
    elif isinstance(error, (EntityNotFoundError, ConfigurationError)):
        status_code, message = status.HTTP_404_NOT_FOUND, error.message
    elif isinstance(error, (DuplicateReferenceError, ConcurrentUpdateError, BusinessRuleViolationError)):
        status_code, message = status.HTTP_409_CONFLICT, error.message
    elif isinstance(error, ValidationError):
        status_code, message = status.HTTP_400_BAD_REQUEST, error.message
    else:
        status_code, message = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"

    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(error_code=error.error_code, message=message).model_dump(),
    )


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        303: {"description": "Redirect to the hosted checkout"},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def create_checkout(
    body: CheckoutRequest,
    redirect: bool = Query(False, description="Answer with a 303 to the hosted checkout"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Start a payment and hand back the vendor's checkout URL."""
    try:
        intent = await orchestrator.start_payment(
            reference=body.reference,
            amount=body.amount,
            currency=body.currency,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            gateway_name=body.gateway,
            description=body.description,
            buyer_email=body.buyer_email,
            buyer_name=body.buyer_name,
            buyer_phone=body.buyer_phone,
            metadata=body.metadata,
        )
    except PaygateError as e:
        raise to_http_error(e)

    if redirect and intent.redirect_url:
        return RedirectResponse(intent.redirect_url, status_code=status.HTTP_303_SEE_OTHER)

    return CheckoutResponse(
        reference=intent.reference,
        gateway=intent.gateway_name,
        status=intent.status,
        redirect_url=intent.redirect_url,
    )


@router.get(
    "/success/{gateway}",
    response_model=PaymentIntentResponse,
    responses={404: {"model": ErrorResponse}, 402: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def payment_success(
    gateway: str,
    session_id: Optional[str] = Query(None, description="Vendor session reference"),
    token: Optional[str] = Query(None, description="PayPal order id, sent instead of session_id"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentIntentResponse:
    """Buyer came back from the hosted checkout; the vendor decides the outcome."""
    session_ref = session_id or token
    if not session_ref:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session reference")

    try:
        intent = await orchestrator.confirm_return(gateway.lower(), session_ref)
    except PaygateError as e:
        raise to_http_error(e)

    return PaymentIntentResponse.from_entity(intent)


@router.get(
    "/cancel/{gateway}",
    response_model=PaymentIntentResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def payment_cancel(
    gateway: str,
    reference: str = Query(..., description="Payment reference"),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentIntentResponse:
    """Buyer abandoned the hosted checkout; the vendor is checked before cancelling."""
    try:
        intent = await orchestrator.get_intent(reference)
        if intent.gateway_name != gateway.lower():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
        intent = await orchestrator.cancel_payment(reference)
    except PaygateError as e:
        raise to_http_error(e)

    return PaymentIntentResponse.from_entity(intent)


@router.post(
    "/webhook/{gateway}",
    response_model=WebhookResponse,
    responses={
        200: {"description": "Accepted, including events that need no action"},
        400: {"description": "Signature or payload rejected"},
        500: {"description": "Processing failed; the vendor will redeliver"},
    },
)
async def payment_webhook(
    gateway: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Vendor notification; the body is read raw because the signature covers its bytes."""
    name = gateway.lower()
    payload = await request.body()

    try:
        adapter = orchestrator.registry.resolve(name)
        intent = await orchestrator.handle_webhook(name, payload, adapter.extract_signature(request.headers))
    except (SignatureError, ValidationError, ConfigurationError) as e:
        raise to_http_error(e)
    except GatewayUnavailableError as e:
        # Vendor redelivers on 5xx
        raise to_http_error(e)
    except Exception:
        logger.exception("Webhook processing failed", gateway=name)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error_code="WEBHOOK_PROCESSING_FAILED",
                message="Internal webhook processing error",
            ).model_dump(),
        )

    if intent is None:
        return WebhookResponse()
    return WebhookResponse(reference=intent.reference, status=intent.status)


@router.get(
    "/intents/{reference}",
    response_model=PaymentIntentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_intent(
    reference: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentIntentResponse:
    """Stored state of a payment."""
    try:
        intent = await orchestrator.get_intent(reference)
    except PaygateError as e:
        raise to_http_error(e)

    return PaymentIntentResponse.from_entity(intent)
