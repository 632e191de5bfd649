"""
FastAPI adapter for the entitlement core.

ENDPOINTS:
- GET  /api/entitlements/credits  — balances, limits and trial info for the caller
- POST /api/billing/webhooks      — Stripe webhook receiver

Protected routes declare the feature they consume:

    @router.post("/images", dependencies=[Depends(require_feature(Feature.IMAGE_GENERATION))])

The caller's user id is set on request.state.user_id by the identity layer.
The service instance lives on app.state.entitlement_service.

Status codes:
- 401: no authenticated user on the request
- 403: entitlement denied (body carries the reason code)
- 404: account not found (webhooks: provider redelivers)
- 400: webhook signature invalid
- 503: usage store unavailable
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field

from .errors import StorageUnavailableError, UserNotFoundError, WebhookSignatureError
from .features import FeatureKey, normalize_feature
from .models import Decision, DenyReason
from .service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entitlements"])


class CreditsResponse(BaseModel):
    """Credit balances and plan limits for the current user."""
    user_id: str
    plan_identifier: str
    status: str
    is_on_trial: bool
    trial_ends_at: Optional[datetime] = None
    trial_days_remaining: int = 0
    next_credit_renewal_at: Optional[datetime] = None
    balances: Dict[str, int] = Field(default_factory=dict)
    limits: Dict[str, int] = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    received: bool = True
    action: str
    event_type: str


def get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        logger.error("Entitlement service not configured on app.state")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "ENTITLEMENTS_UNAVAILABLE", "message": "Entitlement service not configured"},
        )
    return service


def get_current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "AUTHENTICATION_REQUIRED", "message": "Authentication required"},
        )
    return str(user_id)


def _storage_unavailable(e: StorageUnavailableError, user_id: str) -> HTTPException:
    logger.error(
        "Entitlement check failed closed: usage store unavailable",
        extra={"user_id": user_id, "operation": e.operation},
    )
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())


def require_feature(feature: FeatureKey, quantity: int = 1) -> Callable:
    """
    Dependency factory gating a route on one feature.

    Returns the allowing Decision so the route can commit usage after the
    action succeeds. Raises 403/404 on denial and 503 when storage is down.
    """
    feature_key = normalize_feature(feature)

    def _check(
        user_id: str = Depends(get_current_user_id),
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> Decision:
        try:
            decision = service.check_and_reserve(user_id, feature_key, quantity)
        except StorageUnavailableError as e:
            raise _storage_unavailable(e, user_id) from e

        if decision.allowed:
            return decision
        status_code = (
            status.HTTP_404_NOT_FOUND
            if decision.reason == DenyReason.NOT_FOUND
            else status.HTTP_403_FORBIDDEN
        )
        raise HTTPException(status_code=status_code, detail=decision.to_dict())

    return _check


@router.get("/api/entitlements/credits", response_model=CreditsResponse)
def get_credits(
    user_id: str = Depends(get_current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> CreditsResponse:
    try:
        summary = service.get_credits_summary(user_id)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict()) from e
    except StorageUnavailableError as e:
        raise _storage_unavailable(e, user_id) from e
    return CreditsResponse(
        user_id=summary.user_id,
        plan_identifier=summary.plan_identifier,
        status=summary.status,
        is_on_trial=summary.is_on_trial,
        trial_ends_at=summary.trial_ends_at,
        trial_days_remaining=summary.trial_days_remaining,
        next_credit_renewal_at=summary.next_credit_renewal_at,
        balances=summary.balances,
        limits=summary.limits,
    )


@router.post("/api/billing/webhooks", response_model=WebhookResponse)
async def receive_billing_webhook(
    request: Request,
    service: EntitlementService = Depends(get_entitlement_service),
) -> WebhookResponse:
    payload = await request.body()
    try:
        outcome = service.handle_webhook(payload, request.headers.get("Stripe-Signature"))
    except WebhookSignatureError as e:
        logger.warning("Rejected billing webhook", extra={"reason": e.message})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict()) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "INVALID_PAYLOAD", "message": str(e)},
        ) from e
    except UserNotFoundError as e:
        logger.warning("Billing webhook for unknown user", extra={"user_id": e.user_id})
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict()) from e
    except StorageUnavailableError as e:
        # Non-2xx makes the provider redeliver; the idempotency keys absorb the replay.
        logger.error("Billing webhook failed: usage store unavailable", extra={"operation": e.operation})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict()) from e
    return WebhookResponse(action=outcome.action, event_type=outcome.event_type)


def create_app(service: EntitlementService) -> FastAPI:
    app = FastAPI(title="Usage Entitlements")
    app.state.entitlement_service = service
    app.include_router(router)
    return app
