"""
Billing API endpoints.

- Team-scoped: create a Checkout session, reconcile the subscription now
- Stripe webhook receiver (signature verified, no API key)
- Admin: run one trial housekeeping pass (requires admin API key)

Route authorization for team endpoints is handled upstream.
"""

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.billing.errors import NotFoundError
from src.billing.service import BillingService
from src.billing.webhooks import WebhookError
from src.config import Settings, get_settings
from src.models.platform import Team
from src.observability.logging import RequestContext, get_logger
from src.storage.database import PlatformDatabase

logger = get_logger(__name__)

router = APIRouter(tags=["Billing"])


# Request / response models
class SessionRequest(BaseModel):
    promo_code: str | None = Field(default=None, max_length=255)
    user_id: str | None = Field(default=None, description="Acting user (free-trial eligibility)")


class SessionResponse(BaseModel):
    id: str
    url: str | None = None


class SyncResponse(BaseModel):
    team_id: str
    status: str = "synced"


class WebhookResponse(BaseModel):
    status: str
    message: str


class HousekeepingResponse(BaseModel):
    processed: int
    suspended: list[str]
    billed: list[str]
    failed: list[str]


# Dependencies
def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing


def get_database(request: Request) -> PlatformDatabase:
    return request.app.state.db


async def verify_admin_key(
    x_admin_key: str = Header(...),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API key.

    Admin endpoints are blocked entirely when ADMIN_API_KEY is not configured.
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints disabled",
        )
    if x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )
    return True


async def _load_team(db: PlatformDatabase, team_id: str) -> Team:
    team = await db.get_team(team_id)
    if team is None:
        raise NotFoundError(f"Team '{team_id}' not found")
    return team


@router.post(
    "/api/v1/teams/{team_id}/billing/session",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_billing_session(
    team_id: str,
    body: SessionRequest,
    db: PlatformDatabase = Depends(get_database),
    billing: BillingService = Depends(get_billing_service),
) -> SessionResponse:
    """
    Create a Stripe Checkout session for the team.

    Raises:
        404: Team or user not found
        500: No product/price configured for the team's plan
        503: Stripe unavailable
    """
    team = await _load_team(db, team_id)

    user = None
    if body.user_id:
        user = await db.get_user(body.user_id)
        if user is None:
            raise NotFoundError(f"User '{body.user_id}' not found")

    with RequestContext(team_id=team.id):
        session: Any = await billing.create_subscription_session(team, body.promo_code, user)

    return SessionResponse(id=session["id"], url=session.get("url"))


@router.post("/api/v1/teams/{team_id}/billing/sync", response_model=SyncResponse)
async def sync_team_billing(
    team_id: str,
    db: PlatformDatabase = Depends(get_database),
    billing: BillingService = Depends(get_billing_service),
) -> SyncResponse:
    """Reconcile every line item of the team's subscription now."""
    team = await _load_team(db, team_id)
    with RequestContext(team_id=team.id):
        await billing.sync_team(team)
    return SyncResponse(team_id=team.id)


@router.post("/api/v1/billing/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    billing: BillingService = Depends(get_billing_service),
) -> WebhookResponse:
    """Receive Stripe webhook events."""
    payload = await request.body()
    try:
        result = await billing.webhooks.handle_event(payload, stripe_signature)
    except WebhookError as e:
        logger.warning("Rejected Stripe webhook", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return WebhookResponse(**result)


@router.post(
    "/admin/billing/trial-housekeeping",
    response_model=HousekeepingResponse,
    dependencies=[Depends(verify_admin_key)],
)
async def run_trial_housekeeping(
    billing: BillingService = Depends(get_billing_service),
) -> HousekeepingResponse:
    """Run one trial housekeeping pass (admin only)."""
    result = await billing.run_trial_housekeeping()
    return HousekeepingResponse(
        processed=result.processed,
        suspended=result.suspended,
        billed=result.billed,
        failed=result.failed,
    )
