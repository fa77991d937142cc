"""
Platform data models: teams, members, devices, projects and subscriptions.

A Team is the billing tenant. Its TeamType (plan) decides the free device
allocation and may override the products/prices used for billing. Projects
carry a billing state managed by the subscription engine:

    TRIAL ──(trial ended, no subscription)──▶ NOT_BILLED (+ suspended)
    TRIAL ──(trial ended, subscription)─────▶ BILLED

BILLED and NOT_BILLED are terminal as far as billing is concerned.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class BillingState(str, Enum):
    """Billing state of a project."""

    TRIAL = "trial"
    BILLED = "billed"
    NOT_BILLED = "not_billed"


class ProjectState(str, Enum):
    """Operational state of a project."""

    RUNNING = "running"
    SUSPENDED = "suspended"


class Role(str, Enum):
    """Team membership role."""

    OWNER = "owner"
    MEMBER = "member"
    VIEWER = "viewer"


class PlanBilling(BaseModel):
    """Optional per-plan product/price overrides."""

    member_product: str | None = None
    member_price: str | None = None
    device_product: str | None = None
    device_price: str | None = None


class TeamTypeProperties(BaseModel):
    """Plan-defined properties of a team type."""

    device_free_allocation: int = Field(default=0, ge=0)
    billing: PlanBilling = Field(default_factory=PlanBilling)


class TeamType(BaseModel):
    """Team type (plan)."""

    id: str
    name: str = Field(..., min_length=1, max_length=100)
    properties: TeamTypeProperties = Field(default_factory=TeamTypeProperties)


class Team(BaseModel):
    """
    Team (tenant).

    trial_ends_at is only set while trial mode was enabled at creation and is
    cleared once the trial housekeeper has processed the team.
    """

    id: str
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=200)
    team_type: TeamType
    trial_ends_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def trial_active(self, now: datetime | None = None) -> bool:
        """Check if the team is still inside its trial window."""
        if self.trial_ends_at is None:
            return False
        return (now or datetime.now(UTC)) < self.trial_ends_at


class User(BaseModel):
    id: str
    username: str = Field(..., min_length=1, max_length=100)
    name: str | None = None
    email: str

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Basic email validation."""
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class TeamMember(BaseModel):
    team_id: str
    user_id: str
    role: Role = Role.MEMBER


class Device(BaseModel):
    """Device owned by a team. Every device counts regardless of its state."""

    id: str
    team_id: str
    name: str
    type: str = ""


class ProjectTypeProperties(BaseModel):
    billing: dict[str, Any] = Field(
        default_factory=dict,
        description="Optional {'product': ..., 'price': ...} override for project seats",
    )


class ProjectType(BaseModel):
    id: str
    name: str = Field(..., min_length=1, max_length=100)
    properties: ProjectTypeProperties = Field(default_factory=ProjectTypeProperties)


class Project(BaseModel):
    id: str
    team_id: str
    name: str = Field(..., min_length=1, max_length=200)
    project_type_id: str | None = None
    state: ProjectState = ProjectState.RUNNING
    billing_state: BillingState = BillingState.NOT_BILLED
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Subscription(BaseModel):
    """Link between a team and its Stripe customer/subscription (1:1)."""

    team_id: str
    customer: str = Field(..., description="Stripe customer ID (cus_xxx)")
    subscription: str = Field(..., description="Stripe subscription ID (sub_xxx)")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
