"""
Billing-side models: mirrored Stripe state and trial configuration.
"""

from datetime import timedelta
from typing import Any

from pydantic import BaseModel, Field

TRIAL_MODE_KEY = "user:team:trial-mode"
TRIAL_DURATION_KEY = "user:team:trial-mode:duration"
TRIAL_PROJECT_TYPE_KEY = "user:team:trial-mode:projectType"


class LineItem(BaseModel):
    """
    Subscription line item as reported by Stripe.

    Mirrored only: internal counts are the source of truth.
    """

    id: str
    quantity: int = Field(default=0, ge=0)
    product: str | None = None


class RemoteSubscription(BaseModel):
    id: str
    items: list[LineItem] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    def find_item(self, product: str) -> LineItem | None:
        for item in self.items:
            if item.product == product:
                return item
        return None


class TrialSettings(BaseModel):
    """
    Global trial configuration.

    Stored as platform settings and re-read on every use so that toggling
    trial mode takes effect without a restart.
    """

    enabled: bool = False
    duration_days: int = Field(default=0, ge=0)
    project_type_id: str | None = None

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.duration_days)

    @classmethod
    def from_settings(cls, values: dict[str, Any]) -> "TrialSettings":
        return cls(
            enabled=bool(values.get(TRIAL_MODE_KEY, False)),
            duration_days=int(values.get(TRIAL_DURATION_KEY) or 0),
            project_type_id=values.get(TRIAL_PROJECT_TYPE_KEY),
        )
