"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings (Stripe products/prices, temporary SQLite database)
- In-memory Stripe fake mirroring subscription state and recording calls
- Seeded teams, team types, project types and users
- Billing engine and platform service wired to the fake
"""

import itertools
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from src.billing.errors import ProviderError
from src.billing.service import BillingService
from src.billing.stripe_client import PRORATION_IMMEDIATE
from src.config import DatabaseConfig, Settings, StripeConfig
from src.models.billing import (
    TRIAL_DURATION_KEY,
    TRIAL_MODE_KEY,
    TRIAL_PROJECT_TYPE_KEY,
    LineItem,
    RemoteSubscription,
)
from src.models.platform import (
    ProjectType,
    ProjectTypeProperties,
    Role,
    Subscription,
    Team,
    TeamMember,
    TeamType,
    TeamTypeProperties,
    User,
)
from src.platform.service import PlatformService
from src.resilience.circuit_breakers import reset_all_breakers
from src.storage.database import PlatformDatabase

ADMIN_KEY = "test-secret-key-0123456789abcdef0123"


class FakeSubscriptionClient:
    """
    In-memory stand-in for SubscriptionClient.

    Holds subscriptions as {id: RemoteSubscription} and records every call as
    (operation, args) in `calls`. Setting `fail_with` makes every call raise.
    """

    is_enabled = True

    def __init__(self):
        self.subscriptions: dict[str, RemoteSubscription] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.sessions: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self._ids = itertools.count(1)

    def add_subscription(
        self, subscription_id: str, items: list[tuple[str, int]] | None = None
    ) -> RemoteSubscription:
        """Seed a subscription with (product, quantity) items."""
        remote = RemoteSubscription(
            id=subscription_id,
            items=[
                LineItem(id=f"si_{next(self._ids)}", product=product, quantity=quantity)
                for product, quantity in items or []
            ],
        )
        self.subscriptions[subscription_id] = remote
        return remote

    def item(self, subscription_id: str, product: str) -> LineItem | None:
        return self.subscriptions[subscription_id].find_item(product)

    @property
    def writes(self) -> list[tuple[str, tuple]]:
        return [call for call in self.calls if not call[0].startswith("retrieve")]

    def _check(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        if self.fail_with is not None:
            raise self.fail_with

    def _get(self, subscription_id: str) -> RemoteSubscription:
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        self._check("retrieve_subscription", subscription_id)
        return self._get(subscription_id).model_copy(deep=True)

    async def update_subscription_item(
        self, item_id: str, quantity: int, proration_behavior: str = PRORATION_IMMEDIATE
    ) -> None:
        self._check("update_subscription_item", item_id, quantity, proration_behavior)
        for remote in self.subscriptions.values():
            for item in remote.items:
                if item.id == item_id:
                    item.quantity = quantity
                    return
        raise ProviderError(f"No such subscription item: {item_id}")

    async def append_subscription_item(
        self,
        subscription_id: str,
        product: str,
        price: str,
        quantity: int,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._check("append_subscription_item", subscription_id, product, price, quantity, metadata)
        remote = self._get(subscription_id)
        remote.items.append(LineItem(id=f"si_{next(self._ids)}", product=product, quantity=quantity))
        if metadata:
            self._merge_metadata(remote, metadata)

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: dict[str, str]
    ) -> None:
        self._check("update_subscription_metadata", subscription_id, metadata)
        self._merge_metadata(self._get(subscription_id), metadata)

    async def create_checkout_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._check("create_checkout_session", payload)
        self.sessions.append(payload)
        return {"id": f"cs_test_{len(self.sessions)}", "url": "https://checkout.stripe.test/pay"}

    @staticmethod
    def _merge_metadata(remote: RemoteSubscription, metadata: dict[str, str]) -> None:
        for key, value in metadata.items():
            if value == "":
                remote.metadata.pop(key, None)
            else:
                remote.metadata[key] = value


@pytest.fixture(autouse=True)
def reset_breakers():
    """Every test starts with a closed Stripe circuit."""
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        api_key="sk_test_51Hplatformbilling",
        webhook_secret="whsec_test_secret",
        team_product="prod_team",
        team_price="price_team",
        device_product="prod_device",
        device_price="price_device",
        project_product="prod_project",
        project_price="price_project",
        request_timeout_seconds=2.0,
    )


@pytest.fixture
def test_settings(tmp_path, stripe_config: StripeConfig) -> Settings:
    """Create test settings with a temporary database."""
    return Settings(
        stripe=stripe_config,
        database=DatabaseConfig(path=str(tmp_path / "platform.db")),
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture
async def db(test_settings: Settings):
    database = PlatformDatabase(db_path=test_settings.database.path)
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
def fake_stripe() -> FakeSubscriptionClient:
    return FakeSubscriptionClient()


@pytest.fixture
def billing(test_settings: Settings, db: PlatformDatabase, fake_stripe) -> BillingService:
    return BillingService(test_settings, db, client=fake_stripe)


@pytest.fixture
def platform(db: PlatformDatabase, billing: BillingService) -> PlatformService:
    return PlatformService(db, billing)


@pytest.fixture
async def team_type(db: PlatformDatabase) -> TeamType:
    return await db.create_team_type(
        TeamType(
            id="tt-starter",
            name="starter",
            properties=TeamTypeProperties(device_free_allocation=2),
        )
    )


@pytest.fixture
async def project_type(db: PlatformDatabase) -> ProjectType:
    return await db.create_project_type(ProjectType(id="pt-small", name="small"))


@pytest.fixture
async def premium_project_type(db: PlatformDatabase) -> ProjectType:
    return await db.create_project_type(
        ProjectType(
            id="pt-large",
            name="large",
            properties=ProjectTypeProperties(
                billing={"product": "prod_project_large", "price": "price_project_large"}
            ),
        )
    )


@pytest.fixture
async def owner(db: PlatformDatabase) -> User:
    return await db.create_user(User(id="user-alice", username="alice", email="alice@example.com"))


@pytest.fixture
async def team(db: PlatformDatabase, team_type: TeamType, owner: User) -> Team:
    team = await db.create_team(
        Team(id="team-1", name="Team One", slug="team-one", team_type=team_type)
    )
    await db.add_team_member(TeamMember(team_id=team.id, user_id=owner.id, role=Role.OWNER))
    return team


@pytest.fixture
async def subscribed_team(db: PlatformDatabase, team: Team, fake_stripe) -> Team:
    """Team with a Stripe subscription that has no line items yet."""
    await db.create_subscription(
        Subscription(team_id=team.id, customer="cus_team1", subscription="sub_team1")
    )
    fake_stripe.add_subscription("sub_team1")
    return team


async def enable_trial_mode(
    db: PlatformDatabase, duration_days: int = 5, project_type_id: str | None = None
) -> None:
    await db.set_setting(TRIAL_MODE_KEY, True)
    await db.set_setting(TRIAL_DURATION_KEY, duration_days)
    if project_type_id is not None:
        await db.set_setting(TRIAL_PROJECT_TYPE_KEY, project_type_id)


def days_ago(days: float) -> datetime:
    return datetime.now(UTC) - timedelta(days=days)


async def set_trial_end(db: PlatformDatabase, team_id: str, trial_ends_at: datetime) -> None:
    """Move a team's trial window directly in storage."""
    conn = db._get_connection()
    conn.execute(
        "UPDATE teams SET trial_ends_at = ? WHERE id = ?", (trial_ends_at.isoformat(), team_id)
    )
    conn.commit()
