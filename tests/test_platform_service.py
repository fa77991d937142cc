"""
Tests for request-path platform flows.

Tests:
- Trial window on team creation
- Initial project billing state (TRIAL / BILLED / NOT_BILLED)
- Reconciliation triggered by member, device and project changes
- Billing failures returned as warnings after the change commits
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
import stripe

from conftest import enable_trial_mode
from src.billing.errors import NotFoundError, ProviderError
from src.billing.service import BillingService
from src.billing.stripe_client import SubscriptionClient
from src.models.platform import BillingState, Role, User
from src.platform.service import PlatformService


class TestCreateTeam:
    @pytest.mark.asyncio
    async def test_trial_window_when_trial_mode_enabled(self, db, platform, team_type, owner):
        await enable_trial_mode(db, duration_days=5)
        now = datetime(2026, 3, 1, tzinfo=UTC)

        team = await platform.create_team("Acme", "acme", team_type.id, owner_id=owner.id, now=now)

        assert team.trial_ends_at == now + timedelta(days=5)
        stored = await db.get_team(team.id)
        assert stored.trial_ends_at == now + timedelta(days=5)
        assert await db.list_owned_team_ids(owner.id) == [team.id]

    @pytest.mark.asyncio
    async def test_no_trial_window_when_disabled(self, platform, team_type):
        team = await platform.create_team("Acme", "acme", team_type.id)

        assert team.trial_ends_at is None

    @pytest.mark.asyncio
    async def test_unknown_team_type(self, platform):
        with pytest.raises(NotFoundError):
            await platform.create_team("Acme", "acme", "tt-missing")


class TestCreateProject:
    @pytest.mark.asyncio
    async def test_trial_project(self, db, platform, team_type, project_type, fake_stripe):
        await enable_trial_mode(db, duration_days=5, project_type_id=project_type.id)
        team = await platform.create_team("Acme", "acme", team_type.id)

        result = await platform.create_project(team.id, "app", project_type.id)

        assert result.resource.billing_state == BillingState.TRIAL
        assert result.billing_warning is None
        assert fake_stripe.calls == []

    @pytest.mark.asyncio
    async def test_non_permitted_type_is_not_billed(
        self, db, platform, team_type, project_type, premium_project_type
    ):
        await enable_trial_mode(db, duration_days=5, project_type_id=project_type.id)
        team = await platform.create_team("Acme", "acme", team_type.id)

        result = await platform.create_project(team.id, "app", premium_project_type.id)

        assert result.resource.billing_state == BillingState.NOT_BILLED

    @pytest.mark.asyncio
    async def test_expired_trial_is_not_billed(self, db, platform, team_type, project_type):
        await enable_trial_mode(db, duration_days=5, project_type_id=project_type.id)
        past = datetime.now(UTC) - timedelta(days=10)
        team = await platform.create_team("Acme", "acme", team_type.id, now=past)

        result = await platform.create_project(team.id, "app", project_type.id)

        assert result.resource.billing_state == BillingState.NOT_BILLED

    @pytest.mark.asyncio
    async def test_subscribed_team_bills_immediately(
        self, db, platform, subscribed_team, project_type, fake_stripe
    ):
        result = await platform.create_project(subscribed_team.id, "app", project_type.id)

        project = result.resource
        assert project.billing_state == BillingState.BILLED
        assert (await db.get_project(project.id)).billing_state == BillingState.BILLED
        assert fake_stripe.item("sub_team1", "prod_project").quantity == 1
        assert fake_stripe.subscriptions["sub_team1"].metadata == {project.id: "true"}
        assert fake_stripe.item("sub_team1", "prod_team").quantity == 1

    @pytest.mark.asyncio
    async def test_provider_failure_returns_warning(
        self, db, platform, subscribed_team, fake_stripe
    ):
        fake_stripe.fail_with = ProviderError("Stripe down")

        result = await platform.create_project(subscribed_team.id, "app")

        assert result.billing_warning is not None
        assert result.billing_warning.error_type == "ProviderError"
        # project creation committed regardless
        assert await db.get_project(result.resource.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_team(self, platform):
        with pytest.raises(NotFoundError):
            await platform.create_project("team-missing", "app")


class TestDeleteProject:
    @pytest.mark.asyncio
    async def test_billed_project_deregistered(self, db, platform, subscribed_team, fake_stripe):
        created = await platform.create_project(subscribed_team.id, "app")

        result = await platform.delete_project(subscribed_team.id, created.resource.id)

        assert result.billing_warning is None
        assert await db.get_project(created.resource.id) is None
        assert fake_stripe.item("sub_team1", "prod_project").quantity == 0
        assert fake_stripe.subscriptions["sub_team1"].metadata == {}

    @pytest.mark.asyncio
    async def test_unbilled_project_skips_billing(self, db, platform, team, fake_stripe):
        created = await platform.create_project(team.id, "app")

        await platform.delete_project(team.id, created.resource.id)

        assert fake_stripe.calls == []


class TestMembersAndDevices:
    @pytest.mark.asyncio
    async def test_add_member_reconciles(self, db, platform, subscribed_team, fake_stripe):
        fake_stripe.add_subscription("sub_team1", [("prod_team", 1)])
        user = await db.create_user(User(id="user-bob", username="bob", email="bob@example.com"))

        result = await platform.add_member(subscribed_team.id, user.id, Role.MEMBER)

        assert result.billing_warning is None
        assert fake_stripe.item("sub_team1", "prod_team").quantity == 2

    @pytest.mark.asyncio
    async def test_remove_member_reconciles(self, db, platform, subscribed_team, owner, fake_stripe):
        fake_stripe.add_subscription("sub_team1", [("prod_team", 1)])

        await platform.remove_member(subscribed_team.id, owner.id)

        assert fake_stripe.item("sub_team1", "prod_team").quantity == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_member(self, platform, team):
        with pytest.raises(NotFoundError):
            await platform.remove_member(team.id, "user-nobody")

    @pytest.mark.asyncio
    async def test_devices_beyond_free_allocation(self, db, platform, subscribed_team, fake_stripe):
        devices = []
        for i in range(3):
            result = await platform.add_device(subscribed_team.id, f"device {i}")
            devices.append(result.resource)

        assert fake_stripe.item("sub_team1", "prod_device").quantity == 1

        await platform.remove_device(subscribed_team.id, devices[0].id)

        assert fake_stripe.item("sub_team1", "prod_device").quantity == 0

    @pytest.mark.asyncio
    async def test_device_without_subscription_skips_billing(self, db, platform, team, fake_stripe):
        result = await platform.add_device(team.id, "device")

        assert result.billing_warning is None
        assert await db.count_team_devices(team.id) == 1
        assert fake_stripe.calls == []

    @pytest.mark.asyncio
    async def test_device_configuration_error_returns_warning(
        self, db, platform, subscribed_team, stripe_config
    ):
        stripe_config.device_product = None
        stripe_config.device_price = None

        results = [await platform.add_device(subscribed_team.id, f"d{i}") for i in range(3)]

        assert results[1].billing_warning is None
        assert results[2].billing_warning.error_type == "ConfigurationError"
        assert await db.count_team_devices(subscribed_team.id) == 3


class TestStripeSdkObjects:
    @pytest.mark.asyncio
    async def test_add_device_reconciles_against_sdk_subscription(
        self, db, test_settings, stripe_config, subscribed_team
    ):
        platform = PlatformService(
            db, BillingService(test_settings, db, client=SubscriptionClient(stripe_config))
        )
        subscription = stripe.Subscription.construct_from(
            {
                "id": "sub_team1",
                "items": {
                    "object": "list",
                    "data": [
                        {"id": "si_team", "quantity": 1, "price": {"product": "prod_team"}},
                        {"id": "si_device", "quantity": 0, "price": {"product": "prod_device"}},
                    ],
                },
                "metadata": {},
            },
            "sk_test_key",
        )

        with (
            patch("stripe.Subscription.retrieve", return_value=subscription),
            patch("stripe.SubscriptionItem.modify") as modify,
        ):
            results = [await platform.add_device(subscribed_team.id, f"d{i}") for i in range(3)]

        assert [r.billing_warning for r in results] == [None, None, None]
        modify.assert_called_once_with("si_device", quantity=1, proration_behavior="always_invoice")
