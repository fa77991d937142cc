"""
Product/price resolution per team plan.

Resolution order for member seats:
1. team type properties.billing override
2. STRIPE_TEAMS[<team type name>] override
3. platform default (STRIPE_TEAM_PRODUCT / STRIPE_TEAM_PRICE)

Devices follow the same order without step 2. Project seats resolve from the
project type's billing properties, then the platform default.
"""

from collections.abc import Iterable
from typing import NamedTuple

from src.billing.errors import ConfigurationError
from src.config import StripeConfig
from src.models.platform import ProjectType, Team


class ProductPrice(NamedTuple):
    product: str
    price: str


class PlanResolver:
    """Resolves which Stripe product/price bills each resource class of a team."""

    def __init__(self, config: StripeConfig):
        self.config = config

    def member_product_price(self, team: Team) -> ProductPrice:
        plan = team.team_type.properties.billing
        if plan.member_product and plan.member_price:
            return ProductPrice(plan.member_product, plan.member_price)

        override = self.config.teams.get(team.team_type.name)
        if override:
            return ProductPrice(override.product, override.price)

        return self._require(
            "member", team, self.config.team_product, self.config.team_price
        )

    def device_product_price(self, team: Team) -> ProductPrice:
        plan = team.team_type.properties.billing
        if plan.device_product and plan.device_price:
            return ProductPrice(plan.device_product, plan.device_price)

        return self._require(
            "device", team, self.config.device_product, self.config.device_price
        )

    def project_product_price(self, team: Team, project_type: ProjectType | None) -> ProductPrice:
        if project_type is not None:
            billing = project_type.properties.billing
            if billing.get("product") and billing.get("price"):
                return ProductPrice(billing["product"], billing["price"])

        return self._require(
            "project", team, self.config.project_product, self.config.project_price
        )

    def project_products(self, project_types: Iterable[ProjectType]) -> list[ProductPrice]:
        """Every configured product that bills project seats."""
        products = []
        if self.config.project_product and self.config.project_price:
            products.append(ProductPrice(self.config.project_product, self.config.project_price))
        for project_type in project_types:
            billing = project_type.properties.billing
            if billing.get("product") and billing.get("price"):
                products.append(ProductPrice(billing["product"], billing["price"]))
        return products

    @staticmethod
    def _require(
        resource: str, team: Team, product: str | None, price: str | None
    ) -> ProductPrice:
        if not product or not price:
            raise ConfigurationError(
                f"No {resource} product/price configured for team type "
                f"'{team.team_type.name}'"
            )
        return ProductPrice(product, price)
