"""Request-path platform flows (teams, members, devices, projects)."""

from src.platform.service import BillingWarning, OperationResult, PlatformService

__all__ = ["BillingWarning", "OperationResult", "PlatformService"]
