"""Constants package for the control plane."""

from .plans import (
    PLAN_CEILINGS,
    PLAN_ENTITLEMENTS,
    PLAN_RESOURCES,
    PlanTier,
    ceiling_for,
    entitlements_for,
    resources_for,
)
from .roles import BRIDGE_ROLE, DEFAULT_BRIDGE_ROLES, RoleName

__all__ = [
    # Plan constants
    "PlanTier",
    "PLAN_RESOURCES",
    "PLAN_CEILINGS",
    "PLAN_ENTITLEMENTS",
    "resources_for",
    "ceiling_for",
    "entitlements_for",
    # Role constants
    "RoleName",
    "BRIDGE_ROLE",
    "DEFAULT_BRIDGE_ROLES",
]
