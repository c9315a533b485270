"""
Role Constants

Roles carried in the ``role`` claim of bridge tokens.
"""

from enum import Enum


class RoleName(str, Enum):
    """Enumeration of token roles."""

    USER = "user"
    ADMIN = "admin"
    SERVICE_ROLE = "service_role"


# Role the bridge process signs its own tokens with
BRIDGE_ROLE = RoleName.SERVICE_ROLE

# Roles allowed through the bridge unless overridden by settings
DEFAULT_BRIDGE_ROLES = (RoleName.ADMIN, RoleName.SERVICE_ROLE)
