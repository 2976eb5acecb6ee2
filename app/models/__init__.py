"""
SQLModel database models.

Importing this package registers every table on SQLModel.metadata.
"""

from app.models.oidc import OidcClients, OidcGrants, OidcSessions
from app.models.role import Permissions, RolePermissions, Roles
from app.models.user import Users
from app.models.user_session import UserSessions

__all__ = [
    "OidcClients",
    "OidcGrants",
    "OidcSessions",
    "Permissions",
    "RolePermissions",
    "Roles",
    "UserSessions",
    "Users",
]
