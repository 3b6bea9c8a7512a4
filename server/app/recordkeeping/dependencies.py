"""Recordkeeping domain-specific dependencies."""
from uuid import UUID

from fastapi import Depends, HTTPException, status

from ..core.dependencies import require_roles
from ..core.models.auth import CurrentUser

# Recordkeeping role dependencies
require_recordkeeper = require_roles("admin", "recordkeeper")
require_certifier = require_roles("admin", "executive")
require_log_reader = require_roles("admin", "recordkeeper", "executive", "employee")


def ensure_org_access(current_user: CurrentUser, org_id: UUID) -> None:
    """Non-admin users only reach their own organization's records."""
    if current_user.role == "admin":
        return
    if current_user.org_id != org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied for this organization",
        )


def org_scoped(role_dependency):
    """Wrap a role dependency so it also checks the {org_id} path parameter."""
    async def checker(org_id: UUID, current_user=Depends(role_dependency)) -> CurrentUser:
        ensure_org_access(current_user, org_id)
        return current_user
    return checker


recordkeeper_for_org = org_scoped(require_recordkeeper)
certifier_for_org = org_scoped(require_certifier)
reader_for_org = org_scoped(require_log_reader)
