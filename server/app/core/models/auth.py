from typing import Optional, Literal
from uuid import UUID
from pydantic import BaseModel

UserRole = Literal["admin", "recordkeeper", "executive", "employee"]


class TokenPayload(BaseModel):
    sub: str  # user_id
    email: str
    role: UserRole
    org_id: Optional[str] = None
    exp: int


class CurrentUser(BaseModel):
    id: UUID
    email: str
    role: UserRole
    org_id: Optional[UUID] = None  # None for platform admins
