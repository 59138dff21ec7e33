from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel

ELEVATED_ROLES = ("SUPER_ADMIN", "PLATFORM_ADMIN", "ADMIN")


class CurrentUser(BaseModel):
    """Authenticated actor as issued by the identity service.
    branch_id scopes every ledger operation; academic_year_id/status come from the ACTIVE year at login.
    """

    id: UUID
    branch_id: UUID
    role: str
    permissions: Dict[str, Dict[str, bool]] = {}
    academic_year_id: Optional[UUID] = None
    academic_year_status: Optional[str] = None  # ACTIVE | CLOSED; CLOSED => read-only

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES
