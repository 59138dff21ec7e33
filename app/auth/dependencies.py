from typing import Dict, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from app.auth.schemas import CurrentUser
from app.auth.security import decode_access_token


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Resolve the actor and their permissions from the access token issued by the identity service."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id_str = payload.get("user_id") or payload.get("sub")
    branch_id_str = payload.get("branch_id")
    role_name = payload.get("role")
    if not user_id_str or not branch_id_str or not role_name:
        raise credentials_exception

    try:
        user_id = UUID(user_id_str)
        branch_id = UUID(branch_id_str)
    except ValueError:
        raise credentials_exception

    academic_year_id: Optional[UUID] = None
    ay_id_str = payload.get("academic_year_id")
    if ay_id_str:
        try:
            academic_year_id = UUID(ay_id_str)
        except ValueError:
            pass

    permissions: Dict[str, Dict[str, bool]] = payload.get("permissions") or {}

    return CurrentUser(
        id=user_id,
        branch_id=branch_id,
        role=role_name,
        permissions=permissions,
        academic_year_id=academic_year_id,
        academic_year_status=payload.get("academic_year_status"),
    )


CLOSED_ACADEMIC_YEAR_MESSAGE = "This academic year is closed and cannot be modified."


async def require_writable_academic_year(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Dependency: block ledger writes when the academic year is CLOSED or missing."""
    if current_user.academic_year_status == "CLOSED":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=CLOSED_ACADEMIC_YEAR_MESSAGE,
        )
    if current_user.academic_year_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No active academic year. Please contact administrator.",
        )
    return current_user


async def require_academic_year(
    current_user: CurrentUser = Depends(get_current_user),
) -> UUID:
    """Academic year of the request scope; read endpoints need one too."""
    if current_user.academic_year_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active academic year in session",
        )
    return current_user.academic_year_id
