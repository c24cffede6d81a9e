# ============================================================================
# FILE: agenda/api/dependencies.py
# Authentication dependencies for dashboard (JWT) routes
# ============================================================================
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import NamedTuple, Optional
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from uuid import UUID

from agenda.config.settings import settings
from agenda.models.appointment import ActorType

# ============================================================================
# Security Schemes
# ============================================================================

# Tokens are issued by the identity provider; this service only verifies them
jwt_security = HTTPBearer(
    scheme_name="JWT Bearer Token",
    description="Enter your JWT access token"
)

STAFF_ROLES = ("owner", "staff", "admin")


class StaffIdentity(NamedTuple):
    """Authenticated dashboard user, scoped to one establishment"""
    user_id: UUID
    establishment_id: UUID
    role: str

    @property
    def actor_type(self) -> str:
        if self.role == "admin":
            return ActorType.ADMIN.value
        return ActorType.STAFF.value


# ============================================================================
# JWT Token Functions
# ============================================================================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token. Used by tests and local tooling; production
    tokens come from the identity provider with the same claims.

    Args:
        data: Claims (sub, establishment_id, role)
        expires_delta: Optional custom expiration time
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access"
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def verify_access_token(token: str) -> dict:
    """
    Verify and decode a JWT access token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Could not validate credentials: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload


# ============================================================================
# JWT Authentication Dependencies
# ============================================================================

async def get_current_staff(
        credentials: HTTPAuthorizationCredentials = Depends(jwt_security)
) -> StaffIdentity:
    """
    Dependency to get the authenticated staff member from the JWT.

    Usage in routes:
        @router.get("/appointments")
        async def list_appointments(staff: StaffIdentity = Depends(get_current_staff)):
            ...

    Raises:
        HTTPException 401: If token is invalid
        HTTPException 403: If the user has no establishment or staff role
    """
    payload = verify_access_token(credentials.credentials)

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID in token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    establishment_id = payload.get("establishment_id")
    if not establishment_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User not associated with an establishment"
        )
    try:
        establishment_id = UUID(str(establishment_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid establishment ID in token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = payload.get("role", "staff")
    if role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required"
        )

    return StaffIdentity(user_id=user_id, establishment_id=establishment_id, role=role)
