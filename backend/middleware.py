from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)

    if not check_rbac(user.get("role"), required_role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_role(request, UserRole.ROLE_ADMIN)

async def partner_route_guard(request: Request) -> dict:
    """Guard for partner dashboard routes.

    Admins may read any partner; a partner token may only read the partner
    named in its own partner_id claim.
    """
    user = await require_role(request, UserRole.ROLE_PARTNER)
    partner_id = request.path_params.get("partner_id")

    if user.get("role") == UserRole.ROLE_ADMIN.value:
        return user

    if not partner_id or user.get("partner_id") != partner_id:
        logger.warning(
            "PARTNER_ACCESS_DENIED user_id=%s token_partner_id=%s requested_partner_id=%s",
            user.get("sub"), user.get("partner_id"), partner_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized for this partner"
        )
    return user
