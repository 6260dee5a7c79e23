from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os
import logging
from models import UserRole

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

def build_claims(user_id: str, role: UserRole, partner_id: Optional[str] = None) -> Dict:
    """Token claims for a dashboard caller; partner tokens are bound to one partner."""
    if role == UserRole.ROLE_PARTNER and not partner_id:
        raise ValueError("Partner tokens require a partner_id")
    claims = {"sub": user_id, "role": UserRole(role).value}
    if partner_id:
        claims["partner_id"] = partner_id
    return claims

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token.

    Returns None for bad signatures, expired tokens, and partner tokens that
    do not name their partner.
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected access token: {e}")
        return None
    if claims.get("role") == UserRole.ROLE_PARTNER.value and not claims.get("partner_id"):
        logger.warning(f"Partner token without partner_id claim for user {claims.get('sub')}")
        return None
    return claims

def check_rbac(user_role: str, required_role: UserRole) -> bool:
    """Admins may do anything a partner can."""
    role_hierarchy = {
        UserRole.ROLE_ADMIN.value: 2,
        UserRole.ROLE_PARTNER.value: 1,
        UserRole.ROLE_CUSTOMER.value: 0,
    }
    return role_hierarchy.get(user_role, 0) >= role_hierarchy.get(required_role.value, 0)
