from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from firebase_admin import exceptions as firebase_exceptions
from models import UserRole
from database import database
from services import auth_claims

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and verify the Firebase ID token. Returns the decoded claims."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        return None

    try:
        payload = await auth_claims.verify_id_token(token)
    except (firebase_exceptions.FirebaseError, ValueError) as e:
        # Invalid, expired, revoked and disabled-user tokens all land here
        logger.info(f"ID token rejected: {e}")
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def is_admin(user: dict) -> bool:
    """Admin via the `admin` custom claim, or is_admin / roles.admin on the users document."""
    if user.get("admin") is True:
        return True

    db = database.get_db()
    doc = await db.users.find_one(
        {"uid": user.get("uid")},
        {"_id": 0, "is_admin": 1, "roles": 1}
    )
    if not doc:
        return False
    return doc.get("is_admin") is True or (doc.get("roles") or {}).get("admin") is True

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if not await is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    user["role"] = UserRole.ROLE_ADMIN.value
    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_admin(request)
    return user
