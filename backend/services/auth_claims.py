"""Firebase Auth bridge: ID-token verification and the `pro` custom claim.

The claim is a cache of users.is_pro that lets clients gate PRO features
without a document read. The users document stays the source of truth.
"""
import asyncio
import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials

logger = logging.getLogger(__name__)

PRO_CLAIM = "pro"

_firebase_app: Optional[firebase_admin.App] = None


def get_firebase_app() -> firebase_admin.App:
    """Get or initialize the Firebase Admin app."""
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass

    credentials_path = (
        os.getenv("FIREBASE_CREDENTIALS_PATH") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or ""
    ).strip()
    if credentials_path and Path(credentials_path).exists():
        _firebase_app = firebase_admin.initialize_app(credentials.Certificate(credentials_path))
    else:
        # Application default credentials (GCE / Cloud Run / gcloud auth)
        _firebase_app = firebase_admin.initialize_app()
    logger.info("Firebase Admin initialized")
    return _firebase_app


async def _run(fn, *args, **kwargs):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))


async def verify_id_token(token: str) -> Dict[str, Any]:
    """Decoded token claims (including 'uid'). Raises firebase auth errors."""
    get_firebase_app()
    return await _run(auth.verify_id_token, token, check_revoked=True)


async def sync_pro_claim(uid: str, is_pro: bool) -> bool:
    """Mirror is_pro into the user's custom claims, preserving other claims.

    Returns True when the claims were written, False when already in sync.
    Errors propagate; the persister decides how to treat them.
    """
    get_firebase_app()
    user = await _run(auth.get_user, uid)
    current = dict(user.custom_claims or {})

    desired = dict(current)
    if is_pro:
        desired[PRO_CLAIM] = True
    else:
        desired.pop(PRO_CLAIM, None)

    if desired == current:
        return False

    await _run(auth.set_custom_user_claims, uid, desired or None)
    logger.info("PRO_CLAIM_SYNCED uid=%s pro=%s", uid, is_pro)
    return True
