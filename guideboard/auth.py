"""
Caller identity.

Requests identify their user with the ``X-User-Id`` header. The first time an
id is seen its profile row is created: admins are the ids listed in settings,
everyone else starts as a guide.
"""

import logging
import threading
from datetime import datetime

from fastapi import Depends, Header, HTTPException, Request

from guideboard.models import Profile, Role, profile_key
from guideboard.policy import Database, ScopedStore

logger = logging.getLogger(__name__)

_provision_lock = threading.Lock()


def provision_profile(
    db: Database,
    user_id: str,
    *,
    full_name: str | None,
    admin_ids: list[str],
    now: datetime,
) -> Profile:
    with _provision_lock:
        profile = db.get(profile_key(user_id))
        if isinstance(profile, Profile):
            return profile

        profile = Profile(
            id=user_id,
            full_name=(full_name or "").strip(),
            role=Role.ADMIN if user_id in admin_ids else Role.GUIDE,
            created_at=now,
        )
        db.put(profile_key(user_id), profile)

    logger.info("profile created id=%s role=%s", user_id, profile.role)
    return profile


async def get_caller(
    request: Request,
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
) -> Profile:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")

    state = request.app.state
    profile = provision_profile(
        state.database,
        x_user_id.strip(),
        full_name=x_user_name,
        admin_ids=state.settings.admin_user_ids,
        now=state.now_fn(),
    )
    if not profile.is_active:
        raise HTTPException(status_code=403, detail="Profile is inactive")
    return profile


async def get_store(
    request: Request, caller: Profile = Depends(get_caller)
) -> ScopedStore:
    state = request.app.state
    return ScopedStore(
        state.database,
        caller,
        feed=state.change_feed,
        now_fn=state.now_fn,
        lock_timeout=state.settings.lock_timeout_seconds,
    )
