from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, List, Optional

from taskgate.logging import get_logger
from taskgate.service.errors import ForbiddenError, NotFoundError, ValidationError
from taskgate.service.sessions import SessionStore
from taskgate.storage.models import AuthContext, SessionClaim, SessionRecord

logger = get_logger(__name__)


@dataclass
class SessionView:
    record: SessionRecord
    is_current: bool


class AccountService:
    """Session management and account deletion for a signed-in user."""

    def __init__(self, store: Any, sessions: SessionStore) -> None:
        self.store = store
        self.sessions = sessions

    async def list_sessions(self, context: AuthContext) -> List[SessionView]:
        records = await self.sessions.list_sessions(context.user_id)
        return [
            SessionView(record=record, is_current=record.session_id == context.session_id)
            for record in records
        ]

    async def sign_out_session(self, context: AuthContext, session_id: str) -> None:
        if session_id == context.session_id:
            raise ValidationError(
                "You cannot sign out your current session",
                detail={"session_id": session_id},
            )
        record = await self.sessions.get_session(context.user_id, session_id)
        if record is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        await self.sessions.delete_session(context.user_id, session_id)
        logger.info("session_signed_out", user_id=context.user_id, session_id=session_id)

    async def sign_out_other_sessions(self, context: AuthContext) -> int:
        return await self.sessions.delete_other_sessions(context.user_id, context.session_id)

    async def delete_account(self, context: AuthContext, confirm_email: Optional[str]) -> None:
        """Delete the user after the caller retypes their email.

        Sessions go first so a half-finished deletion never leaves a
        usable session behind a missing user.
        """
        if (confirm_email or "").strip().lower() != context.user.email:
            raise ForbiddenError("email confirmation does not match")
        await self.sessions.delete_all_sessions(context.user_id)
        await asyncio.to_thread(self.store.delete_user, context.user_id)
        logger.info("account_deleted", user_id=context.user_id)

    async def logout(self, claim: Optional[SessionClaim]) -> None:
        if claim is None:
            return
        await self.sessions.delete_session(claim.user_id, claim.session_id)
        logger.info("session_logged_out", user_id=claim.user_id, session_id=claim.session_id)
