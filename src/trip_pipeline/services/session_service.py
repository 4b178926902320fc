"""
Session lifecycle: creation with a paired budget ledger, activity touches,
explicit flush and the periodic expiry sweep.
"""

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from ..models.pipeline_state import Principal, Session, SessionState, to_usd, utc_now
from .budget_guard import BudgetGuard
from .state_store import StateStore

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SessionService:
    """Owns session creation, touching, flushing and expiry"""

    def __init__(
        self,
        store: StateStore,
        budget_guard: BudgetGuard,
        ttl_minutes: int = 120,
        default_limit_usd: Decimal = Decimal("5.0000"),
    ):
        self.store = store
        self.budget_guard = budget_guard
        self.ttl_minutes = ttl_minutes
        self.default_limit_usd = to_usd(default_limit_usd)

    async def get_or_create(self, session_id: Optional[str], principal: Principal) -> Session:
        """
        Resolve the session a request belongs to.

        An unknown id is created as given. An id that belongs to another
        principal raises AccessDenied. An expired or flushed session is not
        revived; a new one is issued instead.
        """
        if session_id:
            session = await self.store.get_session(session_id, principal)
            if session is not None and session.is_active and not session.is_expired():
                return session
            if session is not None:
                logger.info(f"Session {session_id} is {session.state.value}; issuing a new session")
                session_id = None

        return await self.create(session_id or new_session_id(), principal)

    async def create(self, session_id: str, principal: Principal) -> Session:
        now = utc_now()
        session = Session(
            session_id=session_id,
            user_id=None if principal.is_service else principal.user_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(minutes=self.ttl_minutes),
        )
        session = await self.store.create_session(session)
        await self.store.create_ledger(session.session_id, self.default_limit_usd)

        logger.info(f"🆕 Created session {session.session_id} (user={session.user_id or 'anonymous'})")
        return session

    async def record_submission(self, session: Session, form_data: Dict[str, Any]) -> Session:
        """Store a submitted form on the session and extend its expiry"""
        def add_submission(stored: Session) -> bool:
            if not stored.is_active:
                return False
            stored.add_raw_input(form_data)
            stored.touch(self.ttl_minutes)
            return True

        updated = await self.store.mutate_session(session.session_id, add_submission)
        if updated is None:
            raise KeyError(f"Unknown session {session.session_id}")
        return updated

    async def touch(self, session_id: str) -> Optional[Session]:
        """Extend an active session's expiry window"""
        def extend(stored: Session) -> bool:
            if not stored.is_active:
                return False
            stored.touch(self.ttl_minutes)
            return True

        return await self.store.mutate_session(session_id, extend)

    async def set_flag(self, session_id: str, flag: str, value: bool = True) -> None:
        def apply_flag(stored: Session) -> bool:
            if getattr(stored.flags, flag) == value:
                return False
            setattr(stored.flags, flag, value)
            return True

        await self.store.mutate_session(session_id, apply_flag)

    async def flush(self, session_id: str, principal: Principal) -> Optional[Session]:
        """Explicit cleanup. Raw inputs are dropped; the ledger is kept for audit."""
        def mark_flushed(stored: Session) -> bool:
            stored.state = SessionState.FLUSHED
            stored.raw_inputs = []
            stored.last_activity_at = utc_now()
            return True

        session = await self.store.mutate_session(session_id, mark_flushed, principal)
        if session is None:
            return None
        self.budget_guard.forget(session_id)

        logger.info(f"🧹 Flushed session {session_id}")
        return session

    async def sweep(self) -> int:
        swept = await self.store.sweep_expired_sessions(utc_now())
        if swept:
            logger.info(f"Expired {swept} idle sessions")
        return swept

    async def run_reaper(self, interval_seconds: float) -> None:
        """Sweep expired sessions forever; cancelled on shutdown"""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")
