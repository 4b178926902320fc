"""
Workflow State Store
====================
Storage contract for sessions, budget ledgers, usage records and workflow
runs, with an in-process adapter (default, used by tests) and a Redis
adapter for deployments with more than one worker.

Session-scoped reads take an optional Principal and raise AccessDenied when
the principal may not see the row. Internal callers pass no principal.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..core.config import Settings
from ..core.exceptions import AccessDenied, ConfigurationError
from ..models.pipeline_state import (
    BudgetLedger,
    Principal,
    Session,
    SessionState,
    TokenUsageRecord,
    WorkflowState,
    to_usd,
    utc_now,
)

logger = logging.getLogger(__name__)

# Applies a change to a session in place; returns False when nothing changed
SessionMutation = Callable[[Session], bool]


def _check_access(session: Session, principal: Optional[Principal]) -> None:
    if principal is not None and not principal.can_access(session.user_id):
        raise AccessDenied(f"Session {session.session_id} belongs to another user")


class StateStore(ABC):
    """Persistence contract consumed by the orchestrator, budget guard and session service"""

    # Sessions

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        """Insert a session. Returns the stored record if the id already exists."""
        pass

    @abstractmethod
    async def get_session(self, session_id: str, principal: Optional[Principal] = None) -> Optional[Session]:
        pass

    @abstractmethod
    async def update_session(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def mutate_session(
        self, session_id: str, mutate: SessionMutation, principal: Optional[Principal] = None
    ) -> Optional[Session]:
        """
        Atomically read, change and write one session.

        Returns the stored session after the change, or None when the id is
        unknown. Raises AccessDenied before `mutate` runs if the principal
        may not see the row.
        """
        pass

    @abstractmethod
    async def sweep_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """Mark active sessions past `expires_at` as expired. Returns how many changed."""
        pass

    # Ledgers

    @abstractmethod
    async def create_ledger(self, session_id: str, limit_usd: Decimal = Decimal("5.0000")) -> BudgetLedger:
        """Create the session's ledger. Creating it twice returns the existing ledger."""
        pass

    @abstractmethod
    async def get_ledger(self, session_id: str, principal: Optional[Principal] = None) -> Optional[BudgetLedger]:
        pass

    @abstractmethod
    async def reserve_and_commit_spend(self, session_id: str, delta: Decimal, bucket: str) -> BudgetLedger:
        """Atomically add `delta` to the ledger's spend and the breakdown bucket"""
        pass

    @abstractmethod
    async def mark_over_budget(self, session_id: str) -> None:
        """Set the sticky over-budget flag on the ledger and the session"""
        pass

    # Usage records

    @abstractmethod
    async def append_usage_record(self, record: TokenUsageRecord) -> None:
        pass

    @abstractmethod
    async def list_usage_records(self, session_id: str) -> List[TokenUsageRecord]:
        pass

    # Workflows

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowState]:
        pass

    @abstractmethod
    async def put_workflow(self, workflow: WorkflowState) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemoryStateStore(StateStore):
    """Process-local store. Records are copied on the way in and out."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._ledgers: Dict[str, BudgetLedger] = {}
        self._usage: Dict[str, List[TokenUsageRecord]] = {}
        self._workflows: Dict[str, WorkflowState] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            existing = self._sessions.get(session.session_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._sessions[session.session_id] = session.model_copy(deep=True)
            return session

    async def get_session(self, session_id: str, principal: Optional[Principal] = None) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            _check_access(session, principal)
            return session.model_copy(deep=True)

    async def update_session(self, session: Session) -> Session:
        async with self._lock:
            if session.session_id not in self._sessions:
                raise KeyError(f"Unknown session {session.session_id}")
            self._sessions[session.session_id] = session.model_copy(deep=True)
            return session

    async def mutate_session(
        self, session_id: str, mutate: SessionMutation, principal: Optional[Principal] = None
    ) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            _check_access(session, principal)
            changed = session.model_copy(deep=True)
            if mutate(changed):
                self._sessions[session_id] = changed
                session = changed
            return session.model_copy(deep=True)

    async def sweep_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        swept = 0
        async with self._lock:
            for session in self._sessions.values():
                if session.state == SessionState.ACTIVE and session.is_expired(now):
                    session.state = SessionState.EXPIRED
                    swept += 1
        return swept

    async def create_ledger(self, session_id: str, limit_usd: Decimal = Decimal("5.0000")) -> BudgetLedger:
        async with self._lock:
            ledger = self._ledgers.get(session_id)
            if ledger is None:
                ledger = BudgetLedger(session_id=session_id, limit_usd=to_usd(limit_usd))
                self._ledgers[session_id] = ledger
            return ledger.model_copy(deep=True)

    async def get_ledger(self, session_id: str, principal: Optional[Principal] = None) -> Optional[BudgetLedger]:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                _check_access(session, principal)
            ledger = self._ledgers.get(session_id)
            return ledger.model_copy(deep=True) if ledger else None

    async def reserve_and_commit_spend(self, session_id: str, delta: Decimal, bucket: str) -> BudgetLedger:
        async with self._lock:
            ledger = self._ledgers.get(session_id)
            if ledger is None:
                raise KeyError(f"No ledger for session {session_id}")
            ledger.apply_spend(delta, bucket)
            return ledger.model_copy(deep=True)

    async def mark_over_budget(self, session_id: str) -> None:
        async with self._lock:
            ledger = self._ledgers.get(session_id)
            if ledger is not None:
                ledger.over_budget_flag = True
                ledger.updated_at = utc_now()
            session = self._sessions.get(session_id)
            if session is not None:
                session.flags.budget_exceeded = True

    async def append_usage_record(self, record: TokenUsageRecord) -> None:
        async with self._lock:
            self._usage.setdefault(record.session_id, []).append(record.model_copy(deep=True))

    async def list_usage_records(self, session_id: str) -> List[TokenUsageRecord]:
        async with self._lock:
            return [record.model_copy(deep=True) for record in self._usage.get(session_id, [])]

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowState]:
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy(deep=True) if workflow else None

    async def put_workflow(self, workflow: WorkflowState) -> None:
        async with self._lock:
            self._workflows[workflow.workflow_id] = workflow.model_copy(deep=True)


class RedisStateStore(StateStore):
    """Redis-backed store. Records are stored as pydantic JSON."""

    KEY_PREFIX = "trip"

    def __init__(
        self,
        redis_url: str,
        workflow_ttl_seconds: int = 24 * 60 * 60,        # 1 day while in flight
        terminal_workflow_ttl_seconds: int = 7 * 24 * 60 * 60,  # 7 days once finished
        client: Optional[redis.Redis] = None,
    ):
        self._redis = client or redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self.workflow_ttl_seconds = workflow_ttl_seconds
        self.terminal_workflow_ttl_seconds = terminal_workflow_ttl_seconds

    # Key helpers

    def session_key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:session:{session_id}"

    def sessions_index_key(self) -> str:
        return f"{self.KEY_PREFIX}:sessions"

    def ledger_key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:ledger:{session_id}"

    def usage_key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:usage:{session_id}"

    def workflow_key(self, workflow_id: str) -> str:
        return f"{self.KEY_PREFIX}:workflow:{workflow_id}"

    # Sessions

    async def create_session(self, session: Session) -> Session:
        created = await self._redis.set(
            self.session_key(session.session_id), session.model_dump_json(), nx=True
        )
        if not created:
            existing = await self.get_session(session.session_id)
            if existing is not None:
                return existing
        await self._redis.sadd(self.sessions_index_key(), session.session_id)
        return session

    async def get_session(self, session_id: str, principal: Optional[Principal] = None) -> Optional[Session]:
        raw = await self._redis.get(self.session_key(session_id))
        if raw is None:
            return None
        session = Session.model_validate_json(raw)
        _check_access(session, principal)
        return session

    async def update_session(self, session: Session) -> Session:
        updated = await self._redis.set(
            self.session_key(session.session_id), session.model_dump_json(), xx=True
        )
        if not updated:
            raise KeyError(f"Unknown session {session.session_id}")
        return session

    async def sweep_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        swept = 0
        for session_id in await self._redis.smembers(self.sessions_index_key()):
            _, changed = await self._mutate_session(session_id, lambda s: _expire_if_due(s, now))
            if changed:
                swept += 1
        return swept

    async def mutate_session(
        self, session_id: str, mutate: SessionMutation, principal: Optional[Principal] = None
    ) -> Optional[Session]:
        session, _ = await self._mutate_session(session_id, mutate, principal)
        return session

    async def _mutate_session(
        self, session_id: str, mutate: SessionMutation, principal: Optional[Principal] = None
    ) -> Tuple[Optional[Session], bool]:
        """Apply `mutate` under WATCH; `mutate` returns False to skip the write"""
        key = self.session_key(session_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None, False
                    session = Session.model_validate_json(raw)
                    _check_access(session, principal)
                    if not mutate(session):
                        await pipe.unwatch()
                        return session, False
                    pipe.multi()
                    pipe.set(key, session.model_dump_json())
                    await pipe.execute()
                    return session, True
                except WatchError:
                    continue

    # Ledgers

    async def create_ledger(self, session_id: str, limit_usd: Decimal = Decimal("5.0000")) -> BudgetLedger:
        ledger = BudgetLedger(session_id=session_id, limit_usd=to_usd(limit_usd))
        created = await self._redis.set(self.ledger_key(session_id), ledger.model_dump_json(), nx=True)
        if created:
            return ledger
        raw = await self._redis.get(self.ledger_key(session_id))
        return BudgetLedger.model_validate_json(raw)

    async def get_ledger(self, session_id: str, principal: Optional[Principal] = None) -> Optional[BudgetLedger]:
        if principal is not None:
            await self.get_session(session_id, principal)
        raw = await self._redis.get(self.ledger_key(session_id))
        return BudgetLedger.model_validate_json(raw) if raw else None

    async def reserve_and_commit_spend(self, session_id: str, delta: Decimal, bucket: str) -> BudgetLedger:
        key = self.ledger_key(session_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        raise KeyError(f"No ledger for session {session_id}")
                    ledger = BudgetLedger.model_validate_json(raw)
                    ledger.apply_spend(delta, bucket)
                    pipe.multi()
                    pipe.set(key, ledger.model_dump_json())
                    await pipe.execute()
                    return ledger
                except WatchError:
                    logger.debug(f"Ledger {session_id} changed during commit, retrying")
                    continue

    async def mark_over_budget(self, session_id: str) -> None:
        key = self.ledger_key(session_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        break
                    ledger = BudgetLedger.model_validate_json(raw)
                    ledger.over_budget_flag = True
                    ledger.updated_at = utc_now()
                    pipe.multi()
                    pipe.set(key, ledger.model_dump_json())
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        await self._mutate_session(session_id, _flag_budget_exceeded)

    # Usage records

    async def append_usage_record(self, record: TokenUsageRecord) -> None:
        await self._redis.rpush(self.usage_key(record.session_id), record.model_dump_json())

    async def list_usage_records(self, session_id: str) -> List[TokenUsageRecord]:
        raw_records = await self._redis.lrange(self.usage_key(session_id), 0, -1)
        return [TokenUsageRecord.model_validate_json(raw) for raw in raw_records]

    # Workflows

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowState]:
        raw = await self._redis.get(self.workflow_key(workflow_id))
        return WorkflowState.model_validate_json(raw) if raw else None

    async def put_workflow(self, workflow: WorkflowState) -> None:
        ttl = self.terminal_workflow_ttl_seconds if workflow.is_terminal else self.workflow_ttl_seconds
        await self._redis.set(self.workflow_key(workflow.workflow_id), workflow.model_dump_json(), ex=ttl)

    async def close(self) -> None:
        await self._redis.aclose()


def _expire_if_due(session: Session, now: datetime) -> bool:
    if session.state == SessionState.ACTIVE and session.is_expired(now):
        session.state = SessionState.EXPIRED
        return True
    return False


def _flag_budget_exceeded(session: Session) -> bool:
    if session.flags.budget_exceeded:
        return False
    session.flags.budget_exceeded = True
    return True


def create_state_store(settings: Settings) -> StateStore:
    """Build the configured store adapter"""
    backend = settings.state_backend.lower()
    if backend == "memory":
        logger.info("Using in-memory state store")
        return InMemoryStateStore()
    if backend == "redis":
        logger.info(f"Using Redis state store at {settings.redis_url}")
        return RedisStateStore(
            settings.redis_url,
            workflow_ttl_seconds=settings.workflow_ttl_seconds,
            terminal_workflow_ttl_seconds=settings.terminal_workflow_ttl_seconds,
        )
    raise ConfigurationError(f"Unknown state backend: {settings.state_backend}")
