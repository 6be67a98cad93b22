"""Conversation sessions and bounded turn history"""

import asyncio
import uuid
from typing import Dict, List, Optional
from datetime import datetime, timezone
import structlog

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import NotFoundError
from ..rag.models import ConversationTurn
from .models import Session

logger = structlog.get_logger(__name__)


class SessionStore:
    """In-memory conversation store keyed by (business, session)"""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.sessions: Dict[str, Session] = {}
        self.history: Dict[str, List[ConversationTurn]] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(
        self,
        business_id: str,
        session_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Session:
        """Reuse a live session or start a new one"""
        async with self._lock:
            now = self.clock.now()

            if session_id:
                session = self.sessions.get(self._key(business_id, session_id))
                if session is not None and not self._is_expired(session, now):
                    session.last_activity = now
                    if customer_id and not session.customer_id:
                        session.customer_id = customer_id
                    return session

            session = Session(
                session_id=session_id or str(uuid.uuid4()),
                business_id=business_id,
                customer_id=customer_id,
                created_at=now,
                last_activity=now,
            )
            key = self._key(business_id, session.session_id)
            self.sessions[key] = session
            self.history[key] = []

        logger.info("Session started",
                    business_id=business_id,
                    session_id=session.session_id,
                    resumed_id=bool(session_id))
        return session

    async def get_history(self, business_id: str, session_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        """Most recent turns of a session, oldest first"""
        limit = limit or self.settings.conversation_history_limit
        turns = self.history.get(self._key(business_id, session_id), [])
        return list(turns[-limit:])

    async def append_turn(
        self,
        business_id: str,
        session_id: str,
        role: str,
        content: str,
        intent: Optional[str] = None,
    ) -> ConversationTurn:
        key = self._key(business_id, session_id)

        async with self._lock:
            session = self.sessions.get(key)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")

            turn = ConversationTurn(
                role=role,
                content=content,
                timestamp=datetime.fromtimestamp(self.clock.now(), tz=timezone.utc),
                intent=intent,
            )
            turns = self.history.setdefault(key, [])
            turns.append(turn)

            # Stored history holds twice the prompt window
            max_turns = self.settings.conversation_history_limit * 2
            if len(turns) > max_turns:
                del turns[:-max_turns]

            session.last_activity = self.clock.now()
            if role == "user":
                session.turn_count += 1
                if intent:
                    session.previous_topics = (session.previous_topics + [intent])[-5:]

        return turn

    async def cleanup_expired(self) -> int:
        """Drop sessions idle for longer than the session timeout"""
        async with self._lock:
            now = self.clock.now()
            expired = [key for key, session in self.sessions.items() if self._is_expired(session, now)]
            for key in expired:
                del self.sessions[key]
                self.history.pop(key, None)

        if expired:
            logger.info("Cleaned up expired sessions", count=len(expired))
        return len(expired)

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_activity > self.settings.session_timeout_seconds

    @staticmethod
    def _key(business_id: str, session_id: str) -> str:
        return f"{business_id}:{session_id}"
