"""
In-memory session store: chat transcripts and user profiles per session.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from dining_agent.config import SESSION_CONFIG
from dining_agent.models import ChatMessage, Profile, Session

logger = logging.getLogger(__name__)


def default_profile(session_id: str) -> Profile:
    """Placeholder profile for a session seen for the first time."""
    return Profile(
        name=session_id[:1].upper() + session_id[1:],
        email=f"{session_id}@{SESSION_CONFIG['email_domain']}",
        phone=SESSION_CONFIG["default_phone"],
        locality=SESSION_CONFIG["default_locality"],
    )


class SessionStore:
    """
    Sessions keyed by id. A session is created lazily on first use and lives
    until ``end_session`` removes it.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def _get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, profile=default_profile(session_id))
            self._sessions[session_id] = session
            logger.info(f"Created session {session_id}")
        return session

    async def get_or_create_chat_history(self, session_id: str, chat_id: str) -> List[ChatMessage]:
        session = self._get_or_create(session_id)
        return list(session.chats.setdefault(chat_id, []))

    async def get_chat_history(self, session_id: str, chat_id: str) -> List[ChatMessage]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return list(session.chats.get(chat_id, []))

    async def append_messages(self, session_id: str, chat_id: str, messages: Sequence[ChatMessage]) -> None:
        session = self._get_or_create(session_id)
        session.chats.setdefault(chat_id, []).extend(messages)

    async def get_profile(self, session_id: str) -> Optional[Profile]:
        session = self._sessions.get(session_id)
        return session.profile if session else None

    async def update_profile(self, session_id: str, **fields: Any) -> Profile:
        session = self._get_or_create(session_id)
        session.profile = session.profile.model_copy(update=fields)
        return session.profile

    async def end_session(self, session_id: str) -> bool:
        """Remove the whole session record; returns whether it existed."""
        existed = self._sessions.pop(session_id, None) is not None
        if existed:
            logger.info(f"Ended session {session_id}")
        return existed

    def session_count(self) -> int:
        return len(self._sessions)
