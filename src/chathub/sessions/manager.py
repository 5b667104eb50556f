import logging
from typing import Callable

from pydantic import ValidationError

from chathub.errors import SessionNotFoundError
from chathub.sessions.schema import Message, Session, StopReason, utc_now
from chathub.storage import KeyValueStore

logger = logging.getLogger(__name__)

SESSIONS_KEY = "chat-sessions"
DEFAULT_TITLE = "Untitled"


class SessionStore:
    """Canonical list of chat sessions, most recent first.

    Message updates are applied with ``upsert_message``, which replaces a
    message with the same id in place and otherwise appends, so the live
    update path and the final persist path may both submit the same message.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        on_redirect: Callable[[str], None] | None = None,
    ):
        self.storage = storage
        self.on_redirect = on_redirect
        self._sessions: list[Session] = self._load()

    def _load(self) -> list[Session]:
        raw = self.storage.get(SESSIONS_KEY, []) or []
        sessions: list[Session] = []
        for item in raw:
            try:
                session = Session.model_validate(item)
            except ValidationError as e:
                logger.error(f"Skipping invalid stored session: {e}")
                continue
            self._close_stale_messages(session)
            sessions.append(session)
        logger.info(f"Loaded {len(sessions)} sessions")
        return sessions

    @staticmethod
    def _close_stale_messages(session: Session) -> None:
        for message in session.messages:
            if message.is_loading:
                logger.warning(f"Closing interrupted message {message.id} in session {session.id}")
                message.is_loading = False
                message.stop = True
                message.stop_reason = StopReason.ERROR
                for tool in message.tools:
                    tool.tool_loading = False

    def save(self) -> None:
        self.storage.set(
            SESSIONS_KEY,
            [s.model_dump(mode="json", by_alias=True) for s in self._sessions],
        )

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions)

    def list_sessions(self) -> list[Session]:
        return sorted(
            self._sessions,
            key=lambda s: s.updated_at or s.created_at,
            reverse=True,
        )

    def get_session(self, session_id: str) -> Session | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def create_session(self, redirect: bool = False, title: str | None = None) -> Session:
        existing = {s.id for s in self._sessions}
        session = Session(title=title)
        while session.id in existing:
            session = Session(title=title)

        self._sessions.insert(0, session)
        self.save()
        logger.info(f"Created new session {session.id}")

        if redirect and self.on_redirect is not None:
            self.on_redirect(session.id)
        return session

    def upsert_message(self, session_id: str, message: Message, persist: bool = True) -> Session:
        session = self.require_session(session_id)
        stored = message.model_copy(deep=True)

        for idx, existing in enumerate(session.messages):
            if existing.id == stored.id:
                session.messages[idx] = stored
                break
        else:
            if not session.messages and not session.title:
                session.title = stored.raw_human or DEFAULT_TITLE
            session.messages.append(stored)

        session.updated_at = utc_now()
        if persist:
            self.save()
            logger.debug(f"Persisted message {stored.id} in session {session_id}")
        return session

    def update_session(self, session_id: str, *, title: str | None = None) -> Session:
        session = self.require_session(session_id)
        if title is not None:
            session.title = title
        session.updated_at = utc_now()
        self.save()
        return session

    def remove_message(self, session_id: str, message_id: str) -> Session:
        session = self.require_session(session_id)
        session.messages = [m for m in session.messages if m.id != message_id]
        session.updated_at = utc_now()
        self.save()
        logger.info(f"Removed message {message_id} from session {session_id}")
        return session

    def remove_session(self, session_id: str) -> None:
        self.require_session(session_id)
        self._sessions = [s for s in self._sessions if s.id != session_id]
        self.save()
        logger.info(f"Removed session {session_id}")

    def clear_sessions(self) -> None:
        self._sessions = []
        self.save()
