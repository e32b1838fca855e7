import asyncio
import itertools
import logging
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

log = logging.getLogger(__name__)

USER = "user"
ASSISTANT = "assistant"

SCOPE_USER = "user"
SCOPE_CHANNEL = "channel"

SessionKey = Tuple[str, Optional[str]]

_serials = itertools.count(1)


@dataclass(frozen=True)
class Turn:
    role: str
    text: str


@dataclass
class _Session:
    serial: int = field(default_factory=lambda: next(_serials))
    turns: List[Turn] = field(default_factory=list)


def session_key(conversation_id: str, user_id: Optional[str], scope: str = SCOPE_USER) -> SessionKey:
    """Build the key a conversation's history is stored under.

    With the ``user`` scope every participant of a channel gets a private
    context; with ``channel`` the whole channel shares one.
    """

    if scope == SCOPE_CHANNEL:
        return (str(conversation_id), None)
    return (str(conversation_id), str(user_id) if user_id is not None else None)


class TurnHistory:
    """In-memory sliding window of turns per session."""

    def __init__(self, max_turns: int = 12, max_sessions: int = 1000) -> None:
        self.max_turns = max(1, max_turns)
        self.max_sessions = max(1, max_sessions)
        self._sessions: "OrderedDict[SessionKey, _Session]" = OrderedDict()
        self._locks: "weakref.WeakValueDictionary[SessionKey, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    def _busy(self, key: SessionKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def _evict(self, keep: SessionKey) -> None:
        # sessions with a turn in flight stay, so the cap may be exceeded briefly
        while len(self._sessions) > self.max_sessions:
            victim = next(
                (key for key in self._sessions if key != keep and not self._busy(key)),
                None,
            )
            if victim is None:
                return
            del self._sessions[victim]
            log.info("evicted idle session %s", victim)

    def _touch(self, key: SessionKey) -> _Session:
        session = self._sessions.get(key)
        if session is None:
            session = _Session()
            self._sessions[key] = session
            self._evict(keep=key)
        else:
            self._sessions.move_to_end(key)
        return session

    def get(self, key: SessionKey) -> List[Turn]:
        return list(self._touch(key).turns)

    def serial(self, key: SessionKey) -> int:
        """Identify the current incarnation of a session.

        The number changes whenever the session is cleared or evicted and
        created again.
        """

        return self._touch(key).serial

    def append(self, key: SessionKey, role: str, text: str, *, serial: Optional[int] = None) -> Optional[Turn]:
        """Add a turn and trim the window.

        When ``serial`` is given and the session was cleared or evicted since
        it was read, nothing is stored and ``None`` is returned.
        """

        if serial is not None:
            current = self._sessions.get(key)
            if current is None or current.serial != serial:
                log.info("dropping %s turn for replaced session %s", role, key)
                return None
        turn = Turn(role=role, text=text)
        turns = self._touch(key).turns
        turns.append(turn)
        if len(turns) > self.max_turns:
            del turns[: len(turns) - self.max_turns]
        return turn

    def clear(self, key: SessionKey) -> None:
        self._sessions.pop(key, None)

    def lock(self, key: SessionKey) -> asyncio.Lock:
        """Return the lock serializing work on ``key``.

        The lock lives only as long as someone holds a reference to it.
        """

        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
