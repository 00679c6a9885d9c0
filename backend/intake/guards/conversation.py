from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass

from intake.state.store import StateStore
from intake.utils.time_utils import now_ms

CONVERSATION_STATE_SCOPE = "ask-conversation-turns"
MAX_SESSION_KEY_LENGTH = 200


@dataclass
class ConversationTurn:
    question: str
    answer: str


class ConversationMemory:
    """Short, expiring question/answer history for follow-up questions."""

    def __init__(
        self,
        store: StateStore,
        *,
        ttl_ms: int = 2 * 60 * 60 * 1_000,
        max_turns: int = 6,
        max_entries: int = 2_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._ttl_ms = max(1, ttl_ms)
        self._max_turns = max(1, max_turns)
        self._max_entries = max(1, max_entries)
        self._clock = clock

    async def load_turns(self, session_key: str) -> list[ConversationTurn]:
        key = _normalize_session_key(session_key)
        if not key:
            return []
        raw = await self._store.load(CONVERSATION_STATE_SCOPE, key, self._clock())
        return _parse_turns(raw)

    async def remember_turn(self, session_key: str, question: str, answer: str) -> None:
        """Append a turn, keeping the most recent ``max_turns`` and refreshing the TTL."""

        key = _normalize_session_key(session_key)
        question = question.strip()
        answer = answer.strip()
        if not key or not question or not answer:
            return

        now = self._clock()
        turns = await self.load_turns(key)
        turns.append(ConversationTurn(question=question, answer=answer))
        turns = turns[-self._max_turns :]
        await self._store.save(
            CONVERSATION_STATE_SCOPE,
            key,
            [asdict(turn) for turn in turns],
            expires_at=now + self._ttl_ms,
            max_entries=self._max_entries,
        )


def _normalize_session_key(raw: str) -> str:
    return raw.strip()[:MAX_SESSION_KEY_LENGTH]


def _parse_turns(raw: object) -> list[ConversationTurn]:
    if not isinstance(raw, list):
        return []
    turns: list[ConversationTurn] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        question = item.get("question")
        answer = item.get("answer")
        if isinstance(question, str) and isinstance(answer, str):
            turns.append(ConversationTurn(question=question, answer=answer))
    return turns
