import difflib
import re
from collections import deque
from dataclasses import dataclass, field

RECENT_SUGGESTIONS = 5
SHORT_RESPONSE_LEN = 3
SEMANTIC_MIN_LEN = 5
WORD_OVERLAP_THRESHOLD = 0.7
EDIT_SIMILARITY_THRESHOLD = 0.85

_PUNCT_RE = re.compile(r"[^\w\s]")


def _words(text: str) -> set[str]:
    return {w for w in text.lower().split() if len(w) > 2}


def _normalize(text: str) -> str:
    return " ".join(_PUNCT_RE.sub(" ", text.lower()).split())


def is_semantic_duplicate(text: str, recent: list[str] | deque[str]) -> bool:
    if len(text) <= SEMANTIC_MIN_LEN:
        return False
    words = _words(text)
    normalized = _normalize(text)
    for previous in recent:
        prev_words = _words(previous)
        denom = max(len(words), len(prev_words))
        if denom and len(words & prev_words) / denom > WORD_OVERLAP_THRESHOLD:
            return True
        if difflib.SequenceMatcher(None, normalized, _normalize(previous)).ratio() >= EDIT_SIMILARITY_THRESHOLD:
            return True
    return False


@dataclass
class RepeatGuard:
    last_response: str = ""
    recent_suggestions: deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_SUGGESTIONS))
    consecutive_waits: int = 0
    waiting_since: float | None = None
    decision_count: int = 0
    # Consecutive cycles where the engine produced nothing (gateway down, retries exhausted)
    failures: int = 0

    def is_repeat(self, text: str) -> bool:
        return len(text) > SHORT_RESPONSE_LEN and text == self.last_response

    def is_similar(self, text: str) -> bool:
        return len(text) > SHORT_RESPONSE_LEN and is_semantic_duplicate(text, self.recent_suggestions)

    def accept(self, text: str) -> None:
        self.last_response = text
        self.recent_suggestions.append(text)

    def record_wait(self, now: float) -> int:
        self.consecutive_waits += 1
        if self.waiting_since is None:
            self.waiting_since = now
        return self.consecutive_waits

    def reset_waits(self) -> None:
        self.consecutive_waits = 0
        self.waiting_since = None

    def waited_for(self, now: float) -> float:
        return 0.0 if self.waiting_since is None else now - self.waiting_since
