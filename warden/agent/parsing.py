import json
import re
from dataclasses import dataclass
from enum import StrEnum

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

_META_PATTERNS = (
    re.compile(r"^You should (?:type|say|respond|enter|input):\s*[\"']?(.+?)[\"']?$", re.IGNORECASE | re.DOTALL),
    re.compile(r"^(?:Type|Say|Respond|Enter|Send):\s*[\"']?(.+?)[\"']?$", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Run(?: this)?(?: command| script)?:\s*[\"']?(.+?)[\"']?$", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Suggest(?:ion)?:\s*[\"']?(.+?)[\"']?$", re.IGNORECASE | re.DOTALL),
)

_decoder = json.JSONDecoder()


class Action(StrEnum):
    WAIT = "wait"
    SEND = "send"
    DONE = "done"


@dataclass(frozen=True)
class Decision:
    action: Action
    text: str = ""

    @property
    def token(self) -> str:
        """Uppercase control token: WAIT, DONE, ENTER, TASK, Y, N or the literal text."""
        match self.action:
            case Action.WAIT:
                return "WAIT"
            case Action.DONE:
                return "DONE"
        text = self.text.strip()
        if not text:
            return "ENTER"
        upper = text.upper()
        if upper.startswith("WAIT") or "I'LL WAIT" in upper:
            return "WAIT"
        return upper


def unwrap_meta(text: str) -> str:
    """Turn "You should type: X" style narration into X.

    Only an explicit label followed by a colon counts; instructions that merely
    start with "Run" or "Suggest" are left alone.
    """
    text = text.strip()
    for pattern in _META_PATTERNS:
        if m := pattern.match(text):
            return m.group(1).strip()
    return text


def _first_decision_object(raw: str) -> dict | None:
    for match in re.finditer(r"[\[{]", raw):
        try:
            value, _ = _decoder.raw_decode(raw, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict) and "action" in value:
            return value
    return None


def parse_decision(raw: str | None) -> Decision | None:
    """Extract ``{"action": ..., "text": ...}`` from a model reply.

    The first well-formed object (or array of objects) anywhere in the reply
    wins, so prose or code fences around it are fine. Returns ``None`` when
    nothing usable is found.
    """
    if not raw:
        return None
    obj = _first_decision_object(_FENCE_RE.sub("", raw))
    if obj is None:
        return None

    try:
        action = Action(str(obj["action"]).strip().lower())
    except ValueError:
        return None

    text = obj.get("text")
    text = "" if text is None else str(text)
    if action == Action.SEND:
        text = unwrap_meta(text)
    return Decision(action=action, text=text)
