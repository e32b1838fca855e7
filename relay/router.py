import re
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence

DEFAULT_PREFIXES = ("gpt", "julian")

# separators people type between the summons and the actual question
_LEADING_NOISE = re.compile(r"^[:\-–—,.\s]+")


@dataclass(frozen=True)
class Trigger:
    prompt: str
    marker: str

    @property
    def empty(self) -> bool:
        return not self.prompt


def mention_pattern(bot_id) -> Pattern[str]:
    """Discord style mention (``<@id>`` or the legacy ``<@!id>``) at the start of a message."""

    return re.compile(rf"^<@!?{re.escape(str(bot_id))}>")


def match_prefix(text: str, prefixes: Sequence[str]) -> Optional[str]:
    lowered = text.lower()
    for prefix in prefixes:
        if prefix and lowered.startswith(prefix.lower()):
            return text[: len(prefix)]
    return None


def route(
    text: str,
    prefixes: Sequence[str] = DEFAULT_PREFIXES,
    mention: Optional[Pattern[str]] = None,
) -> Optional[Trigger]:
    """Decide whether ``text`` addresses the bot and extract the prompt.

    A message is addressed when it starts with one of ``prefixes``
    (case-insensitive, first configured prefix wins) or with the bot's
    ``mention`` marker. Returns ``None`` for anything else. The returned
    trigger may carry an empty prompt when nothing follows the marker.
    """

    stripped = (text or "").strip()
    if not stripped:
        return None
    marker = match_prefix(stripped, prefixes)
    remainder = None
    if marker is not None:
        remainder = stripped[len(marker) :]
    elif mention is not None:
        found = mention.match(stripped)
        if found:
            marker = found.group(0)
            remainder = stripped[found.end() :]
    if marker is None or remainder is None:
        return None
    prompt = _LEADING_NOISE.sub("", remainder).strip()
    return Trigger(prompt=prompt, marker=marker)
