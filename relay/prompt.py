import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml

from .history import USER, Turn

log = logging.getLogger(__name__)

DEFAULT_PERSONA_PATH = Path(__file__).with_name("persona_config.yaml")
PERSONA_SECTIONS = ("identity", "tone", "address", "search")
FALLBACK_SPEAKER = "User"


def format_turn(turn: Turn) -> str:
    label = "User" if turn.role == USER else "Assistant"
    return f"{label}: {turn.text}"


def build_prompt(persona: str, turns: Sequence[Turn], new_input: str, speaker: str) -> str:
    history = "\n".join(format_turn(turn) for turn in turns)
    nick = speaker or FALLBACK_SPEAKER
    return (
        f"{persona}\n\n"
        f"Current speaker (nickname): {nick}\n\n"
        f"Conversation so far:\n{history}\n\n"
        f"User: {new_input}\nAssistant:"
    )


class PersonaConfig:
    """Persona directive read from YAML, reloaded when the files change."""

    def __init__(self, *, default_path: Path = DEFAULT_PERSONA_PATH, override_path: Optional[Path] = None) -> None:
        self.default_path = Path(default_path)
        self.override_path = Path(override_path) if override_path else None
        self._cached_prompt = ""
        self._default_mtime: Optional[float] = None
        self._override_mtime: Optional[float] = None
        self._load()

    def _read_config(self, path: Optional[Path]) -> Dict[str, List[str]]:
        if path is None or not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            log.warning("failed to read persona config %s: %s", path, exc)
            return {}
        sections: Dict[str, List[str]] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                slug = str(key).strip().lower()
                if isinstance(value, (list, tuple)):
                    lines = [str(item).strip() for item in value if str(item or "").strip()]
                elif isinstance(value, str):
                    lines = [value.strip()] if value.strip() else []
                else:
                    lines = []
                if lines:
                    sections[slug] = lines
        return sections

    def _compose_prompt(self, data: Dict[str, List[str]]) -> str:
        segments: List[str] = []
        for key in PERSONA_SECTIONS:
            segments.extend(data.get(key, []))
        return "\n".join(segment for segment in segments if segment)

    def _load(self) -> None:
        merged = dict(self._read_config(self.default_path))
        for key, lines in self._read_config(self.override_path).items():
            merged[key] = lines
        prompt = self._compose_prompt(merged)
        if prompt and prompt != self._cached_prompt:
            if self._cached_prompt:
                log.info("persona updated: %s", prompt[:200])
            self._cached_prompt = prompt

    @staticmethod
    def _mtime(path: Optional[Path]) -> Optional[float]:
        if path is None:
            return None
        try:
            return path.stat().st_mtime
        except OSError:
            return None

    def get_prompt(self) -> str:
        default_mtime = self._mtime(self.default_path)
        override_mtime = self._mtime(self.override_path)
        if default_mtime != self._default_mtime or override_mtime != self._override_mtime:
            self._default_mtime = default_mtime
            self._override_mtime = override_mtime
            self._load()
        return self._cached_prompt
