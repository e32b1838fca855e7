import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from .history import SCOPE_CHANNEL, SCOPE_USER
from .router import DEFAULT_PREFIXES

log = logging.getLogger(__name__)

REASONING_LEVELS = ("minimal", "low", "medium", "high")
VERBOSITY_LEVELS = ("low", "medium", "high")
TRUTHY = {"1", "true", "t", "on", "yes", "y"}


class ConfigError(Exception):
    """Missing or malformed startup configuration."""


def _clean(raw: Optional[str]) -> str:
    # values copied from .env files often carry quotes or trailing comments
    return (raw or "").split("#", 1)[0].replace('"', "").replace("'", "").strip()


def flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = _clean(env.get(name))
    if not value:
        return default
    return value.lower() in TRUTHY


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _clean(env.get(name))
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        log.warning("%s=%r is not an integer, using %s", name, value, default)
        return default


def _choice(env: Mapping[str, str], name: str, choices: Tuple[str, ...], default: Optional[str]) -> Optional[str]:
    value = _clean(env.get(name)).lower()
    if not value:
        return default
    if value not in choices:
        log.warning("%s=%r is not one of %s, using %s", name, value, "|".join(choices), default)
        return default
    return value


def check_discord_token(token: Optional[str]) -> str:
    if not token:
        raise ConfigError("Missing DISCORD_TOKEN")
    token = token.strip()
    if "." not in token or len(token) < 50:
        raise ConfigError('DISCORD_TOKEN looks invalid (paste the raw bot token without quotes or "Bot ")')
    return token


@dataclass
class Settings:
    openai_api_key: str
    discord_token: Optional[str] = None
    telegram_token: Optional[str] = None
    model: str = "gpt-5"
    stream: bool = True
    web_search: bool = False
    reasoning: str = "low"
    verbosity: Optional[str] = None
    max_turns: int = 12
    max_sessions: int = 1000
    prefixes: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_PREFIXES)
    session_scope: str = SCOPE_USER
    command_edit_interval: float = 0.6
    message_edit_interval: float = 0.9
    nickname: Optional[str] = "Julian"
    guild_id: Optional[int] = None
    persona_path: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        openai_key = _clean(env.get("OPENAI_API_KEY"))
        if not openai_key:
            raise ConfigError("Missing OPENAI_API_KEY")
        discord_token = check_discord_token(env.get("DISCORD_TOKEN"))
        prefixes = tuple(
            part.strip().lower() for part in _clean(env.get("TRIGGER_PREFIXES")).split(",") if part.strip()
        )
        guild_raw = _clean(env.get("DISCORD_GUILD_ID"))
        nickname_raw = env.get("BOT_NICKNAME")
        return cls(
            openai_api_key=openai_key,
            discord_token=discord_token,
            telegram_token=_clean(env.get("TELEGRAM_TOKEN")) or None,
            model=_clean(env.get("OPENAI_MODEL")) or "gpt-5",
            stream=flag(env, "OPENAI_STREAM", True),
            web_search=flag(env, "OPENAI_WEB_SEARCH"),
            reasoning=_choice(env, "OPENAI_REASONING", REASONING_LEVELS, "low") or "low",
            verbosity=_choice(env, "OPENAI_VERBOSITY", VERBOSITY_LEVELS, None),
            max_turns=max(1, _int(env, "OPENAI_MEMORY_TURNS", 12)),
            max_sessions=max(1, _int(env, "MAX_SESSIONS", 1000)),
            prefixes=prefixes or DEFAULT_PREFIXES,
            session_scope=_choice(env, "SESSION_SCOPE", (SCOPE_USER, SCOPE_CHANNEL), SCOPE_USER) or SCOPE_USER,
            command_edit_interval=_int(env, "COMMAND_EDIT_INTERVAL_MS", 600) / 1000,
            message_edit_interval=_int(env, "MESSAGE_EDIT_INTERVAL_MS", 900) / 1000,
            nickname="Julian" if nickname_raw is None else (_clean(nickname_raw) or None),
            guild_id=int(guild_raw) if guild_raw.isdigit() else None,
            persona_path=_clean(env.get("PERSONA_PATH")) or None,
        )

    def summary(self) -> str:
        return (
            f"[cfg] model={self.model} stream={self.stream} web_search={self.web_search} "
            f"reasoning={self.reasoning} verbosity={self.verbosity or '(off)'} "
            f"turns={self.max_turns} scope={self.session_scope} prefixes={','.join(self.prefixes)}"
        )
