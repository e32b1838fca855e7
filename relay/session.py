import logging
from typing import Any, Optional, Pattern

from .config import Settings
from .delivery import PENDING_TEXT, DeliveryController, Outbox
from .events import CommandEvent, MessageEvent
from .generation import GenerationDriver
from .history import ASSISTANT, USER, SessionKey, TurnHistory, session_key
from .prompt import PersonaConfig, build_prompt
from .router import route

log = logging.getLogger(__name__)

USAGE_HINT = "Give me something to answer after the prefix ({prefixes}) or after the mention."
RESET_DONE = "🧹 Your context in this channel has been cleared."
ERROR_TEMPLATE = "❌ Error: {error}"


class Relay:
    """Runs one conversation turn from trigger to delivered answer."""

    def __init__(
        self,
        settings: Settings,
        *,
        driver: GenerationDriver,
        history: Optional[TurnHistory] = None,
        persona: Optional[PersonaConfig] = None,
    ) -> None:
        self.settings = settings
        self.driver = driver
        self.history = history or TurnHistory(settings.max_turns, settings.max_sessions)
        self.persona = persona or PersonaConfig(override_path=settings.persona_path)
        self.command_delivery = DeliveryController(settings.command_edit_interval)
        self.message_delivery = DeliveryController(settings.message_edit_interval)

    def key_for(self, conversation_id: str, user_id: str) -> SessionKey:
        return session_key(conversation_id, user_id, self.settings.session_scope)

    async def handle_command(self, event: CommandEvent, outbox: Outbox) -> None:
        key = self.key_for(event.conversation_id, event.author_id)
        await self._converse(key, event.prompt, event.author_name, outbox, self.command_delivery)

    async def handle_message(self, event: MessageEvent, outbox: Outbox, mention: Optional[Pattern[str]] = None) -> None:
        if event.is_bot:
            return
        trigger = route(event.text, self.settings.prefixes, mention)
        if trigger is None:
            return
        if trigger.empty:
            hint = USAGE_HINT.format(prefixes="/".join(self.settings.prefixes))
            await self._notify(outbox, None, hint)
            return
        try:
            await outbox.send_typing()
        except Exception as exc:
            log.debug("typing indicator failed: %s", exc)
        key = self.key_for(event.conversation_id, event.author_id)
        await self._converse(key, trigger.prompt, event.author_name, outbox, self.message_delivery)

    async def reset(self, event: CommandEvent, outbox: Outbox) -> None:
        key = self.key_for(event.conversation_id, event.author_id)
        self.history.clear(key)
        log.info("session %s reset", key)
        await self._notify(outbox, None, RESET_DONE)

    async def _converse(
        self,
        key: SessionKey,
        prompt_text: str,
        speaker: str,
        outbox: Outbox,
        delivery: DeliveryController,
    ) -> None:
        handle: Any = None
        async with self.history.lock(key):
            try:
                self.history.append(key, USER, prompt_text)
                serial = self.history.serial(key)
                prompt = build_prompt(
                    self.persona.get_prompt(),
                    self.history.get(key),
                    prompt_text,
                    speaker,
                )
                if self.settings.stream:
                    handle = await outbox.send_reply(PENDING_TEXT)
                    async with self.driver.stream(prompt) as stream:
                        answer = await delivery.stream(outbox, handle, stream)
                else:
                    answer = await self.driver.complete(prompt)
                    handle = await delivery.deliver(outbox, answer)
                self.history.append(key, ASSISTANT, answer, serial=serial)
            except Exception as exc:
                log.exception("conversation turn failed for %s: %s", key, exc)
                await self._notify(outbox, handle, ERROR_TEMPLATE.format(error=exc))

    async def _notify(self, outbox: Outbox, handle: Any, text: str) -> None:
        text = text[: outbox.limit]
        try:
            if handle is None:
                await outbox.send_reply(text)
            else:
                await outbox.edit_message(handle, text)
        except Exception as exc:
            log.warning("failed to deliver notice: %s", exc)

    async def close(self) -> None:
        await self.driver.close()
