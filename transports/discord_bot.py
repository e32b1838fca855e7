import logging
from typing import Any, Optional

import discord
from discord import app_commands
from discord.ext import commands

from relay.delivery import Outbox
from relay.events import CommandEvent, MessageEvent
from relay.router import mention_pattern

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000


class InteractionOutbox(Outbox):
    """Replies to a slash command through its (usually deferred) response."""

    limit = DISCORD_LIMIT

    def __init__(self, interaction: discord.Interaction, *, ephemeral: bool = False) -> None:
        self.interaction = interaction
        self.ephemeral = ephemeral

    async def send_reply(self, text: str) -> Any:
        if self.interaction.response.is_done():
            await self.interaction.edit_original_response(content=text)
        else:
            await self.interaction.response.send_message(text, ephemeral=self.ephemeral)
        return self.interaction

    async def edit_message(self, handle: Any, text: str) -> None:
        await self.interaction.edit_original_response(content=text)

    async def send_follow_up(self, text: str) -> None:
        await self.interaction.followup.send(text, ephemeral=self.ephemeral)


class MessageOutbox(Outbox):
    """Answers a channel message with a reply that is edited in place."""

    limit = DISCORD_LIMIT

    def __init__(self, message: discord.Message) -> None:
        self.message = message

    async def send_reply(self, text: str) -> discord.Message:
        return await self.message.reply(text)

    async def edit_message(self, handle: discord.Message, text: str) -> None:
        await handle.edit(content=text)

    async def send_follow_up(self, text: str) -> None:
        await self.message.channel.send(text)

    async def send_typing(self) -> None:
        await self.message.channel.typing()


def display_name(user: Any) -> str:
    for attr in ("nick", "display_name", "global_name", "name"):
        value = getattr(user, attr, None)
        if value:
            return str(value)
    return ""


class DiscordTransport(commands.Bot):
    def __init__(self, relay, *, guild_id: Optional[int] = None, nickname: Optional[str] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.relay = relay
        self.guild_id = guild_id
        self.nickname = nickname

    async def setup_hook(self) -> None:
        self.tree.add_command(self._gpt())
        self.tree.add_command(self._gpt_reset())

    def _gpt(self) -> app_commands.Command:
        @app_commands.command(name="gpt", description="Talk to Julian")
        @app_commands.describe(
            prompt="Your message",
            ephemeral="Show the answer only to you",
        )
        async def gpt(interaction: discord.Interaction, prompt: str, ephemeral: Optional[bool] = None):
            hidden = bool(ephemeral)
            await interaction.response.defer(ephemeral=hidden)
            event = CommandEvent(
                conversation_id=str(interaction.channel_id),
                author_id=str(interaction.user.id),
                prompt=prompt,
                author_name=display_name(interaction.user),
                ephemeral=hidden,
            )
            await self.relay.handle_command(event, InteractionOutbox(interaction, ephemeral=hidden))

        return gpt

    def _gpt_reset(self) -> app_commands.Command:
        @app_commands.command(name="gpt-reset", description="Clear your context in this channel")
        async def gpt_reset(interaction: discord.Interaction):
            event = CommandEvent(
                conversation_id=str(interaction.channel_id),
                author_id=str(interaction.user.id),
                author_name=display_name(interaction.user),
                ephemeral=True,
            )
            await self.relay.reset(event, InteractionOutbox(interaction, ephemeral=True))

        return gpt_reset

    async def _prepare_guild(self, guild: discord.Guild) -> None:
        try:
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            log.info("commands registered in %s (%s)", guild.name, guild.id)
        except discord.DiscordException as exc:
            log.error("command registration failed in %s (%s): %s", guild.name, guild.id, exc)
        if not self.nickname:
            return
        try:
            await guild.me.edit(nick=self.nickname)
            log.info('set nickname "%s" in %s (%s)', self.nickname, guild.name, guild.id)
        except discord.DiscordException as exc:
            log.warning("could not set nickname in %s (%s): %s", guild.name, guild.id, exc)

    async def on_ready(self):
        log.info("Discord bot ready as %s", self.user)
        log.info(self.relay.settings.summary())
        for guild in self.guilds:
            if self.guild_id and guild.id != self.guild_id:
                continue
            await self._prepare_guild(guild)

    async def on_guild_join(self, guild: discord.Guild):
        if self.guild_id and guild.id != self.guild_id:
            return
        log.info("joined %s (%s)", guild.name, guild.id)
        await self._prepare_guild(guild)

    async def on_message(self, message: discord.Message):
        if not message or not message.content or not self.user:
            return
        event = MessageEvent(
            conversation_id=str(message.channel.id),
            author_id=str(message.author.id),
            text=message.content,
            author_name=display_name(message.author),
            is_bot=message.author.bot,
        )
        await self.relay.handle_message(event, MessageOutbox(message), mention_pattern(self.user.id))


async def run_discord_bot(relay, token: str, guild_id: Optional[int] = None, nickname: Optional[str] = None):
    bot = DiscordTransport(relay, guild_id=guild_id, nickname=nickname)
    try:
        await bot.start(token)
    finally:
        await bot.close()
