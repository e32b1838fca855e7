import asyncio
import logging
import signal

from dotenv import load_dotenv

from relay.config import ConfigError, Settings
from relay.generation import GenerationDriver
from relay.session import Relay
from transports.discord_bot import run_discord_bot
from transports.telegram_bot import TelegramTransport

log = logging.getLogger("julian")


async def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s :: %(message)s")

    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        raise SystemExit(f"❌ {exc}")

    relay = Relay(settings, driver=GenerationDriver.from_settings(settings))

    telegram_transport = None
    if settings.telegram_token:
        telegram_transport = TelegramTransport(relay, settings.telegram_token)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    discord_task = asyncio.create_task(
        run_discord_bot(relay, settings.discord_token, settings.guild_id, settings.nickname)
    )
    discord_task.add_done_callback(lambda _: stop_event.set())
    telegram_task = None
    if telegram_transport:
        telegram_task = asyncio.create_task(telegram_transport.start())

    await stop_event.wait()
    log.info("shutting down")

    if telegram_transport:
        await telegram_transport.stop()

    discord_task.cancel()
    try:
        await discord_task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        log.exception("Discord gateway stopped: %s", exc)

    if telegram_task:
        await telegram_task
    await relay.close()


if __name__ == "__main__":
    asyncio.run(main())
