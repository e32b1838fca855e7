import asyncio
from types import SimpleNamespace

import openai

from helpers import FakeClient, FakeOutbox, FakeResponses, completed, delta
from relay.config import Settings
from relay.delivery import PENDING_TEXT
from relay.events import CommandEvent, MessageEvent
from relay.generation import GenerationDriver
from relay.history import ASSISTANT, USER, Turn
from relay.router import mention_pattern
from relay.session import RESET_DONE, Relay


def make_relay(stream=True, **client_kwargs):
    settings = Settings(openai_api_key="sk-test", stream=stream, command_edit_interval=0.0, message_edit_interval=0.0)
    client = FakeClient(**client_kwargs)
    return Relay(settings, driver=GenerationDriver(client)), client


def message(text, author="u1", channel="c1", is_bot=False):
    return MessageEvent(conversation_id=channel, author_id=author, text=text, author_name="Ricky", is_bot=is_bot)


def test_free_text_turn_end_to_end():
    relay, client = make_relay(events=[delta("It is "), delta("late."), completed()])
    outbox = FakeOutbox()

    asyncio.run(relay.handle_message(message("julian: what time is it"), outbox))

    key = relay.key_for("c1", "u1")
    assert relay.history.get(key) == [Turn(USER, "what time is it"), Turn(ASSISTANT, "It is late.")]
    assert len(client.responses.calls) == 1
    prompt = client.responses.calls[0]["input"]
    assert prompt.count("User: what time is it") == 2
    assert "Current speaker (nickname): Ricky" in prompt
    assert outbox.ops[0] == ("typing", None)
    assert outbox.ops[1] == ("reply", PENDING_TEXT)
    assert outbox.visible == "It is late."


def test_mention_trigger_uses_bot_id():
    relay, client = make_relay(events=[delta("fine"), completed()])
    outbox = FakeOutbox()
    asyncio.run(relay.handle_message(message("<@99> how are you"), outbox, mention_pattern(99)))
    assert relay.history.get(relay.key_for("c1", "u1"))[0] == Turn(USER, "how are you")


def test_unaddressed_message_is_ignored():
    relay, client = make_relay()
    outbox = FakeOutbox()
    asyncio.run(relay.handle_message(message("hi gpt"), outbox))
    assert outbox.ops == []
    assert client.responses.calls == []
    assert len(relay.history) == 0


def test_bot_authors_are_ignored():
    relay, client = make_relay()
    outbox = FakeOutbox()
    asyncio.run(relay.handle_message(message("gpt hello", is_bot=True), outbox))
    assert outbox.ops == []
    assert client.responses.calls == []


def test_bare_prefix_sends_usage_hint_only():
    relay, client = make_relay()
    outbox = FakeOutbox()
    asyncio.run(relay.handle_message(message("gpt"), outbox))
    assert len(outbox.ops) == 1
    op, text = outbox.ops[0]
    assert op == "reply"
    assert "gpt/julian" in text
    assert client.responses.calls == []
    assert len(relay.history) == 0


def test_command_bypasses_routing():
    relay, client = make_relay(events=[delta("sure"), completed()])
    outbox = FakeOutbox()
    event = CommandEvent(conversation_id="c1", author_id="u1", prompt="hi gpt", author_name="Ricky")
    asyncio.run(relay.handle_command(event, outbox))
    assert [turn.text for turn in relay.history.get(relay.key_for("c1", "u1"))] == ["hi gpt", "sure"]


def test_single_shot_mode_chunks_reply():
    relay, client = make_relay(stream=False, result=SimpleNamespace(output_text="abcdefgh"))
    outbox = FakeOutbox(limit=3)
    asyncio.run(relay.handle_message(message("gpt go"), outbox))
    assert outbox.kinds("reply") == ["abc"]
    assert outbox.kinds("follow_up") == ["def", "gh"]
    assert "stream" not in client.responses.calls[0]
    assert relay.history.get(relay.key_for("c1", "u1"))[-1] == Turn(ASSISTANT, "abcdefgh")


def test_generation_failure_keeps_only_user_turn():
    relay, _ = make_relay(events=[delta("par"), openai.OpenAIError("upstream down")])
    outbox = FakeOutbox()
    asyncio.run(relay.handle_message(message("gpt hello"), outbox))
    assert relay.history.get(relay.key_for("c1", "u1")) == [Turn(USER, "hello")]
    assert outbox.visible == "❌ Error: upstream down"


def test_failed_turn_is_part_of_next_prompt():
    relay, client = make_relay(error=openai.OpenAIError("nope"))
    asyncio.run(relay.handle_message(message("gpt first"), FakeOutbox()))
    client.responses.error = None
    client.responses.events = [delta("ok"), completed()]
    asyncio.run(relay.handle_message(message("gpt second"), FakeOutbox()))
    prompt = client.responses.calls[1]["input"]
    assert "User: first\nUser: second" in prompt
    assert [turn.text for turn in relay.history.get(relay.key_for("c1", "u1"))] == ["first", "second", "ok"]


def test_delivery_failure_is_swallowed():
    relay, _ = make_relay(events=[delta("x"), completed()])
    outbox = FakeOutbox(fail=True)
    asyncio.run(relay.handle_message(message("gpt hello"), outbox))
    assert relay.history.get(relay.key_for("c1", "u1")) == [Turn(USER, "hello")]


def test_reset_clears_only_that_session():
    relay, client = make_relay()
    mine, other = relay.key_for("c1", "u1"), relay.key_for("c1", "u2")
    relay.history.append(mine, USER, "a")
    relay.history.append(other, USER, "b")
    outbox = FakeOutbox()
    asyncio.run(relay.reset(CommandEvent(conversation_id="c1", author_id="u1"), outbox))
    assert relay.history.get(mine) == []
    assert relay.history.get(other) == [Turn(USER, "b")]
    assert outbox.ops == [("reply", RESET_DONE)]
    assert client.responses.calls == []


def test_channel_scope_shares_history():
    settings = Settings(openai_api_key="sk-test", session_scope="channel")
    relay = Relay(settings, driver=GenerationDriver(FakeClient()))
    assert relay.key_for("c1", "u1") == relay.key_for("c1", "u2")


class SlowResponses(FakeResponses):
    async def create(self, **params):
        self.calls.append(params)
        await asyncio.sleep(0.01)
        return SimpleNamespace(output_text=f"answer {len(self.calls)}")


def test_same_session_turns_are_serialized():
    relay, client = make_relay(stream=False)
    client.responses = SlowResponses()

    async def scenario():
        await asyncio.gather(
            relay.handle_message(message("gpt one"), FakeOutbox()),
            relay.handle_message(message("gpt two"), FakeOutbox()),
        )

    asyncio.run(scenario())
    texts = [turn.text for turn in relay.history.get(relay.key_for("c1", "u1"))]
    assert texts == ["one", "answer 1", "two", "answer 2"]
    assert "Assistant: answer 1" in client.responses.calls[1]["input"]


class GatedResponses(FakeResponses):
    def __init__(self, answer):
        super().__init__()
        self.answer = answer
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def create(self, **params):
        self.calls.append(params)
        self.started.set()
        await self.release.wait()
        return SimpleNamespace(output_text=self.answer)


def test_reset_during_running_turn_leaves_session_empty():
    relay, client = make_relay(stream=False)

    async def scenario():
        client.responses = GatedResponses("old answer")
        turn = asyncio.create_task(relay.handle_message(message("gpt hello"), FakeOutbox()))
        await client.responses.started.wait()
        await relay.reset(CommandEvent(conversation_id="c1", author_id="u1"), FakeOutbox())
        client.responses.release.set()
        await turn

    asyncio.run(scenario())
    assert relay.history.get(relay.key_for("c1", "u1")) == []


def test_running_session_survives_session_cap():
    settings = Settings(openai_api_key="sk-test", stream=False, max_sessions=1)
    client = FakeClient()
    relay = Relay(settings, driver=GenerationDriver(client))
    busy, other = relay.key_for("c1", "u1"), relay.key_for("c2", "u2")

    async def scenario():
        client.responses = GatedResponses("old answer")
        turn = asyncio.create_task(relay.handle_message(message("gpt hello"), FakeOutbox()))
        await client.responses.started.wait()
        relay.history.append(other, USER, "elsewhere")
        client.responses.release.set()
        await turn

    asyncio.run(scenario())
    assert relay.history.get(busy) == [Turn(USER, "hello"), Turn(ASSISTANT, "old answer")]


def test_long_error_is_cut_to_message_limit():
    relay, _ = make_relay(error=openai.OpenAIError("x" * 2500))
    outbox = FakeOutbox(limit=2000)
    asyncio.run(relay.handle_message(message("gpt hello"), outbox))
    assert outbox.visible.startswith("❌ Error: xxx")
    assert len(outbox.visible) == 2000
