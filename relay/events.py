from dataclasses import dataclass


@dataclass
class MessageEvent:
    conversation_id: str
    author_id: str
    text: str
    author_name: str = ""
    is_bot: bool = False


@dataclass
class CommandEvent:
    conversation_id: str
    author_id: str
    prompt: str = ""
    author_name: str = ""
    ephemeral: bool = False
