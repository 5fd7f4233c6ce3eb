"""Group an account's messages into conversations by provider thread id."""

import logging
from typing import Iterable, Iterator, Optional

from pydantic import BaseModel

from .models import RawMessage

logger = logging.getLogger(__name__)


class Conversation(BaseModel):
    """Messages sharing one thread, oldest first."""

    account_id: str
    thread_id: Optional[str] = None
    messages: list[RawMessage]

    @property
    def original_subject(self) -> str:
        return self.messages[0].subject if self.messages else ""

    @property
    def started_at(self):
        return self.messages[0].received_at


def _sort_key(message: RawMessage):
    return (message.received_at, message.provider_message_id)


def group_conversations(messages: Iterable[RawMessage]) -> list[Conversation]:
    """Cluster messages by (account, thread). Messages without a thread id stand alone.

    Conversations come back ordered by their first message.
    """
    grouped: dict[tuple[str, str], list[RawMessage]] = {}
    conversations: list[Conversation] = []

    for message in messages:
        if not message.thread_id:
            conversations.append(Conversation(account_id=message.account_id, messages=[message]))
            continue
        grouped.setdefault((message.account_id, message.thread_id), []).append(message)

    for (account_id, thread_id), members in grouped.items():
        members.sort(key=_sort_key)
        conversations.append(Conversation(account_id=account_id, thread_id=thread_id, messages=members))

    conversations.sort(key=lambda c: _sort_key(c.messages[0]))
    logger.debug(f"Grouped messages into {len(conversations)} conversations")
    return conversations


def thread_context(conversation: Conversation, message: RawMessage) -> str:
    """Prompt prefix telling the classifier where a message sits in its thread."""
    if len(conversation.messages) < 2:
        return ""
    position = next(
        i for i, m in enumerate(conversation.messages, 1)
        if m.provider_message_id == message.provider_message_id
    )
    prefix = f"[This is email {position} of {len(conversation.messages)} in thread]"
    if position > 1:
        prefix += f" [Original subject: {conversation.original_subject}]"
    return prefix + "\n\n"


def iter_in_order(conversations: Iterable[Conversation]) -> Iterator[tuple[Conversation, RawMessage]]:
    """Yield every message oldest first, paired with its conversation."""
    pairs = [(c, m) for c in conversations for m in c.messages]
    pairs.sort(key=lambda pair: _sort_key(pair[1]))
    yield from pairs
