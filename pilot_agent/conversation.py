"""Conversation history with a single system message and a reference-text block.

The history owns the ordered transcript sent on every turn. Two upserts keep
it consistent:

System prompt:
    ``set_system_prompt_if_changed()`` re-reads the prompt from the provider
    callable and replaces the system message only when the text changed (or
    when forced). There is never more than one system message.

Reference text:
    ``set_reference_text_if_changed()`` stores externally supplied context
    (a document, a regex, a web page) inside a fenced block under a header.
    When the text changes, the previous carrier message is handled according
    to ``ReferenceTextPolicy``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

REFERENCE_TEXT_CODEBLOCK_DELIM = "\n```\n"
DEFAULT_REFERENCE_TEXT_HEADER = "Reference Text"
DEFAULT_MAX_REFERENCE_TEXT_CHARS = 5000


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    DEVELOPER = "developer"
    TOOL = "tool"


class ReferenceTextPolicy(str, Enum):
    """What happens to the previous reference text when it changes."""

    # Reference text is never sent
    DISABLED = "disabled"
    # Old carrier becomes a short placeholder; the new text is appended
    CHANGE_OLD_TO_PLACEHOLDER = "change_old_to_placeholder"
    # Old carrier stays as-is; the new text is appended
    LEAVE_OLD_INPLACE = "leave_old_inplace"
    # Old carrier is rewritten with the new text; nothing is appended
    UPDATE_IN_PLACE = "update_in_place"
    # Old carrier is removed; the new text is appended
    DELETE_OLD = "delete_old"

    @classmethod
    def parse(cls, value) -> "ReferenceTextPolicy":
        """Accept enum values, snake_case or CamelCase names."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        key = "".join(ch for ch in text.lower() if ch.isalnum())
        for member in cls:
            if key == member.value.replace("_", ""):
                return member
        if key == "referencetextdisabled":
            return cls.DISABLED
        raise ValueError(f"Unknown reference text policy: {value!r}")


def default_placeholder_text(header: str) -> str:
    return (
        f"The old content for {header} was here but changed. "
        "It has been removed to shorten history new version found later."
    )


@dataclass
class ConversationOptions:
    reference_text_policy: ReferenceTextPolicy = ReferenceTextPolicy.CHANGE_OLD_TO_PLACEHOLDER
    reference_text_header: str = DEFAULT_REFERENCE_TEXT_HEADER
    placeholder_text: Optional[str] = None
    # Several providers reject developer/tool roles for this content
    reference_text_role: Role = Role.USER
    max_reference_text_chars: int = DEFAULT_MAX_REFERENCE_TEXT_CHARS

    def __post_init__(self) -> None:
        self.reference_text_policy = ReferenceTextPolicy.parse(self.reference_text_policy)
        self.reference_text_role = Role(self.reference_text_role)

    @property
    def reference_text_enabled(self) -> bool:
        return self.reference_text_policy is not ReferenceTextPolicy.DISABLED

    @property
    def placeholder(self) -> str:
        return self.placeholder_text or default_placeholder_text(self.reference_text_header)

    @property
    def reference_prefix(self) -> str:
        return f"{self.reference_text_header}:{REFERENCE_TEXT_CODEBLOCK_DELIM}"

    def format_reference_text(self, text: str) -> str:
        return f"{self.reference_prefix}{text}{REFERENCE_TEXT_CODEBLOCK_DELIM}\n"

    def truncate_reference_text(self, text: str) -> str:
        limit = self.max_reference_text_chars
        if limit and limit > 0 and len(text) > limit:
            return text[:limit]
        return text


@dataclass
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversationHistory:
    """Ordered transcript plus the reference-text replacement state machine.

    Args:
        options: Reference-text policy, header and storage role.
        system_prompt: Callable returning the current system prompt. It is
            re-read on every turn so prompt changes apply to the next request.
    """

    def __init__(
        self,
        options: Optional[ConversationOptions] = None,
        system_prompt: Optional[Callable[[], str]] = None,
    ):
        self.options = options or ConversationOptions()
        self._system_prompt = system_prompt or (lambda: "")
        self._messages: List[ChatMessage] = []
        self._last_prompt: Optional[str] = None
        self._last_reference_text = ""

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def to_dicts(self) -> List[Dict[str, str]]:
        return [message.to_dict() for message in self._messages]

    def system_message(self) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.role is Role.SYSTEM and not self._is_reference_carrier(message):
                return message
        return None

    def set_system_prompt_provider(self, system_prompt: Callable[[], str]) -> None:
        self._system_prompt = system_prompt

    def set_system_prompt_if_changed(self, force: bool = False) -> bool:
        """Replace the system message when the prompt text changed.

        Returns True when the transcript was modified.
        """
        prompt = self._system_prompt() or ""
        if prompt == self._last_prompt and not force:
            return False

        # reference carriers stored under the system role survive a prompt change
        self._messages = [
            m for m in self._messages
            if m.role is not Role.SYSTEM or self._is_reference_carrier(m)
        ]
        self._messages.insert(0, ChatMessage(Role.SYSTEM, prompt))
        self._last_prompt = prompt
        logger.debug("System prompt applied (%d chars)", len(prompt))
        return True

    def _is_reference_carrier(self, message: ChatMessage) -> bool:
        return (
            message.role is self.options.reference_text_role
            and message.content.startswith(self.options.reference_prefix)
        )

    def _find_reference_message(self) -> Optional[int]:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._is_reference_carrier(self._messages[index]):
                return index
        return None

    def set_reference_text_if_changed(self, text: str) -> bool:
        """Apply the configured policy when the reference text changed.

        Returns True when the transcript was modified.
        """
        policy = self.options.reference_text_policy
        if policy is ReferenceTextPolicy.DISABLED or text == self._last_reference_text:
            return False

        self._last_reference_text = text
        content = self.options.format_reference_text(text)
        index = self._find_reference_message()

        if index is not None:
            if policy is ReferenceTextPolicy.UPDATE_IN_PLACE:
                self._messages[index].content = content
                logger.debug("Reference text updated in place at index %d", index)
                return True
            if policy is ReferenceTextPolicy.CHANGE_OLD_TO_PLACEHOLDER:
                self._messages[index].content = self.options.placeholder
            elif policy is ReferenceTextPolicy.DELETE_OLD:
                del self._messages[index]

        self._messages.append(ChatMessage(self.options.reference_text_role, content))
        logger.debug("Reference text appended (%s, %d chars)", policy.value, len(text))
        return True

    def reference_text_messages(self) -> List[ChatMessage]:
        return [m for m in self._messages if self._is_reference_carrier(m)]

    def add_user_message(self, content: str) -> ChatMessage:
        message = ChatMessage(Role.USER, content)
        self._messages.append(message)
        return message

    def add_assistant_message(self, content: str) -> ChatMessage:
        message = ChatMessage(Role.ASSISTANT, content)
        self._messages.append(message)
        return message

    def clear(self) -> None:
        """Start a new conversation, keeping only a fresh system message."""
        self._messages = []
        self._last_reference_text = ""
        self.set_system_prompt_if_changed(force=True)

    def dump(self) -> str:
        lines = ["=== AI Chat History ==="]
        for message in self._messages:
            lines.append(f"[{message.role.value}] {message.content}")
        lines.append("=======================")
        return "\n".join(lines)
