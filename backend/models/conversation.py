"""Conversation data models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Role(str, Enum):
    """Author of a turn."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Turn:
    """Represents a single message in a conversation."""
    role: Role
    content: str
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.role = Role(self.role)
        if not self.content or not self.content.strip():
            raise ValueError("Turn content cannot be empty")

    def to_message(self) -> Dict[str, str]:
        """Role/content pair in chat-completion format."""
        return {"role": self.role.value, "content": self.content}


@dataclass
class Conversation:
    """Ordered history of turns for one chat."""
    chat_id: int
    turns: List[Turn] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    max_turns: Optional[int] = None  # None keeps every turn

    def append(self, turn: Turn) -> None:
        """
        Add a turn to the end of the history.

        Alternation of roles is not checked. With max_turns set, the oldest
        turns are dropped so that at most max_turns remain.
        """
        self.turns.append(turn)
        if self.max_turns and len(self.turns) > self.max_turns:
            del self.turns[:len(self.turns) - self.max_turns]

    def snapshot(self) -> List[Turn]:
        """Copy of the history in chronological order."""
        return list(self.turns)

    def to_messages(self) -> List[Dict[str, str]]:
        """Snapshot rendered as a chat-completion message array."""
        return [turn.to_message() for turn in self.snapshot()]
