"""Database-level enumerations for diagnosis sessions."""

import enum


class SessionStatus(str, enum.Enum):
    """Lifecycle states for a chain-diagnosis session.

    Transitions:
        in_progress -> completed  (summarizer finished, current_step == 8)
        in_progress -> error      (a stage's upstream call failed)
        error -> in_progress      (the failed stage is retried successfully)
    """

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class ChatRole(str, enum.Enum):
    """Author of a follow-up chat message attached to a session."""

    USER = "user"
    ASSISTANT = "assistant"
