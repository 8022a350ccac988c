"""SQLAlchemy models: re-export all."""

from models.conversation import (  # noqa: F401
    Conversation,
    ConversationMessage,
    ConversationSummary,
)
from models.summary_run import SummaryRun, SummaryRunStep  # noqa: F401
