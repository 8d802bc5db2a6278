"""Activity journal persistence."""

from .journal import ActivityJournal, JournalUnavailableError, stream_id_for
from .models import JournalEvent, ReplayedRecord

__all__ = [
    "ActivityJournal",
    "JournalEvent",
    "JournalUnavailableError",
    "ReplayedRecord",
    "stream_id_for",
]
