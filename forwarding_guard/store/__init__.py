from .csv_store import CsvForwardingStore, PersistenceRefused, StoreFormatError
from .journal import RunJournal

__all__ = [
    "CsvForwardingStore",
    "PersistenceRefused",
    "StoreFormatError",
    "RunJournal",
]
