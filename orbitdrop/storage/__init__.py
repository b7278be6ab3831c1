"""
Storage Module - Transfer History

Uses SQLite for the capped, append-only transfer history.
"""

from .history import HistoryStore, HistoryEntry, DEFAULT_HISTORY_LIMIT

__all__ = ['HistoryStore', 'HistoryEntry', 'DEFAULT_HISTORY_LIMIT']
