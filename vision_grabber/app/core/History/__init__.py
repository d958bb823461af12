from .history_manager import HistoryItem, HistoryManager

__all__ = ["HistoryItem", "HistoryManager"]
