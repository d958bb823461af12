# history_manager.py
# Description: JSON-backed store of past processing results.
#
# Imports
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional
#
# 3rd-party Libraries
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
#
# Local Imports
from vision_grabber.app.core.config import get_app_dir
#
########################################################################################################################
#
# Constants:

HISTORY_FILE_NAME = "history.json"


class HistoryItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.now)
    prompt: str = ""
    content: str = ""
    model_name: str = ""


_ITEMS_ADAPTER = TypeAdapter(List[HistoryItem])


class HistoryManager:
    """Keeps results most-recent first and mirrors them to ``history.json``.

    Write failures are logged and never reach the caller; a capture result is
    worth more than its history record.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_app_dir() / HISTORY_FILE_NAME
        self.items: List[HistoryItem] = []

    def load(self) -> List[HistoryItem]:
        if not self.path.is_file():
            self.items = []
            return self.items
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            items = _ITEMS_ADAPTER.validate_python(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"History file {self.path} is unreadable, starting empty: {e}")
            items = []
        self.items = sorted(items, key=lambda item: item.timestamp, reverse=True)
        return self.items

    def save(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = _ITEMS_ADAPTER.dump_json(self.items, indent=2)
            self.path.write_bytes(payload)
        except OSError as e:
            logger.error(f"Failed to save history to {self.path}: {e}")
            return False
        return True

    def add_entry(self, content: str, prompt: str, model_name: str) -> HistoryItem:
        item = HistoryItem(prompt=prompt, content=content, model_name=model_name)
        self.items.insert(0, item)
        self.save()
        return item

    def get_entry(self, item_id: str) -> Optional[HistoryItem]:
        return next((item for item in self.items if item.id == item_id), None)

    def delete_entry(self, item_id: str) -> bool:
        """Remove an entry; returns False when no entry has that id."""
        item = self.get_entry(item_id)
        if item is None:
            return False
        self.items.remove(item)
        self.save()
        return True

    def update_entry(self, updated: HistoryItem) -> bool:
        for index, item in enumerate(self.items):
            if item.id == updated.id:
                self.items[index] = updated
                self.save()
                return True
        return False

    def clear(self) -> None:
        self.items = []
        self.save()

#
# End of history_manager.py
########################################################################################################################
