"""Backend contract and selection types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import NamedTuple, Optional, Union

from loguru import logger


class BackendKind(Enum):
    """The four interchangeable backend variants.

    Each member carries its settings value, UI index, history label and the
    name shown in the status line.
    """

    LOCAL = ("Local", 0, "Llama", "Local")
    CLOUD = ("Gemini", 1, "Gemini", "Cloud (Google Gemini)")
    REMOTE = ("Remote", 2, "Remote", "Networked llama-server")
    RELAY = ("Relay", 3, "Relay", "Networked VisionGrabber Server")

    def __init__(self, setting_value: str, ui_index: int, label: str, display_name: str):
        self.setting_value = setting_value
        self.ui_index = ui_index
        self.label = label
        self.display_name = display_name

    @classmethod
    def from_setting(cls, value: Optional[str]) -> "BackendKind":
        """Resolve a settings value; anything unrecognized means the cloud backend."""
        if value:
            normalized = value.strip().lower()
            for kind in cls:
                if kind.setting_value.lower() == normalized or kind.name.lower() == normalized:
                    return kind
        return cls.CLOUD

    @classmethod
    def from_index(cls, index: int) -> "BackendKind":
        """Resolve a UI index; indices past the known ones select the relay client."""
        for kind in (cls.LOCAL, cls.CLOUD, cls.REMOTE):
            if kind.ui_index == index:
                return kind
        return cls.RELAY


BackendSelector = Union[BackendKind, str, int, None]


class BaseBackend(ABC):
    """Turns a base64-encoded image plus an instruction into text.

    Implementations raise ``BackendFailure`` subclasses on every failure and
    never retry on their own.
    """

    kind: BackendKind

    def __init__(self):
        self.logger = logger.bind(backend=self.kind.label)

    @abstractmethod
    async def process(self, image: str, instruction: str) -> str:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class BackendSelection(NamedTuple):
    kind: BackendKind
    label: str
    backend: BaseBackend

    @classmethod
    def of(cls, backend: BaseBackend) -> "BackendSelection":
        return cls(backend.kind, backend.kind.label, backend)
