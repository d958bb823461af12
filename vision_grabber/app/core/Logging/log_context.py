"""Per-request logging context for relay jobs.

Every record logged while a relay request is handled carries the request id
and the peer address, including records from the backend that runs the job.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional
import uuid

from loguru import logger


def new_request_id() -> str:
    """Short random id; unique enough to tell concurrent relay jobs apart in a log."""
    return uuid.uuid4().hex[:12]


@contextmanager
def relay_request_context(peer: str, request_id: Optional[str] = None) -> Iterator[Any]:
    """Tag logs emitted inside the block and yield a logger bound to the same tags."""
    tags = {"request_id": request_id or new_request_id(), "peer": peer}
    with logger.contextualize(**tags):
        yield logger.bind(**tags)
