"""In-memory log of completed issuances.

Records live for the lifetime of the process only. Appends from concurrent
requests are serialized with an asyncio lock; readers get a copy.
"""

import asyncio

from kubecsr.api.models.issue import RequestRecord
from kubecsr.logging_config import get_logger

logger = get_logger(__name__)


class RequestLog:
    """Append-only list of RequestRecords."""

    def __init__(self) -> None:
        self._records: list[RequestRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: RequestRecord) -> None:
        async with self._lock:
            self._records.append(record)
            count = len(self._records)
        logger.info(
            "Recorded issuance",
            user=record.certificate_request.user,
            csr_name=record.csr_name,
            requester_ip=record.requester_ip,
            total=count,
        )

    async def snapshot(self) -> list[RequestRecord]:
        """Return the records in insertion order."""
        async with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        return len(self._records)
