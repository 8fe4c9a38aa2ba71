from __future__ import annotations

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Protocol

from as_built.config import STATUS_TRANSITIONS, LlmProvider, LlmTier, ScanStatus
from as_built.exceptions import InvalidStatusTransitionError, ScanNotFoundError
from as_built.logging import logger
from as_built.models import ScanOutputPayload, ScanRecord, utc_now

_SAFE_SCAN_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ScanStore(Protocol):
    """Persistence collaborator of the scan orchestrator."""

    async def create_pending(
        self,
        scan_id: str,
        *,
        project_name: str = "",
        provider: LlmProvider | None = None,
        tier: LlmTier | None = None,
    ) -> ScanRecord: ...

    async def append_progress(self, scan_id: str, line: str) -> None: ...

    async def update_status(
        self,
        scan_id: str,
        status: ScanStatus,
        error_message: str | None = None,
    ) -> None: ...

    async def save_outputs(self, scan_id: str, payload: ScanOutputPayload, status: ScanStatus) -> None: ...

    async def get(self, scan_id: str) -> ScanRecord: ...


def check_transition(record: ScanRecord, requested: ScanStatus) -> None:
    """Reject any move the scan state machine does not allow.

    Raises:
        InvalidStatusTransitionError: if ``requested`` is unreachable from the current status
    """
    if requested not in STATUS_TRANSITIONS[record.status]:
        raise InvalidStatusTransitionError(
            scan_id=record.scan_id,
            current=str(record.status),
            requested=str(requested),
            message=f"Scan {record.scan_id} cannot move from {record.status} to {requested}.",
        )


class BaseScanStore(ABC):
    """State-machine rules shared by every store; subclasses provide load and save."""

    @abstractmethod
    async def _load(self, scan_id: str) -> ScanRecord: ...

    @abstractmethod
    async def _save(self, record: ScanRecord) -> None: ...

    @abstractmethod
    async def _exists(self, scan_id: str) -> bool: ...

    async def create_pending(
        self,
        scan_id: str,
        *,
        project_name: str = "",
        provider: LlmProvider | None = None,
        tier: LlmTier | None = None,
    ) -> ScanRecord:
        """Create a new record in ``pending``.

        Raises:
            ValueError: if a record with this id already exists
        """
        if await self._exists(scan_id):
            msg = f"Scan {scan_id} already exists"
            raise ValueError(msg)
        record = ScanRecord(scan_id=scan_id, project_name=project_name, provider=provider, tier=tier)
        await self._save(record)
        logger.info("Scan created", scan_id=scan_id, status=str(record.status))
        return record.model_copy(deep=True)

    async def get(self, scan_id: str) -> ScanRecord:
        """Return a copy of the record; mutating it does not affect the store."""
        return (await self._load(scan_id)).model_copy(deep=True)

    async def append_progress(self, scan_id: str, line: str) -> None:
        """Append one line to the progress log of a non-terminal scan.

        Raises:
            InvalidStatusTransitionError: if the scan is already terminal
        """
        record = await self._load(scan_id)
        if record.status.is_terminal:
            raise InvalidStatusTransitionError(
                scan_id=scan_id,
                current=str(record.status),
                requested="append_progress",
                message=f"Scan {scan_id} is {record.status}; its progress log is closed.",
            )
        record.progress_log.append(line)
        record.updated_at = utc_now()
        await self._save(record)

    async def update_status(
        self,
        scan_id: str,
        status: ScanStatus,
        error_message: str | None = None,
    ) -> None:
        """Move a scan to ``status``, recording ``error_message`` when given.

        Re-applying the current non-terminal status is a no-op.
        """
        record = await self._load(scan_id)
        if record.status == status and not status.is_terminal:
            return
        check_transition(record, status)
        now = utc_now()
        record.status = status
        record.updated_at = now
        if error_message is not None:
            record.error_message = error_message
        if status.is_terminal:
            record.completed_at = now
        await self._save(record)
        logger.info("Scan status changed", scan_id=scan_id, status=str(status))

    async def save_outputs(self, scan_id: str, payload: ScanOutputPayload, status: ScanStatus) -> None:
        """Write the final documents and move the scan to ``completed`` or ``partial``.

        Raises:
            ValueError: if ``status`` is not a success state
        """
        if status not in {ScanStatus.COMPLETED, ScanStatus.PARTIAL}:
            msg = f"Outputs can only be saved with a success status, got {status}"
            raise ValueError(msg)
        record = await self._load(scan_id)
        check_transition(record, status)
        now = utc_now()
        record.manifest_doc = payload.manifest_doc
        record.human_doc = payload.human_doc
        record.drift_doc = payload.drift_doc
        record.project_name = payload.project_name or record.project_name
        record.file_count = payload.file_count
        record.token_usage = payload.token_usage
        record.status = status
        record.updated_at = now
        record.completed_at = now
        await self._save(record)
        logger.info("Scan outputs saved", scan_id=scan_id, status=str(status), file_count=payload.file_count)


class InMemoryScanStore(BaseScanStore):
    """Process-local store, used by tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._records: dict[str, ScanRecord] = {}

    async def _exists(self, scan_id: str) -> bool:
        return scan_id in self._records

    async def _load(self, scan_id: str) -> ScanRecord:
        try:
            return self._records[scan_id].model_copy(deep=True)
        except KeyError:
            raise ScanNotFoundError(scan_id=scan_id, message=f"Scan {scan_id} not found.") from None

    async def _save(self, record: ScanRecord) -> None:
        self._records[record.scan_id] = record.model_copy(deep=True)


class JsonFileScanStore(BaseScanStore):
    """One JSON document per scan under a directory, replaced atomically on each write.

    File access runs in a worker thread so a slow disk never blocks the event loop.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, scan_id: str) -> Path:
        """Location of a scan's record.

        Raises:
            ValueError: if ``scan_id`` is not safe to use as a file name
        """
        if not _SAFE_SCAN_ID.match(scan_id):
            msg = f"Invalid scan id for a file store: {scan_id!r}"
            raise ValueError(msg)
        return self.directory / f"{scan_id}.json"

    async def _exists(self, scan_id: str) -> bool:
        return await asyncio.to_thread(self.path_for(scan_id).exists)

    async def _load(self, scan_id: str) -> ScanRecord:
        return await asyncio.to_thread(self.read_record, scan_id)

    async def _save(self, record: ScanRecord) -> None:
        await asyncio.to_thread(self.write_record, record)

    def read_record(self, scan_id: str) -> ScanRecord:
        """Read one record from disk.

        Raises:
            ScanNotFoundError: if no file exists for ``scan_id``
        """
        path = self.path_for(scan_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ScanNotFoundError(scan_id=scan_id, message=f"Scan {scan_id} not found.") from None
        return ScanRecord.model_validate_json(raw)

    def write_record(self, record: ScanRecord) -> None:
        """Write one record through a temporary file and an atomic rename."""
        path = self.path_for(record.scan_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{record.scan_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            Path(tmp_name).replace(path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
