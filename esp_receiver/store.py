import logging
import threading
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .db import get_session
from .errors import StorageError
from .models import TelemetryRecord

log = logging.getLogger("store")

class RecordStore:
    """Telemetry records, one row per ingested report."""

    def __init__(self, engine) -> None:
        self.engine = engine
        self._lock = threading.Lock()

    def append(self, record: TelemetryRecord) -> TelemetryRecord:
        try:
            with self._lock, get_session(self.engine) as s:
                s.add(record)
                s.commit()
        except SQLAlchemyError as e:
            log.error("[Store] failed to save record %s: %s", record.id, e)
            raise StorageError(f"failed to save record {record.id}") from e
        log.info("[Store] saved %s record %s", record.source.value, record.id)
        return record

    def latest(self) -> TelemetryRecord | None:
        stmt = (
            select(TelemetryRecord)
            .order_by(TelemetryRecord.received_at.desc(), TelemetryRecord.id.desc())
            .limit(1)
        )
        with get_session(self.engine) as s:
            return self._exec(s, stmt).first()

    def get(self, record_id: str) -> TelemetryRecord | None:
        with get_session(self.engine) as s:
            try:
                return s.get(TelemetryRecord, record_id)
            except SQLAlchemyError as e:
                raise StorageError(f"failed to read record {record_id}") from e

    def list_all(
        self, since: datetime | None = None, until: datetime | None = None
    ) -> Sequence[TelemetryRecord]:
        stmt = select(TelemetryRecord)
        if since is not None:
            stmt = stmt.where(TelemetryRecord.received_at >= since)
        if until is not None:
            stmt = stmt.where(TelemetryRecord.received_at <= until)
        stmt = stmt.order_by(TelemetryRecord.received_at.asc(), TelemetryRecord.id.asc())
        with get_session(self.engine) as s:
            return self._exec(s, stmt).all()

    def page(self, offset: int, limit: int) -> tuple[Sequence[TelemetryRecord], int]:
        """Newest first."""
        stmt = (
            select(TelemetryRecord)
            .order_by(TelemetryRecord.received_at.desc(), TelemetryRecord.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with get_session(self.engine) as s:
            total = self._exec(s, select(func.count()).select_from(TelemetryRecord)).one()
            return self._exec(s, stmt).all(), int(total)

    def delete(self, record_id: str) -> bool:
        try:
            with self._lock, get_session(self.engine) as s:
                row = s.get(TelemetryRecord, record_id)
                if row is None:
                    return False
                s.delete(row)
                s.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to delete record {record_id}") from e
        log.info("[Store] deleted record %s", record_id)
        return True

    def delete_all(self) -> int:
        try:
            with self._lock, get_session(self.engine) as s:
                res = s.execute(delete(TelemetryRecord))
                s.commit()
        except SQLAlchemyError as e:
            raise StorageError("failed to delete records") from e
        count = int(res.rowcount or 0)
        log.info("[Store] deleted all records (%d)", count)
        return count

    @staticmethod
    def _exec(session, stmt):
        try:
            return session.exec(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"query failed: {e}") from e
