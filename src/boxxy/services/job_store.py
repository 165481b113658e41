from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import JSON, Column, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine

from ..core.errors import DuplicateJobError, JobStoreError
from ..core.models import JobRequest, JobStatus
from ..core.utils import utcnow

log = structlog.get_logger(__name__)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:  # sqlite drops the offset; we only ever write UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    status: JobStatus
    code: str = ""
    input: Optional[str] = None
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value if isinstance(self.status, JobStatus) else self.status,
            "code": self.code,
            "input": self.input,
            "result": self.result,
            "error": self.error,
            "attempts": self.attempts,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class JobStore:
    """
    Persistent job records. ``create`` is a conditional insert keyed on the job id;
    it is the only dedup point shared by all workers.
    """

    def __init__(self, url: str = "sqlite:///./sandbox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def create(self, req: JobRequest) -> JobRecord:
        now = utcnow()
        job = JobRecord(
            id=req.id, status=JobStatus.SUBMITTED, code=req.code, input=req.input,
            created_at=now, updated_at=now,
        )
        with self.SessionLocal() as s:
            s.add(job)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateJobError(req.id)
            except SQLAlchemyError as e:
                s.rollback()
                raise JobStoreError(f"create {req.id}: {e}") from e
        return job

    def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            with self.SessionLocal() as s:
                return s.get(JobRecord, job_id)
        except SQLAlchemyError as e:
            raise JobStoreError(f"get {job_id}: {e}") from e

    def update(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> JobRecord:
        """Set status, result and error together; creates the record when missing."""
        now = utcnow()
        try:
            with self.SessionLocal() as s:
                job = s.get(JobRecord, job_id)
                if job is None:
                    job = JobRecord(id=job_id, status=JobStatus.SUBMITTED, created_at=now, updated_at=now)
                if status == JobStatus.PENDING and job.status != JobStatus.PENDING:
                    job.attempts += 1
                job.status = status
                job.result = result
                job.error = error
                job.updated_at = now
                s.add(job)
                s.commit()
                return job
        except SQLAlchemyError as e:
            raise JobStoreError(f"update {job_id}: {e}") from e

    def claim_failed(self, job_id: str) -> bool:
        """FAILED -> PENDING, only if still FAILED. True for the single winner."""
        stmt = (
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == JobStatus.FAILED)
            .values(status=JobStatus.PENDING, error=None, result=None,
                    attempts=JobRecord.attempts + 1, updated_at=utcnow())
        )
        try:
            with self.SessionLocal() as s:
                res = s.execute(stmt)
                s.commit()
                return res.rowcount == 1
        except SQLAlchemyError as e:
            raise JobStoreError(f"claim {job_id}: {e}") from e

    def mark_failed(self, job_id: str, error: str) -> bool:
        """
        Record FAILED unless the job already reached COMPLETED, creating the record when
        it is missing. False when a completed record was left untouched.
        """
        now = utcnow()
        stmt = (
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status != JobStatus.COMPLETED)
            .values(status=JobStatus.FAILED, error=error, result=None, updated_at=now)
        )
        try:
            with self.SessionLocal() as s:
                if s.execute(stmt).rowcount == 1:
                    s.commit()
                    return True
                if s.get(JobRecord, job_id) is not None:
                    return False
                s.add(JobRecord(id=job_id, status=JobStatus.FAILED, error=error,
                                created_at=now, updated_at=now))
                try:
                    s.commit()
                except IntegrityError:
                    # created concurrently; that writer owns the record now
                    s.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise JobStoreError(f"mark failed {job_id}: {e}") from e
