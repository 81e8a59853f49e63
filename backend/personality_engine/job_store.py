"""
Job Store: persisted job status and per-stage checkpoints.

Writes are append/increment-only per job. Jobs that reached ``completed`` or ``failed``
accept no further stage writes or status changes; a failed job can be reopened for a retry.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from .database import AnalysisChunkRow, AnalysisJobRow, get_session_factory, utcnow
from .models import AnalysisJobInfo, AnalysisStage, JobStatus, StageResult, TOTAL_STAGES

logger = logging.getLogger(__name__)

CLOSED_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class JobStoreError(Exception):
    """Unknown job, or a write to a closed job."""


class JobStore(ABC):
    @abstractmethod
    def create_job(self, identity: str, total_stages: int = TOTAL_STAGES) -> str: ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[AnalysisJobInfo]: ...

    @abstractmethod
    def save_stage_result(self, job_id: str, stage: AnalysisStage, payload: Dict[str, Any],
                          item_count: int, status: JobStatus = JobStatus.COMPLETED,
                          error: Optional[str] = None) -> None: ...

    @abstractmethod
    def increment_processed_stages(self, job_id: str) -> int: ...

    @abstractmethod
    def update_status(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> None: ...

    @abstractmethod
    def reopen_job(self, job_id: str) -> None: ...

    @abstractmethod
    def load_stage_results(self, job_id: str) -> List[StageResult]: ...


def _job_info(row: AnalysisJobRow) -> AnalysisJobInfo:
    return AnalysisJobInfo(
        id=row.id,
        identity=row.identity,
        totalStages=row.total_stages,
        processedStages=row.processed_stages,
        status=JobStatus(row.status),
        errorMessage=row.error_message,
        createdAt=row.created_at,
        startedAt=row.started_at,
        completedAt=row.completed_at,
    )


class SqlJobStore(JobStore):
    """SQLAlchemy-backed store. Each call runs in its own session and transaction."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or get_session_factory()

    def _open_job(self, session, job_id: str) -> AnalysisJobRow:
        row = session.get(AnalysisJobRow, job_id)
        if row is None:
            raise JobStoreError(f"Unknown analysis job {job_id}")
        if JobStatus(row.status) in CLOSED_STATUSES:
            raise JobStoreError(f"Analysis job {job_id} is {row.status} and accepts no further writes")
        return row

    def create_job(self, identity: str, total_stages: int = TOTAL_STAGES) -> str:
        with self.session_factory() as session:
            row = AnalysisJobRow(identity=identity, total_stages=total_stages,
                                 processed_stages=0, status=JobStatus.PENDING.value)
            session.add(row)
            session.commit()
            logger.info(f"Created analysis job {row.id} for {identity} ({total_stages} stages)")
            return row.id

    def get_job(self, job_id: str) -> Optional[AnalysisJobInfo]:
        with self.session_factory() as session:
            row = session.get(AnalysisJobRow, job_id)
            return _job_info(row) if row is not None else None

    def save_stage_result(self, job_id: str, stage: AnalysisStage, payload: Dict[str, Any],
                          item_count: int, status: JobStatus = JobStatus.COMPLETED,
                          error: Optional[str] = None) -> None:
        with self.session_factory() as session:
            self._open_job(session, job_id)
            session.add(AnalysisChunkRow(
                job_id=job_id,
                stage_index=int(stage),
                item_count=item_count,
                status=JobStatus(status).value,
                payload=payload,
                error=error,
            ))
            session.commit()
        logger.info(f"Saved {AnalysisStage(stage).label} result for job {job_id} ({JobStatus(status).value})")

    def increment_processed_stages(self, job_id: str) -> int:
        with self.session_factory() as session:
            row = self._open_job(session, job_id)
            row.processed_stages = min(row.total_stages, row.processed_stages + 1)
            session.commit()
            return row.processed_stages

    def update_status(self, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> None:
        status = JobStatus(status)
        with self.session_factory() as session:
            row = self._open_job(session, job_id)
            row.status = status.value
            row.error_message = error_message
            now = utcnow()
            if status is JobStatus.PROCESSING and row.started_at is None:
                row.started_at = now
            if status in CLOSED_STATUSES:
                row.completed_at = now
            session.commit()

    def reopen_job(self, job_id: str) -> None:
        """Put a failed job back into processing so a retry can resume from its checkpoints."""
        with self.session_factory() as session:
            row = session.get(AnalysisJobRow, job_id)
            if row is None:
                raise JobStoreError(f"Unknown analysis job {job_id}")
            if row.status == JobStatus.COMPLETED.value:
                raise JobStoreError(f"Analysis job {job_id} is already completed")
            row.status = JobStatus.PROCESSING.value
            row.error_message = None
            row.completed_at = None
            session.commit()
        logger.info(f"Reopened analysis job {job_id}")

    def load_stage_results(self, job_id: str) -> List[StageResult]:
        """Latest completed result per stage, in stage order."""
        with self.session_factory() as session:
            rows = session.execute(
                select(AnalysisChunkRow)
                .where(AnalysisChunkRow.job_id == job_id, AnalysisChunkRow.status == JobStatus.COMPLETED.value)
                .order_by(AnalysisChunkRow.id)
            ).scalars().all()
            latest: Dict[int, AnalysisChunkRow] = {}
            for row in rows:
                latest[row.stage_index] = row
            return [
                StageResult(
                    jobId=row.job_id,
                    stage=AnalysisStage(row.stage_index),
                    itemCount=row.item_count,
                    status=JobStatus(row.status),
                    payload=row.payload or {},
                    error=row.error,
                    createdAt=row.created_at,
                )
                for _, row in sorted(latest.items())
            ]
