"""SQLAlchemy models for mutual-graph storage.

Two kinds of records live here:
- Cache (superseded, never mutated in place): cache_entries, network_analyses
- Work queue (mutated only through JobQueue lifecycle methods): jobs

Rows are plain data records; behaviour lives in the cache and job services.
"""
import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime, BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def utc_now() -> datetime:
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they were stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# JOB STATES
# =============================================================================

class JobStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"

    ACTIVE = (PENDING, IN_PROGRESS)


NETWORK_ANALYSIS = "network_analysis"


# =============================================================================
# CACHE LAYER
# =============================================================================

class CacheEntry(Base):
    """Keyed read-through cache record."""
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)  # e.g. "profile:alice.bsky.social"
    bucket: Mapped[str] = mapped_column(String(20))  # short, medium, long
    payload_json: Mapped[str] = mapped_column(Text)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    @property
    def payload(self):
        return json.loads(self.payload_json)


class NetworkAnalysis(Base):
    """Completed analysis for a subject account; superseded by later jobs."""
    __tablename__ = "network_analyses"

    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)  # DID
    handle: Mapped[str] = mapped_column(String(255), index=True)
    stats_json: Mapped[str] = mapped_column(Text)
    communities_json: Mapped[str] = mapped_column(Text)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


# =============================================================================
# JOB QUEUE
# =============================================================================

class Job(Base):
    """Persistent network analysis job."""
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_type: Mapped[str] = mapped_column(String(50), default=NETWORK_ANALYSIS)
    handle: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING)
    priority: Mapped[int] = mapped_column(BigInteger, default=0)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")  # {"force": bool}
    progress_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refresh_count: Mapped[int] = mapped_column(Integer, default=0)
    last_refresh_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    @property
    def payload(self) -> dict:
        return json.loads(self.payload_json or "{}")

    @property
    def progress(self) -> Optional[dict]:
        return json.loads(self.progress_json) if self.progress_json else None

    @property
    def result(self) -> Optional[dict]:
        return json.loads(self.result_json) if self.result_json else None

    def to_status(self) -> dict:
        """Job status shape returned to callers."""
        progress = self.progress or {}
        details = progress.get("details") or {}
        return {
            "jobId": str(self.id),
            "handle": self.handle,
            "status": self.status,
            "error": self.error,
            "progress": {
                "stage": progress.get("stage") or self.status,
                "current": progress.get("current", 0),
                "total": progress.get("total", 4),
                "message": progress.get("message", ""),
                "details": {
                    "processedNodes": details.get("processedNodes", 0),
                    "processedEdges": details.get("processedEdges", 0),
                    "discoveredCommunities": details.get("discoveredCommunities", 0),
                },
            },
        }


# =============================================================================
# INDEXES
# =============================================================================

Index("ix_jobs_handle_status", Job.handle, Job.status)
Index("ix_jobs_claim_order", Job.status, Job.priority, Job.created_at)
Index("ix_jobs_handle_refresh", Job.handle, Job.last_refresh_date)
