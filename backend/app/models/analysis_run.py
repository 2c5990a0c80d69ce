"""
AnalysisRun model: one execution of the compliance scan against a snapshot.

Only the worker executing the run writes to it after creation; every
write is conditioned on the run still being queued/running.
"""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, utcnow


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("repository_snapshots.id", ondelete="CASCADE"), index=True,
    )
    frameworks: Mapped[list] = mapped_column(JSONType, default=list)
    depth: Mapped[str] = mapped_column(String(20))
    phase: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phase_status: Mapped[str] = mapped_column(String(20), default="queued", index=True)  # queued, running, completed, failed
    progress: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
