from datetime import datetime

from sqlalchemy import String, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, utcnow


class RemediationTask(Base):
    __tablename__ = "remediation_tasks"

    id: Mapped[int] = mapped_column(primary_key=True)
    task_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("repository_snapshots.id", ondelete="CASCADE"), index=True,
    )
    finding_id: Mapped[int | None] = mapped_column(
        ForeignKey("repository_findings.id", ondelete="SET NULL"), nullable=True,
    )
    # every finding aggregated into this task (internal ids)
    finding_ids: Mapped[list] = mapped_column(JSONType, default=list)
    framework: Mapped[str] = mapped_column(String(20))
    control_id: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(300))
    description: Mapped[str] = mapped_column(String(5000))
    category: Mapped[str] = mapped_column(String(20))  # code_change | missing_evidence | policy_needed | procedure_needed
    priority: Mapped[str] = mapped_column(String(10), index=True)  # critical | high | medium | low
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    assigned_to_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow,
    )
