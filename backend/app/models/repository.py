"""
RepositorySnapshot: one uploaded-and-extracted repository version.
RepositoryFile: the indexed manifest entries of a snapshot.
"""

from datetime import datetime

from sqlalchemy import String, Integer, BigInteger, Boolean, DateTime, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType, utcnow


class RepositorySnapshot(Base):
    __tablename__ = "repository_snapshots"
    __table_args__ = (
        Index("ix_repository_snapshots_org_manifest", "organization_id", "manifest_hash"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    snapshot_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True)
    company_profile_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(200))
    uploaded_by: Mapped[str] = mapped_column(String(100))
    uploaded_file_name: Mapped[str] = mapped_column(String(255))
    uploaded_file_hash: Mapped[str] = mapped_column(String(64))
    # uploading | indexed | analyzing | analyzed | error
    status: Mapped[str] = mapped_column(String(20), default="uploading", index=True)
    extracted_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    manifest_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    file_count: Mapped[int] = mapped_column(Integer, default=0)
    total_size: Mapped[int] = mapped_column(BigInteger, default=0)
    technologies: Mapped[list] = mapped_column(JSONType, default=list)
    analysis_phase: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    analysis_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    analysis_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, server_default=func.now(), onupdate=utcnow,
    )

    files: Mapped[list["RepositoryFile"]] = relationship(
        back_populates="snapshot", cascade="all, delete-orphan", passive_deletes=True,
    )


class RepositoryFile(Base):
    __tablename__ = "repository_files"

    id: Mapped[int] = mapped_column(primary_key=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("repository_snapshots.id", ondelete="CASCADE"), index=True,
    )
    relative_path: Mapped[str] = mapped_column(String(4096))
    file_name: Mapped[str] = mapped_column(String(255))
    file_type: Mapped[str] = mapped_column(String(32))
    size: Mapped[int] = mapped_column(BigInteger)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    language: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category: Mapped[str] = mapped_column(String(16), index=True)
    is_security_relevant: Mapped[bool] = mapped_column(Boolean, default=False)
    is_oversized: Mapped[bool] = mapped_column(Boolean, default=False)
    indexed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())

    snapshot: Mapped["RepositorySnapshot"] = relationship(back_populates="files")
