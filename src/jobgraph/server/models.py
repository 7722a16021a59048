from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class InvocationRecord(Base):
    __tablename__ = "invocations"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    channel: Mapped[str] = mapped_column(sa.Text, nullable=False)
    release_tag: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    outcome: Mapped[str] = mapped_column(sa.Text, nullable=False)
    release_action: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    release_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    release_reference: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    release_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)

    jobs: Mapped[list["JobRunRecord"]] = relationship(
        back_populates="invocation",
        cascade="all, delete-orphan",
        order_by="JobRunRecord.position",
        lazy="selectin",
    )


class JobRunRecord(Base):
    __tablename__ = "job_runs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    invocation_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("invocations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    failure_kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    diagnostics: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    artifacts_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    logs: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)

    invocation: Mapped[InvocationRecord] = relationship(back_populates="jobs")
