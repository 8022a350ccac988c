"""SummaryRun and SummaryRunStep models: the summarization step log."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, JSON, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class SummaryRun(Base):
    __tablename__ = "summary_runs"

    run_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[str] = mapped_column(String(15), default="pending")
    max_messages: Mapped[int] = mapped_column(Integer, default=25)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    steps: Mapped[list["SummaryRunStep"]] = relationship(
        "SummaryRunStep", back_populates="run", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<SummaryRun {self.run_id} ({self.status})>"


class SummaryRunStep(Base):
    __tablename__ = "summary_run_steps"
    __table_args__ = (
        # One checkpoint per step; failed attempts may repeat
        Index(
            "uq_summary_run_steps_completed", "run_id", "step",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(ForeignKey("summary_runs.run_id", ondelete="CASCADE"), index=True)
    step: Mapped[str] = mapped_column(String(40))
    status: Mapped[str] = mapped_column(String(15))
    output: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str] = mapped_column(Text, default="")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[SummaryRun] = relationship("SummaryRun", back_populates="steps")

    def __repr__(self):
        return f"<Step {self.step} ({self.status})>"
