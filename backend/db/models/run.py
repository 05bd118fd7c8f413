"""Run and step result models: the append-only audit trail."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import RunStatus, TriggerType
from core.utils import utc_now
from db.base import Base


class Run(Base):
    """One execution of a preset, on demand or scheduled.

    Attributes:
        id: Autoincrement integer, shown to users
        task_id: Owning task, NULL for on-demand runs or deleted tasks
        preset_name: Name of the preset that ran
        trigger_type: manual or schedule
        status: running, success, error or cancelled
        started_at / finished_at: Naive UTC timestamps
        duration_ms: Wall time of the run
        error: Why the run failed, if it did
        pid: Process that executed the run
    """

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    preset_name: Mapped[str] = mapped_column(nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(default=TriggerType.MANUAL.value)
    status: Mapped[str] = mapped_column(default=RunStatus.RUNNING.value, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
    pid: Mapped[Optional[int]] = mapped_column(nullable=True)

    task: Mapped[Optional["Task"]] = relationship("Task", back_populates="runs", lazy="noload")
    steps: Mapped[list["RunStep"]] = relationship(
        "RunStep",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunStep.seq",
        lazy="noload",
    )


class RunStep(Base):
    """One StepResult of a run, ordered by ``seq``."""

    __tablename__ = "step_results"
    __table_args__ = (UniqueConstraint("run_id", "seq", name="uq_step_results_run_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    seq: Mapped[int] = mapped_column(nullable=False)
    step_id: Mapped[str] = mapped_column(nullable=False)
    step_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    action: Mapped[Optional[str]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(nullable=False)
    duration_ms: Mapped[int] = mapped_column(default=0)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(nullable=True)

    run: Mapped["Run"] = relationship("Run", back_populates="steps", lazy="noload")
