"""Task model: a preset bound to a recurring schedule."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Task(BaseModel):
    """Scheduled preset.

    Attributes:
        id: Unique identifier (UUID string)
        name: Unique task name
        preset_ref: Preset name or path, resolved when the task runs
        interval_spec: Human-readable interval (``every 5 minutes``)
        var_overrides: Variable overrides passed to every run
        enabled: Whether the daemon picks the task up
        next_run_at: Next due time (naive UTC)
        last_run_at: Last time the task was claimed (naive UTC)
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "tasks"

    name: Mapped[str] = mapped_column(nullable=False, unique=True, index=True)
    preset_ref: Mapped[str] = mapped_column(nullable=False)
    interval_spec: Mapped[str] = mapped_column(nullable=False)
    var_overrides: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    enabled: Mapped[bool] = mapped_column(default=True, index=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Runs keep their history when the task is deleted (task_id is set to NULL)
    runs: Mapped[list["Run"]] = relationship("Run", back_populates="task", lazy="noload", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<Task {self.name} '{self.interval_spec}' enabled={self.enabled}>"
