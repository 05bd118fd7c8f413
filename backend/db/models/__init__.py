"""Database models.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.task import Task
from db.models.run import Run, RunStep

__all__ = [
    "Task",
    "Run",
    "RunStep",
]
