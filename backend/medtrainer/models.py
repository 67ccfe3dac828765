"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Task, category and author references are plain indexed id columns, so
deleting a task, category or author leaves the references dangling and
never cascades. Ledger and history rows keep a foreign key to their user;
user deletion removes them before the user row.

Entities that can be owned expose `owner_id()` so the access guard can
check ownership without knowing which table it is looking at.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    user = "user"
    admin = "admin"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class User(SQLModel, table=True):
    """A registered practitioner.

    Fields:
    - `email`: unique, lower-cased login name
    - `password_hash`: hashed password string (never store plaintext)
    - `total_attempts` / `correct_attempts`: aggregate counters maintained
      by the statistics updater; the per-task history lives in `SolvedTask`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    name: str
    specialization: str
    experience_years: Optional[int] = None
    role: Role = Field(default=Role.user)
    total_attempts: int = Field(default=0)
    correct_attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)

    def owner_id(self) -> Optional[int]:
        return self.id


class SolvedTask(SQLModel, table=True):
    """Denormalized per-user history entry, one row per (user, task)."""
    __table_args__ = (UniqueConstraint("user_id", "task_id", name="uq_solvedtask_user_task"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    task_id: int = Field(index=True)
    solved_at: datetime = Field(default_factory=utcnow)
    is_correct: bool = False


class Category(SQLModel, table=True):
    """A task category such as a medical specialty."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, nullable=False, unique=True)
    description: str
    icon: str = Field(default="default-icon.svg")
    created_at: datetime = Field(default_factory=utcnow)


class Task(SQLModel, table=True):
    """A multiple-choice task.

    `options` is stored as a JSON list and always contains `correct_answer`.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    description: str
    category_id: int = Field(index=True)
    difficulty: Difficulty = Field(index=True)
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    correct_answer: str
    explanation: str
    author_id: int = Field(index=True)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def owner_id(self) -> Optional[int]:
        return self.author_id


class Solution(SQLModel, table=True):
    """The current answer of one user to one task.

    At most one row exists per (user, task); resubmission overwrites it.
    """
    __table_args__ = (UniqueConstraint("user_id", "task_id", name="uq_solution_user_task"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    task_id: int = Field(index=True)
    user_answer: str
    is_correct: bool
    solved_at: datetime = Field(default_factory=utcnow)

    def owner_id(self) -> Optional[int]:
        return self.user_id
