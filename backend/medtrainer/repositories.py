"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
categories, tasks, solutions, solved-task history). Catalog and identity
repositories commit on write. Ledger and history repositories only flush,
so the submission engine can commit the ledger write and the statistics
update together.
"""

from typing import List, Optional, Tuple

from sqlalchemy import case, func, update
from sqlmodel import Session, select

from . import models


def _offset(limit: int, page: int) -> int:
    return (max(page, 1) - 1) * limit


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by (lower-cased) email or `None` if not found."""
        stmt = select(models.User).where(models.User.email == email.strip().lower())
        return self.session.exec(stmt).first()

    def list(self, limit: int = 10, page: int = 1, role: Optional[models.Role] = None) -> List[models.User]:
        """Return a page of users, newest first, optionally filtered by role."""
        stmt = select(models.User)
        if role is not None:
            stmt = stmt.where(models.User.role == role)
        stmt = stmt.order_by(models.User.created_at.desc(), models.User.id.desc())
        return self.session.exec(stmt.offset(_offset(limit, page)).limit(limit)).all()

    def increment_attempts(self, user_id: int, correct: bool) -> None:
        """Bump the aggregate counters in a single UPDATE statement."""
        stmt = (
            update(models.User)
            .where(models.User.id == user_id)
            .values(
                total_attempts=models.User.total_attempts + 1,
                correct_attempts=models.User.correct_attempts + (1 if correct else 0),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.exec(stmt)

    def decrement_attempts(self, user_id: int, correct: bool) -> None:
        """Lower the counters by one in a single UPDATE, never below zero."""
        values = {"total_attempts": _decrement(models.User.total_attempts)}
        if correct:
            values["correct_attempts"] = _decrement(models.User.correct_attempts)
        stmt = (
            update(models.User)
            .where(models.User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.exec(stmt)

    def delete(self, user: models.User) -> None:
        """Mark `user` for deletion; the caller owns the transaction."""
        self.session.delete(user)


def _decrement(column):
    return case((column > 0, column - 1), else_=0)


class CategoryRepository:
    """CRUD operations for `Category` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, category: models.Category) -> models.Category:
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def save(self, category: models.Category) -> models.Category:
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def get(self, category_id: int) -> Optional[models.Category]:
        return self.session.get(models.Category, category_id)

    def get_by_name(self, name: str) -> Optional[models.Category]:
        stmt = select(models.Category).where(models.Category.name == name)
        return self.session.exec(stmt).first()

    def list(self) -> List[models.Category]:
        return self.session.exec(select(models.Category).order_by(models.Category.name)).all()

    def delete(self, category: models.Category) -> None:
        """Hard delete. Tasks keep their `category_id`."""
        self.session.delete(category)
        self.session.commit()


class TaskRepository:
    """CRUD operations and catalog queries for `Task` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, task: models.Task) -> models.Task:
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        return task

    def save(self, task: models.Task) -> models.Task:
        self.session.add(task)
        self.session.commit()
        self.session.refresh(task)
        return task

    def get(self, task_id: int) -> Optional[models.Task]:
        """Fetch a task by id."""
        return self.session.get(models.Task, task_id)

    def find_duplicate(self, title: str, description: str, correct_answer: str,
                       difficulty: models.Difficulty, category_id: int) -> Optional[models.Task]:
        """Return a task whose authored fields all match exactly, if any."""
        stmt = select(models.Task).where(
            models.Task.title == title,
            models.Task.description == description,
            models.Task.correct_answer == correct_answer,
            models.Task.difficulty == difficulty,
            models.Task.category_id == category_id,
        )
        return self.session.exec(stmt).first()

    def list(self, category_id: Optional[int] = None, difficulty: Optional[models.Difficulty] = None,
             limit: int = 10, page: int = 1, active_only: bool = False) -> List[models.Task]:
        """Return a page of tasks filtered by category and/or difficulty."""
        stmt = select(models.Task)
        if category_id is not None:
            stmt = stmt.where(models.Task.category_id == category_id)
        if difficulty is not None:
            stmt = stmt.where(models.Task.difficulty == difficulty)
        if active_only:
            stmt = stmt.where(models.Task.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.Task.id).offset(_offset(limit, page)).limit(limit)
        return self.session.exec(stmt).all()

    def delete(self, task: models.Task) -> None:
        """Hard delete. Solutions and history rows for the task are left in place."""
        self.session.delete(task)
        self.session.commit()


class SolutionRepository:
    """Ledger of current answers, one row per (user, task)."""
    def __init__(self, session: Session):
        self.session = session

    def get_for(self, user_id: int, task_id: int) -> Optional[models.Solution]:
        stmt = select(models.Solution).where(
            models.Solution.user_id == user_id,
            models.Solution.task_id == task_id,
        )
        return self.session.exec(stmt).first()

    def upsert(self, user_id: int, task_id: int, user_answer: str, is_correct: bool) -> Tuple[models.Solution, bool]:
        """Overwrite the existing entry for the pair or insert a new one.

        Returns `(solution, created)`. Only flushes; a concurrent insert
        for the same pair surfaces here as an `IntegrityError`.
        """
        existing = self.get_for(user_id, task_id)
        if existing:
            existing.user_answer = user_answer
            existing.is_correct = is_correct
            existing.solved_at = models.utcnow()
            self.session.add(existing)
            self.session.flush()
            return existing, False
        solution = models.Solution(user_id=user_id, task_id=task_id, user_answer=user_answer, is_correct=is_correct)
        self.session.add(solution)
        self.session.flush()
        return solution, True

    def list_for_user(self, user_id: int) -> List[models.Solution]:
        stmt = select(models.Solution).where(models.Solution.user_id == user_id)
        return self.session.exec(stmt).all()

    def delete_for_user(self, user_id: int) -> int:
        """Mark every ledger entry of `user_id` for deletion; returns how many."""
        rows = self.list_for_user(user_id)
        for row in rows:
            self.session.delete(row)
        return len(rows)


class SolvedTaskRepository:
    """Per-user solved-task history mirroring the ledger."""
    def __init__(self, session: Session):
        self.session = session

    def get_for(self, user_id: int, task_id: int) -> Optional[models.SolvedTask]:
        stmt = select(models.SolvedTask).where(
            models.SolvedTask.user_id == user_id,
            models.SolvedTask.task_id == task_id,
        )
        return self.session.exec(stmt).first()

    def upsert(self, user_id: int, task_id: int, is_correct: bool) -> models.SolvedTask:
        """Keep one history row per task, refreshed with the latest outcome."""
        entry = self.get_for(user_id, task_id)
        if entry:
            entry.is_correct = is_correct
            entry.solved_at = models.utcnow()
        else:
            entry = models.SolvedTask(user_id=user_id, task_id=task_id, is_correct=is_correct)
        self.session.add(entry)
        self.session.flush()
        return entry

    def count(self, user_id: int, correct_only: bool = False) -> int:
        stmt = select(func.count()).select_from(models.SolvedTask).where(models.SolvedTask.user_id == user_id)
        if correct_only:
            stmt = stmt.where(models.SolvedTask.is_correct == True)  # noqa: E712
        return self.session.exec(stmt).one()

    def list_with_tasks(self, user_id: int, limit: int = 10, page: int = 1) -> List[Tuple[models.SolvedTask, Optional[models.Task]]]:
        """Return a page of history rows, newest first, joined to their task.

        The task is `None` when it has since been deleted.
        """
        stmt = (
            select(models.SolvedTask, models.Task)
            .join(models.Task, models.Task.id == models.SolvedTask.task_id, isouter=True)
            .where(models.SolvedTask.user_id == user_id)
            .order_by(models.SolvedTask.solved_at.desc(), models.SolvedTask.id.desc())
            .offset(_offset(limit, page))
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def delete(self, entry: models.SolvedTask) -> None:
        self.session.delete(entry)

    def delete_for_user(self, user_id: int) -> int:
        rows = self.session.exec(select(models.SolvedTask).where(models.SolvedTask.user_id == user_id)).all()
        for row in rows:
            self.session.delete(row)
        return len(rows)
