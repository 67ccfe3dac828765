"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories.
Services are constructed per request around the request's `Session`;
they validate input, execute domain logic, raise typed `ApiError`s and
persist aggregates via repositories.

The submission engine is the one place where two aggregates change
together: the solution ledger entry and the user's statistics are
written in the same transaction and committed once.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import BadRequest, Conflict, NotFound, Unauthorized, ValidationError

logger = logging.getLogger("medtrainer.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

CATEGORY_UPDATABLE_FIELDS = ("name", "description", "icon")
CATEGORY_FIELD_LIMITS = {"name": 50, "description": 500, "icon": 100}
PROFILE_FIELDS = ("name", "specialization", "experience_years")
ADMIN_PROFILE_FIELDS = PROFILE_FIELDS + ("email", "role")


def check_category_fields(data: Dict[str, Any]) -> None:
    """Raise `ValidationError` naming every key outside the category allowlist."""
    invalid = [k for k in data if k not in CATEGORY_UPDATABLE_FIELDS]
    if invalid:
        raise ValidationError(
            f"cannot update fields: {', '.join(invalid)}. "
            f"Allowed: {', '.join(CATEGORY_UPDATABLE_FIELDS)}"
        )


def _check_options(options: List[str], correct_answer: str) -> None:
    if len(set(options)) != len(options):
        raise ValidationError("options must be unique")
    if correct_answer not in options:
        raise ValidationError("options must include the correct answer")


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, email: str, password: str, name: str, specialization: str,
                 experience_years: Optional[int] = None, role: models.Role = models.Role.user) -> models.User:
        """Create a new user with a hashed password.

        The HTTP layer always registers with the default `user` role;
        `role` exists for the admin provisioning script.
        """
        email = email.strip().lower()
        if self.user_repo.get_by_email(email):
            raise Conflict("user already exists")
        user = models.User(
            email=email,
            password_hash=PWD_CTX.hash(password),
            name=name,
            specialization=specialization,
            experience_years=experience_years,
            role=role,
        )
        try:
            created = self.user_repo.create(user)
        except IntegrityError:
            self.session.rollback()
            raise Conflict("user already exists")
        logger.info("user_registered id=%s role=%s", created.id, created.role.value)
        return created

    def authenticate(self, email: str, password: str) -> str:
        """Verify credentials and return a signed JWT token.

        Every failure produces the same message so the response does not
        reveal whether the email is registered.
        """
        user = self.user_repo.get_by_email(email)
        if not user or not PWD_CTX.verify(password, user.password_hash):
            raise Unauthorized("invalid credentials")
        return self.issue_token(user)

    def issue_token(self, user: models.User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"id": user.id, "email": user.email, "role": user.role.value, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def promote_to_admin(self, email: str) -> models.User:
        user = self.user_repo.get_by_email(email)
        if not user:
            raise NotFound("user not found")
        user.role = models.Role.admin
        return self.user_repo.save(user)


class CategoryService:
    """Category CRUD. Writes are admin-only at the HTTP layer."""
    def __init__(self, session: Session):
        self.session = session
        self.category_repo = repositories.CategoryRepository(session)

    def create(self, name: str, description: str, icon: Optional[str] = None) -> models.Category:
        if self.category_repo.get_by_name(name):
            raise Conflict("category with this name already exists")
        category = models.Category(name=name, description=description)
        if icon:
            category.icon = icon
        try:
            return self.category_repo.create(category)
        except IntegrityError:
            self.session.rollback()
            raise Conflict("category with this name already exists")

    def list(self) -> List[models.Category]:
        return self.category_repo.list()

    def get(self, category_id: int) -> models.Category:
        category = self.category_repo.get(category_id)
        if not category:
            raise NotFound("category not found")
        return category

    def update(self, category_id: int, data: Dict[str, Any]) -> models.Category:
        """Apply a partial update restricted to name, description and icon.

        Any other key in `data` rejects the whole update with a message
        naming the offending fields.
        """
        check_category_fields(data)
        if not data:
            raise ValidationError("no updatable fields provided")
        updates = {}
        for key, value in data.items():
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} must be a non-empty string")
            value = value.strip()
            if len(value) > CATEGORY_FIELD_LIMITS[key]:
                raise ValidationError(f"{key} must not exceed {CATEGORY_FIELD_LIMITS[key]} characters")
            updates[key] = value
        category = self.get(category_id)
        if "name" in updates and updates["name"] != category.name and self.category_repo.get_by_name(updates["name"]):
            raise Conflict("category with this name already exists")
        for key, value in updates.items():
            setattr(category, key, value)
        return self.category_repo.save(category)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.category_repo.delete(category)
        logger.info("category_deleted id=%s", category_id)


class TaskService:
    """Task catalog operations."""
    def __init__(self, session: Session):
        self.session = session
        self.task_repo = repositories.TaskRepository(session)
        self.category_repo = repositories.CategoryRepository(session)

    def create(self, data: Dict[str, Any], author_id: int) -> models.Task:
        """Create a task authored by `author_id`.

        A task whose title, description, correct answer, difficulty and
        category all match an existing one is rejected as a duplicate.
        """
        _check_options(data["options"], data["correct_answer"])
        if not self.category_repo.get(data["category_id"]):
            raise ValidationError("category does not exist")
        duplicate = self.task_repo.find_duplicate(
            data["title"], data["description"], data["correct_answer"], data["difficulty"], data["category_id"]
        )
        if duplicate:
            raise Conflict("a task with these parameters already exists")
        task = models.Task(**data, author_id=author_id)
        created = self.task_repo.create(task)
        logger.info("task_created id=%s author=%s", created.id, author_id)
        return created

    def list(self, category_id: Optional[int] = None, difficulty: Optional[models.Difficulty] = None,
             limit: int = 10, page: int = 1, include_inactive: bool = False) -> List[models.Task]:
        return self.task_repo.list(category_id, difficulty, limit=limit, page=page, active_only=not include_inactive)

    def get(self, task_id: int, include_inactive: bool = False) -> models.Task:
        task = self.task_repo.get(task_id)
        if not task or (not task.is_active and not include_inactive):
            raise NotFound("task not found")
        return task

    def update(self, task: models.Task, data: Dict[str, Any]) -> models.Task:
        """Apply a partial update; ownership has already been checked."""
        if "category_id" in data and not self.category_repo.get(data["category_id"]):
            raise ValidationError("category does not exist")
        options = data.get("options", task.options)
        correct_answer = data.get("correct_answer", task.correct_answer)
        _check_options(options, correct_answer)
        for key, value in data.items():
            setattr(task, key, value)
        task.updated_at = models.utcnow()
        return self.task_repo.save(task)

    def delete(self, task_id: int) -> None:
        task = self.task_repo.get(task_id)
        if not task:
            raise NotFound("task not found")
        self.task_repo.delete(task)
        logger.info("task_deleted id=%s", task_id)


class StatisticsService:
    """Maintain and report per-user aggregate statistics.

    `total_attempts` counts every submission, including resubmissions of
    the same task. The solved-task history holds one row per task carrying
    the latest outcome, so resubmissions keep it in step with the solution ledger.
    The reported `correct_attempts` is counted from that history.
    """
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.history_repo = repositories.SolvedTaskRepository(session)

    def _require_user(self, user_id: int) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("user not found")
        return user

    def record_attempt(self, user_id: int, task_id: int, is_correct: bool, commit: bool = True) -> None:
        """Count one attempt and refresh the history row for `task_id`.

        With `commit=False` the changes are only flushed and the caller
        decides when the transaction ends.
        """
        self._require_user(user_id)
        self.user_repo.increment_attempts(user_id, is_correct)
        self.history_repo.upsert(user_id, task_id, is_correct)
        if commit:
            self.session.commit()

    def remove_solved_task(self, user_id: int, task_id: int) -> None:
        """Drop the history row for `task_id` and roll the counters back by one.

        `correct_attempts` only goes down when the removed entry was
        correct. The solution ledger is left untouched.
        """
        self._require_user(user_id)
        entry = self.history_repo.get_for(user_id, task_id)
        if not entry:
            raise NotFound("task is not in the solved history")
        was_correct = entry.is_correct
        try:
            self.history_repo.delete(entry)
            self.user_repo.decrement_attempts(user_id, was_correct)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("solved_task_removed user=%s task=%s", user_id, task_id)

    def get_stats(self, user_id: int) -> Dict[str, Any]:
        user = self._require_user(user_id)
        correct = self.history_repo.count(user_id, correct_only=True)
        solved = self.history_repo.count(user_id)
        total = user.total_attempts
        return {
            "total_attempts": total,
            "correct_attempts": correct,
            "solved_tasks": solved,
            "success_rate": round(correct / total * 100, 2) if total > 0 else 0.0,
        }

    def list_solved_tasks(self, user_id: int, limit: int = 10, page: int = 1) -> List[Dict[str, Any]]:
        self._require_user(user_id)
        out = []
        for entry, task in self.history_repo.list_with_tasks(user_id, limit=limit, page=page):
            out.append({
                "task_id": entry.task_id,
                "solved_at": entry.solved_at,
                "is_correct": entry.is_correct,
                "task": {
                    "id": task.id,
                    "title": task.title,
                    "difficulty": task.difficulty,
                    "category_id": task.category_id,
                } if task else None,
            })
        return out


class SubmissionService:
    """Grade an answer, upsert the ledger entry and update statistics as one unit."""
    def __init__(self, session: Session):
        self.session = session
        self.task_repo = repositories.TaskRepository(session)
        self.solution_repo = repositories.SolutionRepository(session)
        self.stats = StatisticsService(session)

    def _validate_answer(self, answer) -> None:
        if not isinstance(answer, str):
            raise ValidationError("answer must be a string")
        if not answer.strip():
            raise ValidationError("answer is required")
        if len(answer) > settings.MAX_ANSWER_LENGTH:
            raise ValidationError(f"answer must not exceed {settings.MAX_ANSWER_LENGTH} characters")

    def submit(self, user_id: int, task_id: int, answer: str) -> Dict[str, Any]:
        """Grade `answer` against the task and record the outcome.

        Grading is exact string equality with the task's correct answer.
        A resubmission overwrites the existing ledger entry, keeping its
        id. If a concurrent request inserts the entry first, the unique
        constraint fires and the write is retried as an update.

        The response carries `correct_answer` only when the answer was wrong.
        """
        self._validate_answer(answer)
        task = self.task_repo.get(task_id)
        if not task or not task.is_active:
            raise NotFound("task not found")
        correct_answer = task.correct_answer
        is_correct = answer == correct_answer

        for attempt in range(2):
            try:
                solution, created = self.solution_repo.upsert(user_id, task_id, answer, is_correct)
                self.stats.record_attempt(user_id, task_id, is_correct, commit=False)
                solution_id = solution.id
                self.session.commit()
                break
            except IntegrityError:
                self.session.rollback()
                if attempt:
                    raise
                logger.warning("submission_race user=%s task=%s retrying as update", user_id, task_id)
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            "solution_submitted user=%s task=%s solution=%s correct=%s created=%s",
            user_id, task_id, solution_id, is_correct, created,
        )
        result = {"is_correct": is_correct, "solution_id": solution_id}
        if not is_correct:
            result["correct_answer"] = correct_answer
        return result


class UserService:
    """Profile, password and account lifecycle operations."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.solution_repo = repositories.SolutionRepository(session)
        self.history_repo = repositories.SolvedTaskRepository(session)

    def get(self, user_id: int) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("user not found")
        return user

    def list(self, limit: int = 10, page: int = 1, role: Optional[models.Role] = None) -> List[models.User]:
        return self.user_repo.list(limit=limit, page=page, role=role)

    def update_profile(self, user_id: int, data: Dict[str, Any], is_admin: bool = False) -> models.User:
        """Update profile fields of `user_id`.

        Non-admins may only change name, specialization and experience;
        `email` and `role` in their payload are dropped. Identity,
        credentials and statistics are never writable here.
        """
        allowed = ADMIN_PROFILE_FIELDS if is_admin else PROFILE_FIELDS
        updates = {k: v for k, v in data.items() if k in allowed and v is not None}
        user = self.get(user_id)
        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
            other = self.user_repo.get_by_email(updates["email"])
            if other and other.id != user.id:
                raise Conflict("user already exists")
        for key, value in updates.items():
            setattr(user, key, value)
        return self.user_repo.save(user)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = self.get(user_id)
        if not PWD_CTX.verify(current_password, user.password_hash):
            raise BadRequest("current password is incorrect")
        if current_password == new_password:
            raise BadRequest("new password must differ from the current one")
        user.password_hash = PWD_CTX.hash(new_password)
        self.user_repo.save(user)
        logger.info("password_changed user=%s", user_id)

    def delete(self, user_id: int) -> None:
        """Delete a user together with their ledger entries and history.

        All rows go in one transaction; any failure rolls everything back.
        """
        try:
            user = self.get(user_id)
            solutions = self.solution_repo.delete_for_user(user_id)
            history = self.history_repo.delete_for_user(user_id)
            # ledger and history rows must be gone before the user row
            self.session.flush()
            self.user_repo.delete(user)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("user_deleted id=%s solutions=%s history=%s", user_id, solutions, history)

