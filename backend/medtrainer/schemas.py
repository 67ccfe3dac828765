"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Field-level failures surface as a single
400 response whose message joins every problem found.
"""

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import Difficulty, Role

PASSWORD_MIN_LENGTH = 8


def validate_password_strength(value: str) -> str:
    """Raise ValueError unless `value` is long enough and mixes case and digits."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain a digit")
    return value


class RegisterIn(BaseModel):
    """Payload for user registration."""
    email: EmailStr
    password: str
    name: str = Field(min_length=1, max_length=50)
    specialization: str = Field(min_length=1, max_length=100)
    experience_years: Optional[int] = Field(default=None, ge=0, le=70)

    @field_validator("name", "specialization", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("password")
    @classmethod
    def _password_policy(cls, v: str) -> str:
        return validate_password_strength(v)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    """Authentication response containing a bearer token."""
    access_token: str
    token_type: str = "bearer"


class UserOut(BaseModel):
    """Public profile. Correct-answer counts are reported by the stats endpoint only."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    specialization: str
    experience_years: Optional[int] = None
    role: Role
    total_attempts: int
    created_at: datetime


class ProfileUpdateIn(BaseModel):
    """Profile changes; `email` and `role` are honoured for admins only."""
    name: Optional[str] = Field(default=None, min_length=2, max_length=32)
    specialization: Optional[str] = Field(default=None, max_length=100)
    experience_years: Optional[int] = Field(default=None, ge=0, le=70)
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


class PasswordChangeIn(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password_policy(cls, v: str) -> str:
        return validate_password_strength(v)


class CategoryIn(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1, max_length=500)
    icon: Optional[str] = Field(default=None, max_length=100)

    @field_validator("name", "description", "icon", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    icon: str
    created_at: datetime


class TaskIn(BaseModel):
    """Request format for creating a task."""
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=5000)
    category_id: int
    difficulty: Difficulty
    options: List[str] = Field(min_length=2, max_length=6)
    correct_answer: str = Field(min_length=1, max_length=500)
    explanation: str = Field(min_length=1, max_length=2000)
    is_active: bool = True

    @field_validator("options")
    @classmethod
    def _option_length(cls, v: List[str]) -> List[str]:
        if any(len(o) > 200 for o in v):
            raise ValueError("options must not exceed 200 characters")
        if len(set(v)) != len(v):
            raise ValueError("options must be unique")
        return v

    @model_validator(mode="after")
    def _options_contain_answer(self):
        if self.correct_answer not in self.options:
            raise ValueError("options must include the correct answer")
        return self


class TaskUpdateIn(BaseModel):
    """Partial task update. Unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    category_id: Optional[int] = None
    difficulty: Optional[Difficulty] = None
    options: Optional[List[str]] = Field(default=None, min_length=2, max_length=6)
    correct_answer: Optional[str] = Field(default=None, min_length=1, max_length=500)
    explanation: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    is_active: Optional[bool] = None

    @field_validator("options")
    @classmethod
    def _option_length(cls, v):
        if v is None:
            return v
        if any(len(o) > 200 for o in v):
            raise ValueError("options must not exceed 200 characters")
        if len(set(v)) != len(v):
            raise ValueError("options must be unique")
        return v


class TaskOut(BaseModel):
    """Task as shown to practitioners; the correct answer is withheld."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    category_id: int
    difficulty: Difficulty
    options: List[str]
    explanation: str
    author_id: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TaskAdminOut(TaskOut):
    correct_answer: str


class SolutionIn(BaseModel):
    """A submitted answer. Emptiness and length are checked by the submission engine."""
    answer: str


class StatsOut(BaseModel):
    total_attempts: int
    correct_attempts: int
    solved_tasks: int
    success_rate: float


class SolvedTaskRef(BaseModel):
    id: int
    title: str
    difficulty: Difficulty
    category_id: int


class SolvedTaskOut(BaseModel):
    task_id: int
    solved_at: datetime
    is_correct: bool
    task: Optional[SolvedTaskRef] = None


class MessageOut(BaseModel):
    message: str
