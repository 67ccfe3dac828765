"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the medical training backend.
Controllers are intentionally thin: they resolve the principal through
the access guards in `auth`, delegate to services, and return JSON.
Services raise `ApiError`s which the handlers below turn into
`{status, message, stack?}` bodies.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- GET /tasks, GET /tasks/{task_id}, POST /tasks/create, PATCH /tasks/{task_id},
  DELETE /tasks/{task_id}, POST /tasks/{task_id}/solve
- GET /categories, GET /categories/{category_id}, POST /categories/create,
  PATCH /categories/{category_id}, DELETE /categories/{category_id}
- GET /users, GET /users/me, GET /users/{user_id}, PUT /users/me/update,
  POST /users/me/change-password, DELETE /users/{user_id}
- GET /users/me/stats, GET /users/me/solved-tasks,
  DELETE /users/me/solved-tasks/{task_id}
- GET /health
"""

import json
import logging
import time
import traceback
import uuid
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models, schemas, services
from .auth import (
    Principal,
    get_current_principal,
    require_admin,
    task_owner_or_admin,
    user_owner_or_admin,
)
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import ApiError, Internal, ValidationError
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="Medical Training API")
logger = logging.getLogger("medtrainer.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_rate_limiter = InMemoryRateLimiter()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_db_and_tables()


def _error_body(err: ApiError, exc: Optional[BaseException] = None) -> dict:
    body = {"status": err.status, "message": err.message}
    if settings.is_dev and exc is not None:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


def _log_error(status_code: int, message: str) -> None:
    if status_code >= 500:
        logger.error("%s - %s", status_code, message)
    else:
        logger.warning("%s - %s", status_code, message)


def _format_validation_error(err: dict) -> str:
    msg = err.get("msg", "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
    return f"{field}: {msg}" if field else msg


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    _log_error(exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc, exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = ", ".join(_format_validation_error(e) for e in exc.errors())
    _log_error(400, message)
    return JSONResponse(status_code=400, content=_error_body(ValidationError(message)))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = f"Route not found: {request.url.path}"
    else:
        message = str(exc.detail)
    _log_error(exc.status_code, message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(ApiError(message, exc.status_code)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("500 - unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body(Internal(), exc))


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path == "/health":
        return await call_next(request)
    key = request.client.host if request.client else "unknown"
    allowed, retry_after = _rate_limiter.allow(key, settings.RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS)
    if not allowed:
        message = f"rate limit exceeded; retry after {retry_after}s"
        _log_error(429, message)
        return JSONResponse(
            status_code=429,
            content=_error_body(ApiError(message, 429)),
            headers={"Retry-After": str(retry_after)},
        )
    return await call_next(request)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    context = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        context["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(context, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    context["status_code"] = response.status_code
    context["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(context, ensure_ascii=True))
    return response


def _task_out(task: models.Task, principal: Principal):
    """Serialize a task, revealing the correct answer to admins and the author only."""
    if principal.is_admin or task.author_id == principal.id:
        return schemas.TaskAdminOut.model_validate(task)
    return schemas.TaskOut.model_validate(task)


@app.post('/auth/register', status_code=201, response_model=schemas.UserOut)
def register(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    """Register a new practitioner account.

    The role is always `user`; an existing email yields 409.
    """
    return services.AuthService(db).register(
        payload.email, payload.password, payload.name, payload.specialization, payload.experience_years
    )


@app.post('/auth/login', response_model=schemas.TokenOut)
def login(payload: schemas.LoginIn, db: Session = Depends(get_session)):
    """Authenticate and return a bearer token valid for `JWT_EXPIRE_HOURS`.

    The token carries `id`, `email` and `role` claims.
    """
    token = services.AuthService(db).authenticate(payload.email, payload.password)
    return schemas.TokenOut(access_token=token)


@app.get('/tasks')
def list_tasks(
    category: Optional[int] = None,
    difficulty: Optional[models.Difficulty] = None,
    limit: int = Query(10, ge=1, le=100),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
):
    """List tasks filtered by category and difficulty. Inactive tasks are visible to admins only."""
    tasks = services.TaskService(db).list(category, difficulty, limit=limit, page=page, include_inactive=principal.is_admin)
    return [_task_out(t, principal) for t in tasks]


@app.post('/tasks/create', status_code=201, response_model=schemas.TaskAdminOut)
def create_task(payload: schemas.TaskIn, db: Session = Depends(get_session), principal: Principal = Depends(require_admin)):
    return services.TaskService(db).create(payload.model_dump(), principal.id)


@app.get('/tasks/{task_id}')
def get_task(task_id: int, db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    task = services.TaskService(db).get(task_id, include_inactive=principal.is_admin)
    return _task_out(task, principal)


@app.patch('/tasks/{task_id}', response_model=schemas.TaskAdminOut)
def update_task(
    task_id: int,
    payload: schemas.TaskUpdateIn,
    db: Session = Depends(get_session),
    task: models.Task = Depends(task_owner_or_admin),
):
    """Update a task; allowed for its author or an admin."""
    data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not data:
        raise ValidationError("no fields to update")
    return services.TaskService(db).update(task, data)


@app.delete('/tasks/{task_id}', status_code=204)
def delete_task(task_id: int, db: Session = Depends(get_session), principal: Principal = Depends(require_admin)):
    """Hard-delete a task. Existing solutions for it are kept."""
    services.TaskService(db).delete(task_id)
    return Response(status_code=204)


@app.post('/tasks/{task_id}/solve')
def solve_task(
    task_id: int,
    payload: schemas.SolutionIn,
    db: Session = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
):
    """Submit an answer for a task.

    Returns `is_correct` and `solution_id`; `correct_answer` is included
    only when the submitted answer was wrong.
    """
    return services.SubmissionService(db).submit(principal.id, task_id, payload.answer)


@app.get('/categories', response_model=List[schemas.CategoryOut])
def list_categories(db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    return services.CategoryService(db).list()


@app.post('/categories/create', status_code=201, response_model=schemas.CategoryOut)
def create_category(payload: schemas.CategoryIn, db: Session = Depends(get_session), principal: Principal = Depends(require_admin)):
    return services.CategoryService(db).create(payload.name, payload.description, payload.icon)


@app.get('/categories/{category_id}', response_model=schemas.CategoryOut)
def get_category(category_id: int, db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    return services.CategoryService(db).get(category_id)


def category_changes(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(get_current_principal),
) -> Dict[str, Any]:
    """Authenticate, then reject fields outside the allowlist for any caller."""
    services.check_category_fields(payload)
    return payload


@app.patch('/categories/{category_id}', response_model=schemas.CategoryOut)
def update_category(
    category_id: int,
    changes: Dict[str, Any] = Depends(category_changes),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_session),
):
    """Update a category. Only `name`, `description` and `icon` may be sent.

    The allowlist is checked before the admin role, so a disallowed field
    is reported by name even to non-admins.
    """
    return services.CategoryService(db).update(category_id, changes)


@app.delete('/categories/{category_id}', status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_session), principal: Principal = Depends(require_admin)):
    services.CategoryService(db).delete(category_id)
    return Response(status_code=204)


@app.get('/users', response_model=List[schemas.UserOut])
def list_users(
    limit: int = Query(10, ge=1, le=100),
    page: int = Query(1, ge=1),
    role: Optional[models.Role] = None,
    db: Session = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    """List users, newest first (admin only)."""
    return services.UserService(db).list(limit=limit, page=page, role=role)


@app.get('/users/me', response_model=schemas.UserOut)
def get_me(db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    return services.UserService(db).get(principal.id)


@app.put('/users/me/update', response_model=schemas.UserOut)
def update_me(payload: schemas.ProfileUpdateIn, db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    """Update the caller's profile. `email` and `role` are ignored for non-admins."""
    data = payload.model_dump(exclude_unset=True)
    return services.UserService(db).update_profile(principal.id, data, is_admin=principal.is_admin)


@app.post('/users/me/change-password', response_model=schemas.MessageOut)
def change_password(payload: schemas.PasswordChangeIn, db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    services.UserService(db).change_password(principal.id, payload.current_password, payload.new_password)
    return {"message": "password changed"}


@app.get('/users/me/stats', response_model=schemas.StatsOut)
def my_stats(db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    """Return attempt counters and the success rate for the caller."""
    return services.StatisticsService(db).get_stats(principal.id)


@app.get('/users/me/solved-tasks', response_model=List[schemas.SolvedTaskOut])
def my_solved_tasks(
    limit: int = Query(10, ge=1, le=100),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
):
    return services.StatisticsService(db).list_solved_tasks(principal.id, limit=limit, page=page)


@app.delete('/users/me/solved-tasks/{task_id}', response_model=schemas.MessageOut)
def remove_solved_task(task_id: int, db: Session = Depends(get_session), principal: Principal = Depends(get_current_principal)):
    """Remove one entry from the caller's solved-task history."""
    services.StatisticsService(db).remove_solved_task(principal.id, task_id)
    return {"message": "task removed from solved history"}


@app.get('/users/{user_id}', response_model=schemas.UserOut)
def get_user(user_id: int, user: models.User = Depends(user_owner_or_admin)):
    """Read a profile; allowed for the user themselves or an admin."""
    return user


@app.delete('/users/{user_id}', status_code=204)
def delete_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(user_owner_or_admin)):
    """Delete an account and all of its solutions in one transaction."""
    services.UserService(db).delete(user.id)
    return Response(status_code=204)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
