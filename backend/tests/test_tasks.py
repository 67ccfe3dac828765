import pytest
from sqlmodel import Session

from medtrainer.database import engine
from medtrainer.errors import ValidationError
from medtrainer.models import Task
from medtrainer.services import TaskService


def test_admin_creates_task_and_is_recorded_as_author(client, admin, task):
    assert task["author_id"] == admin.id
    assert task["correct_answer"] == "Y"
    assert task["options"] == ["X", "Y", "Z"]
    assert task["is_active"] is True


def test_practitioners_do_not_see_the_correct_answer(client, user, task):
    one = client.get(f"/tasks/{task['id']}", headers=user.headers)
    assert one.status_code == 200
    assert "correct_answer" not in one.json()
    listed = client.get("/tasks", params={"category": task["category_id"]}, headers=user.headers)
    assert listed.status_code == 200
    assert all("correct_answer" not in t for t in listed.json())


def test_options_must_include_correct_answer(client, admin, category):
    r = client.post(
        "/tasks/create",
        json={
            "title": "Broken",
            "description": "No valid answer",
            "category_id": category["id"],
            "difficulty": "easy",
            "options": ["A", "B"],
            "correct_answer": "C",
            "explanation": "None",
        },
        headers=admin.headers,
    )
    assert r.status_code == 400
    assert "options must include the correct answer" in r.json()["message"]


def test_create_task_in_missing_category(client, admin):
    r = client.post(
        "/tasks/create",
        json={
            "title": "Orphan",
            "description": "Where does it go?",
            "category_id": 999999,
            "difficulty": "hard",
            "options": ["A", "B"],
            "correct_answer": "A",
            "explanation": "Nowhere",
        },
        headers=admin.headers,
    )
    assert r.status_code == 400
    assert r.json()["message"] == "category does not exist"


def test_duplicate_task_conflicts(client, admin, task):
    payload = {k: task[k] for k in ("title", "description", "category_id", "difficulty", "options",
                                    "correct_answer", "explanation")}
    r = client.post("/tasks/create", json=payload, headers=admin.headers)
    assert r.status_code == 409
    assert r.json()["message"] == "a task with these parameters already exists"


def test_list_filters_by_category_and_difficulty(client, user, make_task):
    easy = make_task(difficulty="easy")
    hard = make_task(difficulty="hard")
    r = client.get("/tasks", params={"category": easy["category_id"], "difficulty": "hard"}, headers=user.headers)
    ids = [t["id"] for t in r.json()]
    assert hard["id"] in ids
    assert easy["id"] not in ids


def test_list_paginates(client, user, make_task):
    created = [make_task()["id"] for _ in range(3)]
    category_id = client.get(f"/tasks/{created[0]}", headers=user.headers).json()["category_id"]
    first = client.get("/tasks", params={"category": category_id, "limit": 2, "page": 1}, headers=user.headers).json()
    second = client.get("/tasks", params={"category": category_id, "limit": 2, "page": 2}, headers=user.headers).json()
    assert [t["id"] for t in first] == created[:2]
    assert [t["id"] for t in second] == created[2:]


def test_list_rejects_out_of_range_limit(client, user):
    r = client.get("/tasks", params={"limit": 0}, headers=user.headers)
    assert r.status_code == 400
    assert r.json()["message"].startswith("limit:")


def test_inactive_tasks_are_hidden_from_practitioners(client, user, admin, make_task):
    hidden = make_task(is_active=False)
    assert client.get(f"/tasks/{hidden['id']}", headers=user.headers).status_code == 404
    listed = client.get("/tasks", params={"category": hidden["category_id"]}, headers=user.headers).json()
    assert hidden["id"] not in [t["id"] for t in listed]
    assert client.get(f"/tasks/{hidden['id']}", headers=admin.headers).status_code == 200


def test_update_task_revalidates_options(client, admin, task):
    r = client.patch(f"/tasks/{task['id']}", json={"options": ["A", "B"]}, headers=admin.headers)
    assert r.status_code == 400
    assert r.json()["message"] == "options must include the correct answer"

    r = client.patch(
        f"/tasks/{task['id']}",
        json={"options": ["A", "B"], "correct_answer": "B"},
        headers=admin.headers,
    )
    assert r.status_code == 200
    assert r.json()["correct_answer"] == "B"
    assert r.json()["updated_at"] >= task["updated_at"]


def test_update_task_rejects_unknown_and_empty_payloads(client, admin, task):
    r = client.patch(f"/tasks/{task['id']}", json={"author_id": 1}, headers=admin.headers)
    assert r.status_code == 400
    r = client.patch(f"/tasks/{task['id']}", json={}, headers=admin.headers)
    assert r.status_code == 400
    assert r.json()["message"] == "no fields to update"


def test_delete_task_keeps_existing_solutions(client, admin, user, task):
    client.post(f"/tasks/{task['id']}/solve", json={"answer": "Y"}, headers=user.headers)
    assert client.delete(f"/tasks/{task['id']}", headers=user.headers).status_code == 403
    assert client.delete(f"/tasks/{task['id']}", headers=admin.headers).status_code == 204
    with Session(engine) as session:
        assert session.get(Task, task["id"]) is None
    stats = client.get("/users/me/stats", headers=user.headers).json()
    assert stats["solved_tasks"] == 1
    assert client.delete(f"/tasks/{task['id']}", headers=admin.headers).status_code == 404


def test_duplicate_options_are_rejected(client, admin, category, task):
    r = client.post(
        "/tasks/create",
        json={
            "title": "Repeated options",
            "description": "Only one real choice",
            "category_id": category["id"],
            "difficulty": "easy",
            "options": ["Y", "Y"],
            "correct_answer": "Y",
            "explanation": "None",
        },
        headers=admin.headers,
    )
    assert r.status_code == 400
    assert "options must be unique" in r.json()["message"]

    r = client.patch(f"/tasks/{task['id']}", json={"options": ["Y", "X", "Y"]}, headers=admin.headers)
    assert r.status_code == 400
    assert "options must be unique" in r.json()["message"]
    assert client.get(f"/tasks/{task['id']}", headers=admin.headers).json()["options"] == ["X", "Y", "Z"]


def test_service_rejects_duplicate_options(admin, category):
    with Session(engine) as session:
        with pytest.raises(ValidationError):
            TaskService(session).create(
                {
                    "title": "Direct",
                    "description": "Bypasses the request schema",
                    "category_id": category["id"],
                    "difficulty": "hard",
                    "options": ["A", "A", "B"],
                    "correct_answer": "A",
                    "explanation": "None",
                },
                admin.id,
            )
