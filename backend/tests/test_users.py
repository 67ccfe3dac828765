from sqlmodel import Session, select

from conftest import PASSWORD, unique_email
from medtrainer.database import engine
from medtrainer.models import Solution, SolvedTask, Task, User


def test_profile_update_ignores_identity_fields_for_users(client, user):
    r = client.put(
        "/users/me/update",
        json={"name": "Dr Ivanova", "experience_years": 12, "role": "admin", "email": unique_email()},
        headers=user.headers,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["name"] == "Dr Ivanova"
    assert body["experience_years"] == 12
    assert body["role"] == "user"
    assert body["email"] == user.email


def test_profile_update_validates_fields(client, user):
    r = client.put("/users/me/update", json={"name": "A", "experience_years": 90}, headers=user.headers)
    assert r.status_code == 400
    assert "name:" in r.json()["message"]
    assert "experience_years:" in r.json()["message"]


def test_admin_can_change_own_email(client, admin):
    new_email = unique_email("admin")
    r = client.put("/users/me/update", json={"email": new_email}, headers=admin.headers)
    assert r.status_code == 200
    assert r.json()["email"] == new_email


def test_admin_email_change_to_taken_address_conflicts(client, admin, user):
    r = client.put("/users/me/update", json={"email": user.email}, headers=admin.headers)
    assert r.status_code == 409


def test_change_password(client, user):
    r = client.post(
        "/users/me/change-password",
        json={"current_password": PASSWORD, "new_password": "N3wSecretPass"},
        headers=user.headers,
    )
    assert r.status_code == 200
    assert r.json() == {"message": "password changed"}
    assert client.post("/auth/login", json={"email": user.email, "password": PASSWORD}).status_code == 401
    assert client.post("/auth/login", json={"email": user.email, "password": "N3wSecretPass"}).status_code == 200


def test_change_password_failures(client, user):
    wrong = client.post(
        "/users/me/change-password",
        json={"current_password": "Wr0ngPassword", "new_password": "N3wSecretPass"},
        headers=user.headers,
    )
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "current password is incorrect"

    same = client.post(
        "/users/me/change-password",
        json={"current_password": PASSWORD, "new_password": PASSWORD},
        headers=user.headers,
    )
    assert same.status_code == 400
    assert same.json()["message"] == "new password must differ from the current one"

    weak = client.post(
        "/users/me/change-password",
        json={"current_password": PASSWORD, "new_password": "short"},
        headers=user.headers,
    )
    assert weak.status_code == 400


def test_delete_account_removes_solutions_and_history(client, user, admin, task):
    client.post(f"/tasks/{task['id']}/solve", json={"answer": "X"}, headers=user.headers)
    r = client.delete(f"/users/{user.id}", headers=user.headers)
    assert r.status_code == 204
    with Session(engine) as session:
        assert session.get(User, user.id) is None
        assert session.exec(select(Solution).where(Solution.user_id == user.id)).all() == []
        assert session.exec(select(SolvedTask).where(SolvedTask.user_id == user.id)).all() == []
        assert session.get(Task, task["id"]) is not None
    assert client.get("/users/me", headers=user.headers).status_code == 401


def test_deleting_another_account_is_forbidden(client, make_user):
    a, b = make_user(), make_user()
    r = client.delete(f"/users/{a.id}", headers=b.headers)
    assert r.status_code == 403
    assert client.get("/users/me", headers=a.headers).status_code == 200


def test_admin_deletes_any_account_but_authored_tasks_remain(client, make_admin, admin, task):
    author = make_admin()
    created = client.post(
        "/tasks/create",
        json={
            "title": "Left behind",
            "description": "Survives its author",
            "category_id": task["category_id"],
            "difficulty": "medium",
            "options": ["A", "B"],
            "correct_answer": "A",
            "explanation": "Authored tasks are kept",
        },
        headers=author.headers,
    ).json()
    assert client.delete(f"/users/{author.id}", headers=admin.headers).status_code == 204
    r = client.get(f"/tasks/{created['id']}", headers=admin.headers)
    assert r.status_code == 200
    assert r.json()["author_id"] == author.id


def test_admin_lists_users_filtered_by_role(client, admin, make_user):
    newest = make_user()
    everyone = client.get("/users", params={"limit": 100}, headers=admin.headers).json()
    assert everyone[0]["id"] == newest.id
    admins = client.get("/users", params={"role": "admin", "limit": 100}, headers=admin.headers).json()
    assert admins
    assert all(u["role"] == "admin" for u in admins)
    assert admin.id in [u["id"] for u in admins]


def test_unknown_route_message(client, user):
    r = client.get("/no/such/route", headers=user.headers)
    assert r.status_code == 404
    assert r.json() == {"status": "fail", "message": "Route not found: /no/such/route"}
