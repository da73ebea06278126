import importlib
import io
import json

import pytest

import record_store
from record_store import ALL_REGISTRATIONS_KEY, MARKS_KEY, STUDENTS_KEY
from registration import STATUS_PENDING, submit_registration
from school_records import (
    ROLE_ADMIN, ROLE_TEACHER, MarkEntry, SetScore, assign_teacher, create_user, ensure_seeded,
    get_marks, get_promotion_decision, get_student, save_marks_batch,
)

YEAR = "2024-2025"


@pytest.fixture
def app_module(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "x" * 40)
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("SUPER_ADMIN_USERNAME", "superadmin")
    monkeypatch.setenv("SUPER_ADMIN_PASSWORD", "supersecurepassword")
    monkeypatch.setenv("RUN_STARTUP_DDL", "0")
    monkeypatch.setenv("RUN_STARTUP_BOOTSTRAP", "0")
    monkeypatch.setenv("DEFAULT_SCHOOL_ID", "default")
    monkeypatch.setenv("PROMOTION_MODE", "automatic")
    monkeypatch.delenv("SEED_DEMO_DATA", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    record_store.reset_memory_stores()

    import nursery_report

    mod = importlib.reload(nursery_report)
    mod.app.config["TESTING"] = True
    mod.app.config["WTF_CSRF_ENABLED"] = False
    yield mod
    record_store.reset_memory_stores()


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def school(app_module):
    """Default school with one teacher on Nursery 2 and two students."""
    store = app_module.store_for("default")
    ensure_seeded(store)
    create_user(store, "admin1", "School Admin", "adminpass", role=ROLE_ADMIN)
    create_user(store, "tina", "Teacher Tina", "teachpass", role=ROLE_TEACHER)
    assign_teacher(store, "nursery-2", "tina")
    store.set(STUDENTS_KEY, [
        {"id": "s1", "name": "Kevin Mugisha", "className": "Nursery 2"},
        {"id": "s2", "name": "Divine Teta", "className": "Nursery 2"},
        {"id": "s3", "name": "Eric Ntwari", "className": "Nursery 3"},
    ])
    return store


def login_as(client, role, user_id, school_id="default"):
    with client.session_transaction() as sess:
        sess["role"] = role
        sess["user_id"] = user_id
        sess["school_id"] = school_id


def registration_data(**overrides):
    data = {
        "schoolName": "Little Stars",
        "district": "Gasabo",
        "sector": "Remera",
        "phone": "0788000000",
        "address": "KG 11 Ave",
        "adminName": "Mrs. Keza",
        "adminEmail": "keza@littlestars.rw",
        "adminPassword": "secret123",
        "plan": "year",
        "paymentScreenshot": "data:image/png;base64,AAAA",
    }
    data.update(overrides)
    return data


def test_startup_requires_long_secret_key(monkeypatch, app_module):
    monkeypatch.setenv("SECRET_KEY", "short")
    monkeypatch.delenv("ALLOW_INSECURE_DEFAULTS", raising=False)
    with pytest.raises(RuntimeError, match="too short"):
        importlib.reload(app_module)


def test_startup_rejects_unknown_promotion_mode(monkeypatch, app_module):
    monkeypatch.setenv("PROMOTION_MODE", "jury")
    with pytest.raises(RuntimeError, match="PROMOTION_MODE"):
        importlib.reload(app_module)


def test_home_redirects_anonymous_user_to_login(client):
    resp = client.get("/")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")


def test_login_page_renders(client):
    resp = client.get("/login")
    assert resp.status_code == 200
    assert b"Sign in" in resp.data


def test_super_admin_login_uses_environment_credentials(client):
    resp = client.post("/login", data={"username": "superadmin", "password": "supersecurepassword"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/super-admin")
    with client.session_transaction() as sess:
        assert sess["role"] == "SUPER_ADMIN"


def test_staff_login_sets_session(client, school):
    resp = client.post("/login", data={"username": "tina", "password": "teachpass"})
    assert resp.status_code == 302
    with client.session_transaction() as sess:
        assert sess["role"] == ROLE_TEACHER
        assert sess["user_id"] == "tina"
        assert sess["school_id"] == "default"


def test_login_with_wrong_password_is_rejected(client, school):
    resp = client.post("/login", data={"username": "tina", "password": "nope"})
    assert resp.status_code == 200
    assert b"Invalid Credentials" in resp.data
    with client.session_transaction() as sess:
        assert "role" not in sess


def test_register_route_queues_pending_registration(client, app_module):
    data = {
        "school_name": "Little Stars",
        "district": "Gasabo",
        "sector": "Remera",
        "phone": "0788000000",
        "address": "KG 11 Ave",
        "admin_name": "Mrs. Keza",
        "admin_email": "keza@littlestars.rw",
        "admin_password": "secret123",
        "plan": "term",
        "payment_screenshot": (io.BytesIO(b"\x89PNG fake"), "payment.png"),
    }
    resp = client.post("/register", data=data, content_type="multipart/form-data")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/register/status")

    registrations = app_module.platform_store().get_list(ALL_REGISTRATIONS_KEY)
    assert len(registrations) == 1
    assert registrations[0]["paymentScreenshot"].startswith("data:image/png;base64,")

    status = client.get("/register/status", query_string={"format": "json"}).get_json()
    assert status["status"] == STATUS_PENDING
    assert status["pollSeconds"] == 5

    page = client.get("/register/status")
    assert page.status_code == 200
    assert b"Your School ID is" in page.data
    assert b"We are verifying your payment" in page.data
    assert app_module.RECENT_REGISTRATION_EVENTS[0]["event"] == "submitted"


def test_registration_status_without_registration_redirects_to_register(client):
    resp = client.get("/register/status")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/register")
    assert client.get("/register/status", query_string={"format": "json"}).status_code == 404


def test_register_route_requires_payment_screenshot(client, app_module):
    data = {
        "school_name": "Little Stars", "district": "Gasabo", "sector": "Remera", "phone": "0788",
        "address": "KG 11 Ave", "admin_name": "Mrs. Keza", "admin_email": "keza@littlestars.rw",
        "admin_password": "secret123", "plan": "term",
    }
    resp = client.post("/register", data=data)
    assert resp.status_code == 200
    assert app_module.platform_store().get_list(ALL_REGISTRATIONS_KEY) == []


def test_pending_school_cannot_log_in_until_approved(client, app_module):
    reg = submit_registration(app_module.platform_store(), app_module.store_for, registration_data())

    resp = client.post("/login", data={"school_id": reg["id"], "username": "keza@littlestars.rw", "password": "secret123"})
    assert resp.status_code == 200
    assert b"verifying your payment" in resp.data

    login_as(client, "SUPER_ADMIN", "superadmin", school_id=None)
    resp = client.post(f"/super-admin/registrations/{reg['id']}/approve")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/super-admin")
    client.get("/logout")

    resp = client.post("/login", data={"school_id": reg["id"], "username": "keza@littlestars.rw", "password": "secret123"})
    assert resp.status_code == 302
    with client.session_transaction() as sess:
        assert sess["role"] == ROLE_ADMIN
        assert sess["school_id"] == reg["id"]


def test_super_admin_feed_and_terminal_review(client, app_module):
    reg = submit_registration(app_module.platform_store(), app_module.store_for, registration_data())
    login_as(client, "SUPER_ADMIN", "superadmin", school_id=None)

    client.post(f"/super-admin/registrations/{reg['id']}/reject")
    client.post(f"/super-admin/registrations/{reg['id']}/approve")

    feed = client.get("/super-admin", query_string={"format": "json"}).get_json()
    assert feed["registrations"][0]["status"] == "rejected"
    assert feed["pendingCount"] == 0
    assert feed["approvedRevenue"] == 0
    assert client.get("/super-admin/registrations?status=approved").get_json()["registrations"] == []


def test_super_admin_dashboard_renders_review_forms_and_flash(client, app_module):
    reg = submit_registration(app_module.platform_store(), app_module.store_for, registration_data())
    login_as(client, "SUPER_ADMIN", "superadmin", school_id=None)

    page = client.get("/super-admin")
    assert page.status_code == 200
    assert b"Little Stars" in page.data
    assert f'action="/super-admin/registrations/{reg["id"]}/approve"'.encode() in page.data
    assert b'name="csrf_token"' in page.data

    resp = client.post(f"/super-admin/registrations/{reg['id']}/approve", follow_redirects=True)
    assert b"Activation Successful! Little Stars is now live." in resp.data
    assert b"90,000 FRW" in resp.data

    feed = client.get("/super-admin/registrations").get_json()
    assert feed["recentEvents"][0]["event"] == "approved"
    assert feed["recentEvents"][0]["id"] == reg["id"]


def test_approved_admin_logs_in_with_mixed_case_email(client, app_module):
    reg = submit_registration(app_module.platform_store(), app_module.store_for,
                              registration_data(adminEmail="Keza@LittleStars.rw"))
    login_as(client, "SUPER_ADMIN", "superadmin", school_id=None)
    client.post(f"/super-admin/registrations/{reg['id']}/approve")
    client.get("/logout")

    resp = client.post("/login", data={"school_id": reg["id"], "username": "Keza@LittleStars.rw", "password": "secret123"})
    assert resp.status_code == 302
    with client.session_transaction() as sess:
        assert sess["role"] == ROLE_ADMIN
        assert sess["user_id"] == "keza@littlestars.rw"


def test_super_admin_routes_require_role(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.get("/super-admin")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")


def test_admin_routes_require_admin_role(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    resp = client.post("/admin/students", data={"name": "New Kid", "class_id": "nursery-2"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")
    assert len(school.get_list(STUDENTS_KEY)) == 3


def test_admin_dashboard_lists_school_data(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    data = client.get("/admin", query_string={"class": "Nursery 2", "format": "json"}).get_json()
    assert [s["name"] for s in data["students"]] == ["Divine Teta", "Kevin Mugisha"]
    nursery2 = next(c for c in data["classes"] if c["id"] == "nursery-2")
    assert nursery2["teacher"]["username"] == "tina"
    assert nursery2["studentCount"] == 2
    assert all("password" not in u for u in data["users"])


def test_admin_creates_and_deletes_student(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.post("/admin/students", data={"name": "New Kid", "class_id": "nursery-3"})
    assert resp.status_code == 302
    created = next(s for s in school.get_list(STUDENTS_KEY) if s["name"] == "New Kid")
    assert created["className"] == "Nursery 3"

    save_marks_batch(school, [MarkEntry(created["id"], "oral", YEAR, "Term 1", SetScore(80))])
    client.post(f"/admin/students/{created['id']}/delete")
    assert get_student(school, created["id"]) is None
    assert get_marks(school) == []


def test_admin_rename_class_moves_students(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    client.post("/admin/classes/nursery-2/rename", data={"name": "Sunflowers"})
    assert get_student(school, "s1")["className"] == "Sunflowers"


def test_admin_creates_staff_with_form(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    client.post("/admin/users", data={"username": "umwari", "name": "Umwari", "password": "pass1234", "role": ROLE_TEACHER})
    resp = client.post("/login", data={"username": "umwari", "password": "pass1234"})
    assert resp.status_code == 302


def test_admin_backup_download(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.get("/admin/backup")
    assert resp.status_code == 200
    assert resp.mimetype == "application/json"
    assert "attachment; filename=nursery_backup_" in resp.headers["Content-Disposition"]
    assert len(json.loads(resp.data)["students"]) == 3


def test_admin_restore_invalid_file_keeps_data(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    before = school.get(STUDENTS_KEY)
    resp = client.post(
        "/admin/restore",
        data={"backup_file": (io.BytesIO(b'{"users": []}'), "backup.json")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 302
    assert school.get(STUDENTS_KEY) == before


def test_admin_records_manual_decision(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    client.post("/admin/decisions", data={"student_id": "s1", "year": YEAR, "decision": "Promoted elsewhere"})
    assert get_promotion_decision(school, "s1", YEAR) == "Promoted elsewhere"


def test_teacher_saves_class_marks_and_blank_clears(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    form = {"class_name": "Nursery 2", "subject_id": "numeracy", "year": YEAR, "term": "Term 1",
            "score_s1": "85", "score_s2": "72"}
    resp = client.post("/teacher/marks", data=form)
    assert resp.status_code == 302
    assert {m["studentId"]: m["score"] for m in get_marks(school)} == {"s1": 85, "s2": 72}

    form.update({"score_s1": "", "score_s2": "-1"})
    client.post("/teacher/marks", data=form)
    assert get_marks(school) == []


def test_teacher_marks_invalid_score_writes_nothing(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    client.post("/teacher/marks", data={"class_name": "Nursery 2", "subject_id": "numeracy", "year": YEAR,
                                        "term": "Term 1", "score_s1": "85", "score_s2": "150"})
    assert school.get(MARKS_KEY) == []


def test_teacher_cannot_save_marks_for_unassigned_class(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    resp = client.post("/teacher/marks", data={"class_name": "Nursery 3", "subject_id": "numeracy", "year": YEAR,
                                               "term": "Term 1", "score_s3": "90"})
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/teacher")
    assert get_marks(school) == []


def test_teacher_dashboard_shows_existing_scores(client, school):
    save_marks_batch(school, [MarkEntry("s1", "oral", YEAR, "Term 2", SetScore(95))])
    login_as(client, ROLE_TEACHER, "tina")
    query = {"subject": "oral", "year": YEAR, "term": "Term 2", "format": "json"}
    data = client.get("/teacher", query_string=query).get_json()
    assert data["selectedClass"] == "Nursery 2"
    scores = {s["id"]: s["score"] for s in data["students"]}
    assert scores == {"s1": 95, "s2": None}


def test_report_json_for_admin(client, school):
    save_marks_batch(school, [
        MarkEntry("s1", "numeracy", YEAR, "Term 1", SetScore(60)),
        MarkEntry("s2", "numeracy", YEAR, "Term 1", SetScore(90)),
    ])
    login_as(client, ROLE_ADMIN, "admin1")
    data = client.get("/reports/s1", query_string={"year": YEAR, "term": "Term 1", "format": "json"}).get_json()
    assert data["position"] == 2
    assert data["totalStudents"] == 2
    assert data["student"]["name"] == "Kevin Mugisha"
    assert "annualStats" not in data


def test_report_html_renders_final_term(client, school):
    save_marks_batch(school, [MarkEntry("s1", "numeracy", YEAR, "Term 3", SetScore(75))])
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.get("/reports/s1", query_string={"year": YEAR, "term": "Term 3"})
    assert resp.status_code == 200
    assert b"Kevin Mugisha" in resp.data
    assert b"Promoted" in resp.data
    assert b"1st out of 2" in resp.data


def test_teacher_cannot_view_report_outside_their_classes(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    resp = client.get("/reports/s3?format=json")
    assert resp.status_code == 404


def test_report_summary_uses_summary_service(client, school, app_module, monkeypatch):
    called = {}

    def fake_summary(student, marks, term):
        called["student"] = student["id"]
        called["term"] = term
        return "Kevin shines in numeracy."

    monkeypatch.setattr(app_module, "generate_student_summary", fake_summary)
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.post("/reports/s1/summary", data={"year": YEAR, "term": "Term 2"})
    assert resp.get_json() == {"summary": "Kevin shines in numeracy."}
    assert called == {"student": "s1", "term": "Term 2"}


def test_report_summary_without_api_key_returns_placeholder(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.post("/reports/s1/summary", data={"year": YEAR, "term": "Term 1"})
    assert resp.get_json()["summary"] == "AI Summary unavailable."


def test_profile_password_mismatch_is_rejected(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    client.post("/profile", data={"password": "newpass1", "confirm_password": "other"})
    resp = client.post("/login", data={"username": "tina", "password": "teachpass"})
    assert resp.status_code == 302


def test_profile_rename_updates_session_and_classes(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    client.post("/profile", data={"username": "tina.k", "name": "Tina K"})
    with client.session_transaction() as sess:
        assert sess["user_id"] == "tina.k"
    data = client.get("/teacher", query_string={"format": "json"}).get_json()
    assert [c["id"] for c in data["classes"]] == ["nursery-2"]


def test_admin_dashboard_page_shows_flash_after_class_delete(client, school):
    login_as(client, ROLE_ADMIN, "admin1")
    resp = client.post("/admin/classes/nursery-3/delete", follow_redirects=True)
    assert resp.status_code == 200
    assert b"Warning: 1 student(s) still reference it" in resp.data
    assert b'action="/admin/students"' in resp.data
    assert b'name="csrf_token"' in resp.data
    assert b"Teacher Tina" in resp.data


def test_teacher_dashboard_page_has_score_form(client, school):
    save_marks_batch(school, [MarkEntry("s1", "oral", YEAR, "Term 2", SetScore(95))])
    login_as(client, ROLE_TEACHER, "tina")
    resp = client.get("/teacher", query_string={"subject": "oral", "year": YEAR, "term": "Term 2"})
    assert resp.status_code == 200
    assert b'action="/teacher/marks"' in resp.data
    assert b'name="csrf_token"' in resp.data
    assert b'name="score_s1"' in resp.data
    assert b'value="95"' in resp.data
    assert b'name="score_s3"' not in resp.data


def test_teacher_invalid_score_flash_is_shown(client, school):
    login_as(client, ROLE_TEACHER, "tina")
    form = {"class_name": "Nursery 2", "subject_id": "numeracy", "year": YEAR, "term": "Term 1",
            "score_s1": "85", "score_s2": "50.7"}
    resp = client.post("/teacher/marks", data=form, follow_redirects=True)
    assert b"Divine Teta: Invalid score" in resp.data
    assert get_marks(school) == []


def test_report_page_shows_generated_summary_on_request(client, school, app_module, monkeypatch):
    calls = []

    def fake_summary(student, marks, term):
        calls.append(term)
        return "Kevin is a cheerful learner."

    monkeypatch.setattr(app_module, "generate_student_summary", fake_summary)
    login_as(client, ROLE_ADMIN, "admin1")

    plain = client.get("/reports/s1", query_string={"year": YEAR, "term": "Term 1"})
    assert b"Kevin is a cheerful learner." not in plain.data
    assert calls == []

    resp = client.get("/reports/s1", query_string={"year": YEAR, "term": "Term 1", "summary": "1"})
    assert b"Kevin is a cheerful learner." in resp.data
    data = client.get("/reports/s1", query_string={"year": YEAR, "term": "Term 1", "summary": "1", "format": "json"}).get_json()
    assert data["summary"] == "Kevin is a cheerful learner."
    assert calls == ["Term 1", "Term 1"]
