"""HTTP surface: envelopes, auth, pagination and the main flows end to end."""
import pytest

from core.middleware import limiter
from models.user import Role
from tests.conftest import auth_headers, create_user


class TestAuth:
    @pytest.mark.asyncio
    async def test_register_login_me(self, client):
        registered = await client.post("/api/auth/register", json={
            "email": "ana@ventylab.com", "password": "pulmon123", "name": "Ana",
        })
        assert registered.status_code == 201
        body = registered.json()
        assert body["success"] is True
        assert body["data"]["role"] == Role.STUDENT.value
        assert "timestamp" in body

        token = await client.post("/api/auth/token", data={
            "username": "ana@ventylab.com", "password": "pulmon123",
        })
        assert token.status_code == 200
        access = token.json()["access_token"]

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {access}"})
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "ana@ventylab.com"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client):
        payload = {"email": "ana@ventylab.com", "password": "pulmon123"}
        await client.post("/api/auth/register", json=payload)

        again = await client.post("/api/auth/register", json=payload)

        assert again.status_code == 409
        assert again.json()["error"]["code"] == "EMAIL_TAKEN"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client):
        await client.post("/api/auth/register", json={"email": "ana@ventylab.com", "password": "pulmon123"})

        response = await client.post("/api/auth/token", data={
            "username": "ana@ventylab.com", "password": "incorrecta",
        })

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_missing_token_uses_error_envelope(self, client):
        response = await client.get("/api/progress/overview")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code_num"] == 3004
        assert body["error"]["category"] == "authentication"
        assert body["error"]["correlation_id"]

    @pytest.mark.asyncio
    async def test_role_checks(self, client, db_session):
        student = await create_user(db_session, Role.STUDENT)
        teacher = await create_user(db_session, Role.TEACHER)
        payload = {"title": "Fundamentos", "order_index": 0}

        denied = await client.post("/api/levels", json=payload, headers=auth_headers(student))
        created = await client.post("/api/levels", json=payload, headers=auth_headers(teacher))

        assert denied.status_code == 403
        assert denied.json()["error"]["category"] == "authorization"
        assert created.status_code == 201
        assert created.json()["data"]["title"] == "Fundamentos"

    @pytest.mark.asyncio
    async def test_request_validation_lists_fields(self, client, db_session):
        teacher = await create_user(db_session, Role.TEACHER)

        response = await client.post("/api/levels", json={"title": ""}, headers=auth_headers(teacher))

        assert response.status_code == 400
        fields = {f["field"] for f in response.json()["error"]["details"]["fields"]}
        assert {"title", "order_index"} <= fields


class TestHttpRateLimit:
    @pytest.fixture
    def limits_on(self):
        limiter.reset()
        limiter.enabled = True
        yield limiter
        limiter.enabled = False
        limiter.reset()

    @pytest.mark.asyncio
    async def test_login_attempts_are_limited(self, client, limits_on):
        form = {"username": "nadie@ventylab.com", "password": "incorrecta"}
        statuses = [(await client.post("/api/auth/token", data=form)).status_code for _ in range(3)]

        blocked = await client.post("/api/auth/token", data=form)

        assert statuses == [401, 401, 401]
        assert blocked.status_code == 429
        assert blocked.json()["success"] is False
        assert blocked.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(blocked.headers["Retry-After"]) == 60

    @pytest.mark.asyncio
    async def test_health_is_exempt(self, client, limits_on):
        for _ in range(5):
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["status"] == "healthy"


class TestCatalog:
    @pytest.mark.asyncio
    async def test_module_pagination_block(self, client, curriculum, student):
        response = await client.get("/api/modules", params={"page": 1, "limit": 2}, headers=auth_headers(student))

        body = response.json()
        assert response.status_code == 200
        assert len(body["data"]) == 2
        assert body["pagination"] == {
            "page": 1, "limit": 2, "total": 3, "totalPages": 2, "hasNext": True, "hasPrev": False,
        }

    @pytest.mark.asyncio
    async def test_oversized_limit_is_capped(self, client, curriculum, student):
        response = await client.get("/api/modules", params={"limit": 500}, headers=auth_headers(student))

        assert response.json()["pagination"]["limit"] == 100

    @pytest.mark.asyncio
    async def test_unknown_module_is_404(self, client, student):
        response = await client.get(
            "/api/modules/00000000-0000-0000-0000-000000000000", headers=auth_headers(student)
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "MODULE_NOT_FOUND"


class TestProgressFlow:
    @pytest.mark.asyncio
    async def test_step_update_resume_and_complete(self, client, curriculum, student):
        headers = auth_headers(student)
        module = curriculum.modules[0]
        first, second = curriculum.lessons[module.id]

        saved = await client.post("/api/progress/step/update", headers=headers, json={
            "module_id": str(module.id), "lesson_id": str(first.id),
            "current_step_index": 1, "total_steps": 3, "time_spent_delta": 20,
        })
        assert saved.status_code == 200
        assert saved.json()["data"]["current_step_index"] == 1

        resume = (await client.get(f"/api/progress/resume/{module.id}", headers=headers)).json()["data"]
        assert resume["lesson_id"] == str(first.id)
        assert resume["current_step_index"] == 1

        done = await client.post(f"/api/progress/lesson/{first.id}/complete", headers=headers)
        assert done.json()["data"]["is_completed"] is True

        lesson = (await client.get(f"/api/progress/lesson/{first.id}", headers=headers)).json()["data"]
        assert lesson["progress"]["time_spent"] == 20
        assert lesson["next_lesson"] == {"id": str(second.id), "title": second.title}

        overview = (await client.get("/api/progress/overview", headers=headers)).json()["data"]
        assert overview["stats"]["completed_lessons"] == 1
        assert overview["stats"]["xp_total"] == 100

    @pytest.mark.asyncio
    async def test_step_update_rejects_negative_index(self, client, curriculum, student):
        module = curriculum.modules[0]
        lesson = curriculum.lessons[module.id][0]

        response = await client.post("/api/progress/step/update", headers=auth_headers(student), json={
            "module_id": str(module.id), "lesson_id": str(lesson.id),
            "current_step_index": -1, "total_steps": 3,
        })

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_locked_module_access(self, client, curriculum, student, admin):
        m11, m12, _ = curriculum.modules
        added = await client.post(
            f"/api/modules/{m12.id}/prerequisites",
            json={"prerequisite_id": str(m11.id)},
            headers=auth_headers(admin),
        )
        assert added.status_code == 201

        access = (await client.get(f"/api/modules/{m12.id}/access", headers=auth_headers(student))).json()["data"]

        assert access["can_access"] is False
        assert access["missing_prerequisites"][0]["module_id"] == str(m11.id)


class TestAI:
    @pytest.mark.asyncio
    async def test_generate_then_rate_limited(self, client, student):
        headers = auth_headers(student)

        for _ in range(2):
            ok = await client.post("/api/ai/generate", json={"prompt": "¿Qué es la PEEP?"}, headers=headers)
            assert ok.status_code == 200
            assert ok.json()["data"]["content"] == "análisis gemini"

        limited = await client.post("/api/ai/generate", json={"prompt": "¿Qué es la PEEP?"}, headers=headers)

        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) >= 1
        assert limited.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_blank_prompt_is_400(self, client, student):
        response = await client.post("/api/ai/generate", json={"prompt": "  "}, headers=auth_headers(student))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PROMPT"

    @pytest.mark.asyncio
    async def test_fallback_reported(self, client, student, ai_providers):
        ai_providers["gemini"].failures = 1

        response = await client.post("/api/ai/generate", json={"prompt": "hola"}, headers=auth_headers(student))

        data = response.json()["data"]
        assert data["provider"] == "openai"
        assert data["fallback_used"] is True
        assert data["original_provider"] == "gemini"

    @pytest.mark.asyncio
    async def test_all_providers_failing_is_502(self, client, student, ai_providers):
        ai_providers["gemini"].failures = 5
        ai_providers["openai"].failures = 5

        response = await client.post("/api/ai/generate", json={"prompt": "hola"}, headers=auth_headers(student))

        assert response.status_code == 502
        assert response.json()["error"]["details"]["providers"] == ["gemini", "openai"]

    @pytest.mark.asyncio
    async def test_analyze_ventilator(self, client, student):
        response = await client.post("/api/ai/analyze-ventilator", headers=auth_headers(student), json={
            "userConfig": {"peep": 5, "volumen": 700},
            "optimalConfig": {"peep": 8, "volumen": 450},
            "ventilationMode": "volume",
            "patientData": {"edad": 60, "peso": 75},
        })

        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

        bad = await client.post("/api/ai/analyze-ventilator", headers=auth_headers(student), json={
            "userConfig": {"peep": 5}, "optimalConfig": {"peep": 8}, "ventilationMode": "oscillatory",
        })
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "INVALID_VENTILATION_MODE"

    @pytest.mark.asyncio
    async def test_stats_and_admin_only_history(self, client, student, admin):
        await client.post("/api/ai/generate", json={"prompt": "hola"}, headers=auth_headers(student))

        stats = (await client.get("/api/ai/stats", headers=auth_headers(student))).json()["data"]
        denied = await client.get("/api/ai/history", headers=auth_headers(student))
        history = await client.get("/api/ai/history", headers=auth_headers(admin))

        assert stats["current_provider"] == "gemini"
        assert stats["providers"]["gemini"]["requests"] == 1
        assert denied.status_code == 403
        assert [h["provider"] for h in history.json()["data"]] == ["gemini"]

    @pytest.mark.asyncio
    async def test_admin_resets_rate_limit(self, client, student, admin):
        for _ in range(2):
            await client.post("/api/ai/generate", json={"prompt": "hola"}, headers=auth_headers(student))

        reset = await client.post(
            "/api/ai/rate-limit/reset", params={"provider": "gemini"}, headers=auth_headers(admin)
        )
        after = await client.post("/api/ai/generate", json={"prompt": "hola"}, headers=auth_headers(student))

        assert reset.status_code == 200
        assert after.status_code == 200


class TestTeacherStudentsAndOverrides:
    @pytest.mark.asyncio
    async def test_assignment_enables_overrides(self, client, curriculum, admin, teacher, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        override = {
            "student_id": str(student.id),
            "entity_type": "LESSON",
            "entity_id": str(lesson.id),
            "override_data": {"hiddenCardIds": [str(curriculum.steps[lesson.id][0].id)]},
        }

        before = await client.post("/api/overrides", json=override, headers=auth_headers(teacher))
        assert before.status_code == 403

        assignment = {"teacher_id": str(teacher.id), "student_id": str(student.id)}
        assigned = await client.post("/api/teacher-students", json=assignment, headers=auth_headers(admin))
        duplicate = await client.post("/api/teacher-students", json=assignment, headers=auth_headers(admin))
        assert assigned.status_code == 201
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "ASSIGNMENT_EXISTS"

        students = (await client.get("/api/teacher-students/my-students", headers=auth_headers(teacher))).json()
        assert [s["id"] for s in students["data"]] == [str(student.id)]

        created = await client.post("/api/overrides", json=override, headers=auth_headers(teacher))
        assert created.status_code == 201

        resolved = (await client.get(f"/api/lessons/{lesson.id}/resolved", headers=auth_headers(student))).json()
        assert len(resolved["data"]["steps"]) == 2

    @pytest.mark.asyncio
    async def test_assignment_role_checks(self, client, admin, teacher, student):
        swapped = {"teacher_id": str(student.id), "student_id": str(teacher.id)}

        wrong_roles = await client.post("/api/teacher-students", json=swapped, headers=auth_headers(admin))
        by_teacher = await client.post(
            "/api/teacher-students",
            json={"teacher_id": str(teacher.id), "student_id": str(student.id)},
            headers=auth_headers(teacher),
        )
        missing = await client.delete(
            f"/api/teacher-students/{teacher.id}/{student.id}", headers=auth_headers(admin)
        )

        assert wrong_roles.status_code == 400
        assert wrong_roles.json()["error"]["code"] == "INVALID_ROLE"
        assert by_teacher.status_code == 403
        assert missing.status_code == 404
