"""
REST API tests: login, rate limiting, CSRF enforcement, inactivity timeout
and the patient / dashboard routes.
"""

import pytest
from fastapi.testclient import TestClient

from api_server import create_app
from nutri_core.auth import create_nutricionista
from nutri_core.csrf_protection import CSRF_HEADER_NAME
from tests.conftest import FakeClock

SECRET = "api-test-secret-key-0123456789abcdefghij"
PASSWORD = "Segura#2024"
MINUTE = 60


@pytest.fixture
def app(scheduler):
    app = create_app(
        database_url="sqlite://",
        secret_key=SECRET,
        session_timeout_minutes=30,
        scheduler=scheduler,
        clock=FakeClock(),
    )
    with app.state.db.get_session() as session:
        create_nutricionista(session, "Camila", "Rojas", "12345678-5",
                             "camila@nutri.cl", PASSWORD)
    yield app
    app.state.auth_service.timeouts.close_all()
    app.state.db.close()


@pytest.fixture
def client(app):
    return TestClient(app)


def login(client, username="camila@nutri.cl", password=PASSWORD):
    return client.post("/api/login", json={"username": username, "password": password})


@pytest.fixture
def auth(client):
    """Headers of a logged-in session (bearer token and CSRF token)."""
    body = login(client).json()
    return {
        "Authorization": f"Bearer {body['token']}",
        CSRF_HEADER_NAME: body["csrf_token"],
    }


def new_cliente(**overrides):
    data = {
        "nombre": "Ana",
        "apellido": "Pérez",
        "rut": "12345678-5",
        "correo": "ana@mail.cl",
        "telefono": "+56912345678",
    }
    data.update(overrides)
    return data


class TestLogin:
    """Authentication endpoint."""

    def test_login_with_email(self, client):
        response = login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["csrf_token"]) == 64
        assert body["session_timeout_minutes"] == 30
        assert body["user"]["email"] == "camila@nutri.cl"
        assert body["user"]["username"] == "12.345.678-5"

    def test_login_with_rut(self, client):
        assert login(client, username="12345678-5").status_code == 200
        assert login(client, username="12.345.678-5").status_code == 200

    def test_wrong_password(self, client):
        response = login(client, password="incorrecta")

        assert response.status_code == 401
        assert response.json()["error"] == "Credenciales inválidas"

    def test_malformed_email(self, client):
        response = login(client, username="camila@nutri")
        assert response.status_code == 422

    def test_rate_limited_after_five_attempts(self, client):
        for _ in range(5):
            assert login(client, password="incorrecta").status_code == 401

        response = login(client)
        assert response.status_code == 429
        body = response.json()
        assert body["remaining_attempts"] == 0
        assert body["error"] == "Demasiados intentos de login. Intentos restantes: 0"

    def test_successful_login_resets_attempts(self, client):
        for _ in range(4):
            login(client, password="incorrecta")
        assert login(client).status_code == 200

        for _ in range(4):
            assert login(client, password="incorrecta").status_code == 401


class TestSessionSecurity:
    """Bearer token, CSRF header and inactivity timeout."""

    def test_token_required(self, client):
        assert client.get("/api/clientes").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/clientes", headers={"Authorization": "Bearer basura"})
        assert response.status_code == 401

    def test_get_does_not_need_csrf(self, client, auth):
        headers = {"Authorization": auth["Authorization"]}
        assert client.get("/api/user", headers=headers).status_code == 200

    def test_post_without_csrf_rejected(self, client, auth):
        headers = {"Authorization": auth["Authorization"]}
        response = client.post("/api/clientes", json=new_cliente(), headers=headers)
        assert response.status_code == 403

    def test_post_with_wrong_csrf_rejected(self, client, auth):
        headers = dict(auth, **{CSRF_HEADER_NAME: "0" * 64})
        response = client.post("/api/clientes", json=new_cliente(), headers=headers)
        assert response.status_code == 403

    def test_session_expires_after_inactivity(self, client, auth, scheduler):
        scheduler.advance(30 * MINUTE)

        response = client.get("/api/user", headers=auth)
        assert response.status_code == 401

    def test_requests_count_as_activity(self, client, auth, scheduler):
        scheduler.advance(20 * MINUTE)
        assert client.get("/api/user", headers=auth).status_code == 200

        scheduler.advance(20 * MINUTE)
        assert client.get("/api/user", headers=auth).status_code == 200

    def test_keepalive_after_warning(self, client, auth, scheduler):
        scheduler.advance(25 * MINUTE)

        response = client.post("/api/session/keepalive", headers=auth)
        assert response.status_code == 200
        assert response.json() == {"active": True, "remaining_seconds": 30 * MINUTE}

    def test_logout(self, client, auth, app):
        assert client.post("/api/logout", headers=auth).status_code == 200

        assert client.get("/api/user", headers=auth).status_code == 401
        assert len(app.state.auth_service.csrf_store) == 0


class TestClientesRoutes:
    """Patient roster and detail."""

    def test_create_and_get(self, client, auth):
        response = client.post("/api/clientes", json=new_cliente(nombre="<b>Ana</b>"), headers=auth)

        assert response.status_code == 201
        created = response.json()
        assert created["nombre"] == "bAna/b"
        assert created["rut"] == "12.345.678-5"
        assert created["progreso"] == "Pendiente"

        response = client.get(f"/api/clientes/{created['id_cliente']}", headers=auth)
        assert response.status_code == 200
        assert response.json()["id_cliente"] == created["id_cliente"]

    def test_create_invalid(self, client, auth):
        response = client.post("/api/clientes", json=new_cliente(rut="11111111-2", correo="x"),
                               headers=auth)

        assert response.status_code == 422
        assert response.json()["errors"] == ["El RUT no es válido", "El email no es válido"]

    def test_list_with_search_and_pagination(self, client, auth):
        for nombre, progreso in [("Ana", "Bueno"), ("Bruno", "Regular"), ("Carla", "Bueno")]:
            client.post("/api/clientes", json=new_cliente(nombre=nombre, progreso=progreso),
                        headers=auth)

        page = client.get("/api/clientes", params={"per_page": 2}, headers=auth).json()
        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert len(page["items"]) == 2

        page = client.get("/api/clientes", params={"progreso": "Bueno"}, headers=auth).json()
        assert sorted(c["nombre"] for c in page["items"]) == ["Ana", "Carla"]

        page = client.get("/api/clientes", params={"search": "bru"}, headers=auth).json()
        assert [c["nombre"] for c in page["items"]] == ["Bruno"]

    def test_invalid_progreso_filter(self, client, auth):
        response = client.get("/api/clientes", params={"progreso": "Malo"}, headers=auth)
        assert response.status_code == 422

    def test_update(self, client, auth):
        created = client.post("/api/clientes", json=new_cliente(), headers=auth).json()

        response = client.put(f"/api/clientes/{created['id_cliente']}",
                              json={"peso": 68.2, "progreso": "Excelente"}, headers=auth)

        assert response.status_code == 200
        assert response.json()["peso"] == 68.2
        assert response.json()["progreso"] == "Excelente"

    def test_delete_is_soft(self, client, auth):
        created = client.post("/api/clientes", json=new_cliente(), headers=auth).json()
        url = f"/api/clientes/{created['id_cliente']}"

        response = client.delete(url, headers=auth)
        assert response.status_code == 200
        assert response.json()["inactividad"] is True

        assert client.get(url, headers=auth).status_code == 404
        assert client.get("/api/clientes", headers=auth).json()["total"] == 0

    def test_not_found(self, client, auth):
        response = client.get("/api/clientes/999", headers=auth)

        assert response.status_code == 404
        assert response.json() == {"error": "Cliente no encontrado"}


class TestVisitsAndDashboard:

    def test_medidas_and_consultas(self, client, auth):
        created = client.post("/api/clientes", json=new_cliente(), headers=auth).json()
        base = f"/api/clientes/{created['id_cliente']}"

        medida = client.post(f"{base}/medidas", json={"peso": 70, "altura": 175}, headers=auth)
        assert medida.status_code == 201
        assert medida.json()["imc"] == 22.86

        consulta = client.post(f"{base}/consultas",
                               json={"fecha": "2026-10-15T10:30:00", "observaciones": "Control"},
                               headers=auth)
        assert consulta.status_code == 201

        assert len(client.get(f"{base}/medidas", headers=auth).json()) == 1
        assert len(client.get(f"{base}/consultas", headers=auth).json()) == 1
        assert client.get(base, headers=auth).json()["ultimavisita"] == "2026-10-15T10:30:00"

    def test_dashboard(self, client, auth):
        client.post("/api/clientes", json=new_cliente(progreso="Excelente"), headers=auth)

        stats = client.get("/api/dashboard", headers=auth).json()
        assert stats["totalPacientes"] == 1
        assert stats["tasaExito"] == 100
        assert len(stats["progresoPorSemana"]) == 4

        progreso = client.get("/api/dashboard/progreso", headers=auth).json()
        assert progreso["excelente"] == 1


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] in ("healthy", "degraded")

    def test_database_connection(self, client):
        response = client.get("/api/test")
        assert response.status_code == 200
