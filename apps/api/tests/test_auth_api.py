"""
Tests for registration, login and bearer-token authentication.
"""
import pytest

from core.security import create_access_token, get_password_hash, verify_password
from models import Athlete


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = get_password_hash("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)


class TestRegister:
    def test_register_returns_token(self, client, db_session):
        response = client.post("/v1/auth/register", json={
            "email": "Runner@Example.com",
            "password": "long-enough",
            "max_hr": 188,
        })
        assert response.status_code == 201
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["athlete"]["email"] == "runner@example.com"
        assert body["athlete"]["display_name"] == "runner"
        assert body["athlete"]["max_hr"] == 188

        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.status_code == 200
        assert me.json()["email"] == "runner@example.com"

    def test_duplicate_email(self, client, test_athlete):
        response = client.post("/v1/auth/register", json={"email": test_athlete.email, "password": "long-enough"})
        assert response.status_code == 400

    def test_short_password(self, client):
        response = client.post("/v1/auth/register", json={"email": "a@example.com", "password": "short"})
        assert response.status_code == 400

    @pytest.mark.parametrize("password", ["x" * 73, "\u00e9" * 40])
    def test_password_over_bcrypt_limit(self, client, db_session, password):
        response = client.post("/v1/auth/register", json={"email": "long@example.com", "password": password})
        assert response.status_code == 400
        assert db_session.query(Athlete).filter(Athlete.email == "long@example.com").first() is None

    def test_password_at_bcrypt_limit(self, client):
        response = client.post("/v1/auth/register", json={"email": "edge@example.com", "password": "x" * 72})
        assert response.status_code == 201

    def test_invalid_email(self, client):
        response = client.post("/v1/auth/register", json={"email": "not-an-email", "password": "long-enough"})
        assert response.status_code == 422


class TestLogin:
    @pytest.fixture
    def athlete_with_password(self, db_session):
        athlete = Athlete(email="login@example.com", password_hash=get_password_hash("s3cret-pass"))
        db_session.add(athlete)
        db_session.commit()
        return athlete

    def test_login(self, client, athlete_with_password):
        response = client.post("/v1/auth/login", json={"email": "login@example.com", "password": "s3cret-pass"})
        assert response.status_code == 200
        assert response.json()["athlete"]["id"] == str(athlete_with_password.id)

    @pytest.mark.parametrize("email,password", [
        ("login@example.com", "wrong-pass"),
        ("nobody@example.com", "s3cret-pass"),
        ("login@example.com", "x" * 100),
    ])
    def test_bad_credentials(self, client, athlete_with_password, email, password):
        response = client.post("/v1/auth/login", json={"email": email, "password": password})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"


class TestBearerAuth:
    def test_missing_token(self, client):
        assert client.get("/v1/auth/me").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_athlete(self, client, db_session):
        token = create_access_token({"sub": "00000000-0000-0000-0000-000000000000"})
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_non_uuid_subject(self, client, db_session):
        token = create_access_token({"sub": "athlete-1"})
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
