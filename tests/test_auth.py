import logging
from datetime import timedelta

import pytest

import auth
from database import now
from errors import BadRequest, Unauthorized
from factories import PASSWORD
from schemas import Role


def test_signup_then_signin(client):
    created = client.post("/auth/signup", json={"name": "Mira Shah", "email": "mira@mail.com", "password": "s3cret-pass"})
    assert created.status_code == 201
    assert created.json()["role"] == "USER"
    assert "password_hash" not in created.json()

    signed_in = client.post("/auth/signin", json={"email": "mira@mail.com", "password": "s3cret-pass"})
    assert signed_in.status_code == 200
    token = signed_in.json()["token"]

    me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "mira@mail.com"


def test_duplicate_email_is_rejected(client, customer):
    resp = client.post("/auth/signup", json={"name": "Cora Again", "email": "cora@mail.com", "password": "another-pass"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email already registered"


def test_short_password_is_a_validation_error(client):
    resp = client.post("/auth/signup", json={"name": "Mira Shah", "email": "mira@mail.com", "password": "short"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_ERROR"


def test_wrong_password_is_401(client, customer):
    resp = client.post("/auth/signin", json={"email": "cora@mail.com", "password": "wrong-password"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid credentials"


def test_signout_revokes_token(client, customer):
    headers = customer[1]
    assert client.get("/users/me", headers=headers).status_code == 200
    client.post("/auth/signout", headers=headers)
    assert client.get("/users/me", headers=headers).status_code == 401


def test_disabled_user_is_anonymous(store, customer):
    identity, headers = customer
    store.update_one("user", {"_id": identity.user_id}, values={"is_active": False})
    assert auth.resolve_token(store, auth.bearer_token(headers["Authorization"])) is None


def test_resolve_token_builds_identity(store, admin):
    identity, headers = admin
    resolved = auth.resolve_token(store, auth.bearer_token(headers["Authorization"]))
    assert resolved == identity
    assert resolved.role == Role.ADMIN


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Token abc"])
def test_bearer_token_ignores_other_schemes(header):
    assert auth.bearer_token(header) is None


class TestPasswordReset:
    def issued_token(self, store, email, caplog):
        with caplog.at_level(logging.INFO, logger="auth"):
            auth.request_password_reset(store, email)
        record = next(r for r in caplog.records if "Password reset token" in r.getMessage())
        return record.args[1]

    def test_reset_rotates_password_and_revokes_sessions(self, store, customer, caplog):
        identity = customer[0]
        token = self.issued_token(store, "cora@mail.com", caplog)

        auth.reset_password(store, token, "brand-new-pass")

        assert store.count("session", {"user_id": identity.user_id}) == 0
        assert store.count("password_reset") == 0
        assert auth.signin(store, "cora@mail.com", "brand-new-pass")["user_id"] == identity.user_id
        with pytest.raises(Unauthorized):
            auth.signin(store, "cora@mail.com", PASSWORD)

    def test_unknown_email_gets_the_same_answer(self, store, customer):
        assert auth.request_password_reset(store, "nobody@mail.com") == auth.request_password_reset(store, "cora@mail.com")
        assert store.count("password_reset") == 1

    def test_token_is_single_use(self, store, customer, caplog):
        token = self.issued_token(store, "cora@mail.com", caplog)
        auth.reset_password(store, token, "brand-new-pass")
        with pytest.raises(BadRequest):
            auth.reset_password(store, token, "another-pass-1")

    def test_expired_token_is_rejected(self, store, customer, caplog):
        token = self.issued_token(store, "cora@mail.com", caplog)
        store.update_one("password_reset", {"user_id": customer[0].user_id}, values={"expires_at": now() - timedelta(minutes=1)})

        with pytest.raises(BadRequest) as exc:
            auth.reset_password(store, token, "brand-new-pass")

        assert exc.value.message == "Invalid or expired token."
        assert store.count("password_reset") == 0

    def test_reset_routes(self, client, customer, caplog):
        with caplog.at_level(logging.INFO, logger="auth"):
            requested = client.post("/auth/password-reset/request", json={"email": "cora@mail.com"})
        assert requested.status_code == 200
        token = next(r.args[1] for r in caplog.records if "Password reset token" in r.getMessage())

        resp = client.post("/auth/password-reset/reset", json={"token": token, "password": "brand-new-pass"})

        assert resp.status_code == 200
        assert client.post("/auth/signin", json={"email": "cora@mail.com", "password": "brand-new-pass"}).status_code == 200


class TestPasswordHashing:
    def test_hash_is_salted_bcrypt(self):
        first, second = auth.hash_password("s3cret-pass"), auth.hash_password("s3cret-pass")

        assert first != second
        assert first.startswith("$2")
        assert auth.verify_password("s3cret-pass", first)
        assert auth.verify_password("s3cret-pass", second)
        assert not auth.verify_password("s3cret-pasS", first)

    def test_unreadable_hash_never_verifies(self):
        assert not auth.verify_password("s3cret-pass", "not-a-bcrypt-hash")
        assert not auth.verify_password("s3cret-pass", "")

    def test_long_passwords_are_accepted(self):
        password = "p" * 100
        assert auth.verify_password(password, auth.hash_password(password))
