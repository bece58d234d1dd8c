from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from pipeline_fakes import TEST_JWT_SECRET, make_token
from reviewflow.core.auth_utils import decode_token
from reviewflow.core.roles import load_actor
from reviewflow.lib.store import InMemoryDocumentStore


def test_first_access_creates_author_profile():
    store = InMemoryDocumentStore()
    actor = load_actor(store, "u1", "u1@example.com")
    assert actor.roles == ["author"]
    assert store.get("user_profiles", "u1")["roles"] == ["author"]


def test_existing_profile_roles_are_used():
    store = InMemoryDocumentStore()
    store.insert("user_profiles", {"id": "u2", "email": "r@example.com", "roles": ["Reviewer"]})
    actor = load_actor(store, "u2", "r@example.com")
    assert actor.roles == ["reviewer"]
    assert actor.has_role("reviewer")


def test_admin_emails_are_elevated(monkeypatch):
    monkeypatch.setenv("ADMIN_EMAILS", "chief@journal.org")
    store = InMemoryDocumentStore()
    store.insert("user_profiles", {"id": "u3", "email": "chief@journal.org", "roles": ["author"]})

    actor = load_actor(store, "u3", "Chief@Journal.org")

    assert {"admin", "editor", "author"} <= set(actor.roles)
    assert "editor" in store.get("user_profiles", "u3")["roles"]


def test_decode_valid_token():
    assert decode_token(make_token("u1", email="a@b.c")) == {"id": "u1", "email": "a@b.c"}


@pytest.mark.parametrize(
    "token",
    [
        make_token("u1", expires_in=timedelta(hours=-1)),
        make_token("u1", secret="wrong-secret"),
        "invalid.jwt.token",
        jwt.encode({"email": "no-sub@example.com", "aud": "authenticated"}, TEST_JWT_SECRET, algorithm="HS256"),
        jwt.encode({"sub": "u1", "aud": "authenticated"}, TEST_JWT_SECRET, algorithm="HS512"),
    ],
)
def test_decode_rejects_bad_tokens(token):
    with pytest.raises(HTTPException) as exc:
        decode_token(token)
    assert exc.value.status_code == 401
