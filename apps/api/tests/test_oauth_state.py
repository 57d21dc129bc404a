"""
Tests for signed OAuth state tokens.
"""
import pytest

from services import oauth_state
from services.oauth_state import create_oauth_state, verify_oauth_state


class TestOAuthState:
    def test_round_trip(self):
        token = create_oauth_state({"athlete_id": "abc", "return_to": "/settings"})
        payload = verify_oauth_state(token)
        assert payload["athlete_id"] == "abc"
        assert payload["return_to"] == "/settings"
        assert "iat" in payload

    @pytest.mark.parametrize("token", [None, "", "no-dot", "a.b.c", ".sig", "payload."])
    def test_malformed(self, token):
        assert verify_oauth_state(token) is None

    def test_tampered_payload(self):
        token = create_oauth_state({"athlete_id": "abc"})
        other = create_oauth_state({"athlete_id": "xyz"})
        forged = other.split(".")[0] + "." + token.split(".")[1]
        assert verify_oauth_state(forged) is None

    def test_expired(self, monkeypatch):
        monkeypatch.setattr(oauth_state, "_now", lambda: 1_000_000)
        token = create_oauth_state({"athlete_id": "abc"})
        monkeypatch.setattr(oauth_state, "_now", lambda: 1_000_000 + 601)
        assert verify_oauth_state(token, ttl_s=600) is None
        assert verify_oauth_state(token, ttl_s=0) is not None

    def test_issued_in_the_future(self, monkeypatch):
        monkeypatch.setattr(oauth_state, "_now", lambda: 2_000_000)
        token = create_oauth_state({"athlete_id": "abc"})
        monkeypatch.setattr(oauth_state, "_now", lambda: 2_000_000 - 120)
        assert verify_oauth_state(token) is None
