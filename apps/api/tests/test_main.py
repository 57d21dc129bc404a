"""
Tests for application wiring: health check and Sentry event scrubbing.
"""
from unittest.mock import patch

from main import _filter_sensitive_data


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Process-Time" in response.headers

    def test_database_down(self, client):
        with patch("main.check_db_connection", return_value=False):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json() == {"status": "unhealthy", "database": "unavailable"}


class TestSentryFilter:
    def test_scrubs_credentials(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer abc", "cookie": "x", "accept": "json"},
                "data": {"code": "oauth-code", "refresh_token": "r", "race_name": "Boston"},
            }
        }
        filtered = _filter_sensitive_data(event)
        assert filtered["request"]["headers"] == {"accept": "json"}
        assert filtered["request"]["data"]["code"] == "[Filtered]"
        assert filtered["request"]["data"]["refresh_token"] == "[Filtered]"
        assert filtered["request"]["data"]["race_name"] == "Boston"

    def test_event_without_request(self):
        assert _filter_sensitive_data({"message": "boom"}) == {"message": "boom"}
