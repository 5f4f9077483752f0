"""
Tests for health, metrics and request logging.
"""


class TestHealth:
    """Test liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        """Test readiness once the schema exists and the secret is set."""
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_response_includes_request_id_header(self, client):
        response = client.get("/health/live")

        assert "x-request-id" in response.headers


class TestMetrics:
    """Test the Prometheus endpoint."""

    def test_metrics_exposed(self, client, users, auth_headers):
        client.post(
            "/api/messages",
            json={"listing_id": "L1", "receiver_id": "bob", "body": "hello"},
            headers=auth_headers("alice"),
        )

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert 'chat_actions_total{action="send",result="ok"}' in response.text
        assert "realtime_events_total" in response.text
