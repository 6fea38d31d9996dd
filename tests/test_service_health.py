import logging

import pytest


@pytest.mark.parametrize(
    "client_fixture, name",
    [("users_client", "users"), ("catalog_client", "catalog"), ("bookings_client", "bookings")],
)
def test_health_and_metrics(request, client_fixture, name):
    client = request.getfixturevalue(client_fixture)

    health = client.get("/health")
    metrics = client.get("/metrics")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "service": name}
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_database_errors_become_generic_500(bookings_client, customer_headers, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from common import bookings

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(bookings, "list_bookings", broken)

    response = bookings_client.get("/bookings/me", headers=customer_headers)

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error."}


def test_audit_log_names_caller_and_echoes_request_id(bookings_client, customer_headers, caplog):
    with caplog.at_level(logging.INFO, logger="audit.bookings"):
        response = bookings_client.get("/bookings/me", headers={**customer_headers, "X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
    assert "GET /bookings/me | status=200 | request=req-123 | user=customer@example.com" in caplog.text


def test_audit_log_marks_client_errors_as_warnings(bookings_client, caplog):
    with caplog.at_level(logging.INFO, logger="audit.bookings"):
        bookings_client.get("/bookings/me")

    [record] = [r for r in caplog.records if r.name == "audit.bookings"]
    assert record.levelno == logging.WARNING
    assert "user=anonymous" in record.getMessage()
