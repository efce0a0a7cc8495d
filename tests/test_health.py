"""Tests for the health router."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from shared.core import HealthStatus, ServiceHealth


def health_client(engine, missing=()):
    app = FastAPI()
    health = ServiceHealth("fulfillment-service", "1.0.0", engine_provider=lambda: engine,
                           config_check=lambda: list(missing))
    app.include_router(health.create_health_router())
    return TestClient(app)


def test_readiness_probes_the_database(engine):
    body = health_client(engine).get("/health/ready").json()
    assert body["checks"]["database:connectivity"]["status"] == "pass"


def test_startup_without_migrations_table_is_a_warning(engine):
    response = health_client(engine).get("/health/startup")

    assert response.status_code == 200
    assert response.json()["checks"]["database:migrations"]["status"] == "warn"


def test_startup_fails_on_missing_settings(engine):
    response = health_client(engine, missing=["STRIPE_WEBHOOK_SECRET"]).get("/health/startup")

    assert response.status_code == 503
    assert "STRIPE_WEBHOOK_SECRET" in response.json()["checks"]["config:environment"]["output"]


def test_overall_status_takes_the_worst_check():
    checks = {"a": {"status": HealthStatus.PASS}, "b": {"status": HealthStatus.WARN}}
    assert ServiceHealth.overall_status(checks) == HealthStatus.WARN
    checks["c"] = {"status": HealthStatus.FAIL}
    assert ServiceHealth.overall_status(checks) == HealthStatus.FAIL
