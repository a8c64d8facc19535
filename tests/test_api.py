"""
Tests for the FastAPI surface
"""

import pytest
from fastapi.testclient import TestClient

from conftest import trending_bars
from backend.main import create_app


@pytest.fixture
def client(app_context):
    with TestClient(create_app(app_context)) as test_client:
        yield test_client


@pytest.fixture
def populated(app_context, fake_provider):
    fake_provider.bars = {"AAA": trending_bars(260, daily_change=0.003), "BBB": trending_bars(5)}
    app_context.refresh_universe("all")
    return app_context


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["scanner"] == "idle"
        assert body["version"]


class TestScanEndpoints:

    def test_scan_without_universe(self, client):
        response = client.post("/api/scan")
        assert response.status_code == 400
        assert response.json()["reason"] == "configuration-error"

    def test_scan_runs_in_background(self, client, populated):
        response = client.post("/api/scan", json={"mode": "daily"})
        assert response.status_code == 202
        run_id = response.json()["run_id"]

        results = client.get(f"/api/scans/{run_id}/results").json()
        assert results["count"] == 2
        assert results["results"][0]["symbol"] == "AAA"

        qualified = client.get(f"/api/scans/{run_id}/results", params={"qualified_only": True}).json()
        assert [r["symbol"] for r in qualified["results"]] == ["AAA"]

        runs = client.get("/api/scans").json()
        assert runs[0]["id"] == run_id
        assert runs[0]["status"] == "completed"

    def test_invalid_mode(self, client, populated):
        assert client.post("/api/scan", json={"mode": "weekly"}).status_code == 422

    def test_scan_in_progress(self, client, populated):
        session = populated.begin_scan()

        response = client.post("/api/scan")

        assert response.status_code == 409
        assert response.json()["reason"] == "scan-in-progress"
        populated.execute_scan(session)

    def test_status_and_live(self, client, populated):
        populated.run_scan()

        status = client.get("/api/scan/status").json()
        live = client.get("/api/scan/live").json()

        assert status["state"] == "idle"
        assert status["symbols_scored"] == 2
        assert live["count"] == 2

    def test_unknown_run(self, client):
        response = client.get("/api/scans/99/results")
        assert response.status_code == 404
        assert response.json()["reason"] == "not-found"

    def test_export_csv(self, client, populated):
        run_id = populated.run_scan()

        response = client.get(f"/api/scans/{run_id}/export", params={"format": "csv"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert f"scan_{run_id}.csv" in response.headers["content-disposition"]
        assert response.text.startswith("rank,symbol")

    def test_export_unknown_format(self, client, populated):
        run_id = populated.run_scan()
        response = client.get(f"/api/scans/{run_id}/export", params={"format": "xml"})
        assert response.status_code == 400


class TestBacktestEndpoints:

    def test_no_data(self, client):
        response = client.post("/api/backtest", json={"date_from": "2024-01-01", "date_to": "2024-03-01"})
        assert response.status_code == 422
        assert response.json()["reason"] == "no-data"

    def test_inverted_range(self, client):
        response = client.post("/api/backtest", json={"date_from": "2024-03-01", "date_to": "2024-01-01"})
        assert response.status_code == 422

    def test_runs_and_lists(self, client, populated):
        populated.run_scan()

        response = client.post("/api/backtest", json={
            "date_from": "2023-06-01", "date_to": "2024-05-31", "use_market_gate": False,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["initial_capital"] == 100000
        assert body["equity_curve"][0]["equity"] == 100000
        assert body["range_adjustment"] is not None

        listed = client.get("/api/backtests").json()
        assert listed[0]["id"] == body["backtest_id"]


class TestUniverseAndSettings:

    def test_refresh(self, client):
        response = client.post("/api/universe/refresh", json={"tag": "nasdaq"})
        assert response.status_code == 200
        assert response.json() == {"tag": "nasdaq", "symbols": 1}

    def test_refresh_unknown_tag(self, client):
        assert client.post("/api/universe/refresh", json={"tag": "ftse"}).status_code == 400

    def test_provider_test(self, client):
        assert client.get("/api/provider/test").json() == {"provider": "fake", "connected": True}

    def test_settings(self, client):
        body = client.get("/api/settings").json()
        assert body["weights"]["C"] == 2.0
        assert body["backtest"]["score_cutoff"] == 70
        assert body["provider"] == "fake"
