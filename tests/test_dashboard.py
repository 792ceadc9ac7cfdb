"""
tests/test_dashboard.py
Flask JSON API tests through the test client.
Run: pytest tests/test_dashboard.py -v
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from dashboard.app import create_app
from database.models import NetworkScanEntry
from database.repository import Repository


@pytest.fixture
def repo(tmp_path):
    r = Repository(db_path=str(tmp_path / "dash.db"))
    rid = r.create_run("scan", "full", "192.168.1.0/24")
    for ip, status, host in (("192.168.1.10", "online", "printer"),
                             ("192.168.1.2", "online", "router"),
                             ("192.168.1.30", "offline", None)):
        r.record_probe(NetworkScanEntry(ip=ip, status=status, hostname=host,
                                        first_seen="2026-03-01T10:00:00Z",
                                        last_seen="2026-03-01T10:00:00Z",
                                        ping_latency=1.0 if status == "online" else None),
                       rid)
    r.finish_run(rid, "completed", 254, 2)
    return r


@pytest.fixture
def client(repo):
    return create_app({}, repo).test_client()


class TestEntries:

    def test_list_sorted_by_ip(self, client):
        data = client.get("/api/entries").get_json()
        assert data["total"] == 3
        assert [e["ip"] for e in data["items"]] == ["192.168.1.2", "192.168.1.10", "192.168.1.30"]

    def test_filter_and_paginate(self, client):
        data = client.get("/api/entries?status=online&limit=1&offset=1").get_json()
        assert data["total"] == 2
        assert [e["ip"] for e in data["items"]] == ["192.168.1.10"]

    def test_search(self, client):
        data = client.get("/api/entries?search=rout").get_json()
        assert [e["hostname"] for e in data["items"]] == ["router"]

    def test_bad_sort_is_400(self, client):
        resp = client.get("/api/entries?sort_by=nope")
        assert resp.status_code == 400
        assert "sort key" in resp.get_json()["error"]

    def test_bad_limit_is_400(self, client):
        assert client.get("/api/entries?limit=abc").status_code == 400

    def test_single_entry_and_history(self, client):
        assert client.get("/api/entries/192.168.1.2").get_json()["hostname"] == "router"
        hist = client.get("/api/entries/192.168.1.2/history").get_json()
        assert len(hist) == 1
        assert hist[0]["status"] == "online"

    def test_unknown_entry_is_404(self, client):
        resp = client.get("/api/entries/10.9.9.9")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "not found"}


class TestStatsAndRuns:

    def test_stats(self, client):
        s = client.get("/api/stats").get_json()
        assert (s["total"], s["online"], s["offline"]) == (3, 2, 1)

    def test_history_series_hours_clamped(self, client):
        data = client.get("/api/stats/history?hours=1000").get_json()
        assert data["hours"] == 168
        assert isinstance(data["series"], list)

    def test_runs(self, client):
        runs = client.get("/api/runs?limit=500").get_json()
        assert len(runs) == 1
        assert runs[0]["status"] == "completed"
        run_id = runs[0]["id"]
        assert client.get(f"/api/runs/{run_id}").get_json()["found"] == 2
        assert client.get("/api/runs/999").status_code == 404

    def test_database_stats(self, client):
        s = client.get("/api/database").get_json()
        assert s["entries"] == 3
        assert s["history"] == 3

    def test_config_shows_persisted_settings(self, repo, client):
        repo.set_setting("retention", {"historyRetentionDays": 3})
        cfg = client.get("/api/config").get_json()
        assert cfg["retention"] == {"historyRetentionDays": 3}
        assert cfg["scheduler"] is None


class TestSecurity:

    def test_health(self, client):
        data = client.get("/health").get_json()
        assert data == {"status": "ok", "scan_running": False}

    def test_debug_forced_off(self, repo):
        app = create_app({"secret_key": ""}, repo)
        assert app.config["DEBUG"] is False
        assert len(app.config["SECRET_KEY"]) == 64

    def test_read_only(self, client):
        assert client.post("/api/entries").status_code == 405
        assert client.delete("/api/entries/192.168.1.2").status_code == 405

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.is_json


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
