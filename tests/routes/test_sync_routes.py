from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import FakePageFetcher, paypal_detail
from paysync.ingest.adapters.paypal import PageResult
from paysync.ingest.pipeline.run_service import SyncParams, SyncRunService, set_sync_paused
from paysync.models import SyncRunStatus, db, utc_now

WINDOW_START = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=20)
BODY = {
    "startDate": WINDOW_START.date().isoformat(),
    "endDate": (WINDOW_START + timedelta(days=9)).date().isoformat(),
    "fetchAll": True,
}


def _single_page(records):
    return FakePageFetcher(lambda start, end, page: PageResult(records=records, total_pages=1 if records else 0))


def _active_run(source="paypal"):
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    return SyncRunService().start_or_resume(source, SyncParams(start=start, end=start + timedelta(days=5)))


def test_sync_requires_bearer_token(client):
    response = client.post("/sync/paypal", json=BODY)

    assert response.status_code == 403
    assert response.get_json()["error"] == "Missing bearer token."


def test_sync_rejects_wrong_token(client):
    response = client.post("/sync/paypal", json=BODY, headers={"Authorization": "Bearer nope"})

    assert response.status_code == 403


def test_unknown_source_is_404(client, auth_headers):
    response = client.post("/sync/venmo", json=BODY, headers=auth_headers)

    assert response.status_code == 404
    assert response.get_json() == {"error": "unknown_source", "source": "venmo"}


def test_sync_runs_to_completion(client, auth_headers, install_source):
    fetcher = install_source(_single_page([paypal_detail("TX-1"), paypal_detail("TX-2", email="b@example.com")]))

    response = client.post("/sync/PayPal", json=BODY, headers=auth_headers)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    assert payload["status"] == "completed"
    assert payload["hasMore"] is False
    assert payload["totalFetched"] == 2
    assert payload["totalInserted"] == 2
    assert isinstance(payload["syncRunId"], int)
    start, end, page, page_size = fetcher.calls[0]
    assert start == WINDOW_START
    assert page == 1
    assert page_size == 100


def test_fetch_all_defaults_to_single_page(client, auth_headers, install_source):
    fetcher = install_source(
        FakePageFetcher(lambda start, end, page: PageResult(records=[paypal_detail(f"TX-{page}")], total_pages=3))
    )

    body = {"startDate": BODY["startDate"], "endDate": BODY["endDate"]}

    response = client.post("/sync/paypal", json=body, headers=auth_headers)

    assert response.status_code == 200
    assert len(fetcher.calls) == 1
    assert response.get_json()["status"] == "completed"


def test_invalid_dates_are_400(client, auth_headers, install_source):
    install_source(_single_page([]))

    response = client.post("/sync/paypal", json={"startDate": "last tuesday"}, headers=auth_headers)

    assert response.status_code == 400
    assert "startDate" in response.get_json()["error"]


def test_active_run_conflicts(client, auth_headers, install_source):
    install_source(_single_page([]))
    existing = _active_run()

    response = client.post("/sync/paypal", json=BODY, headers=auth_headers)

    assert response.status_code == 409
    assert response.get_json()["existingSyncId"] == existing.id


def test_continuing_run_conflicts(client, auth_headers, install_source):
    install_source(_single_page([]))
    existing = _active_run()
    SyncRunService().mark_continuing(existing.id)

    response = client.post("/sync/paypal", json=BODY, headers=auth_headers)

    assert response.status_code == 409
    assert response.get_json()["existingSyncId"] == existing.id
    assert SyncRunService().get_run(existing.id).status is SyncRunStatus.CONTINUING


def test_paused_syncs_return_503(client, auth_headers, install_source):
    fetcher = install_source(_single_page([paypal_detail("TX-1")]))
    set_sync_paused(True)

    response = client.post("/sync/paypal", json=BODY, headers=auth_headers)

    assert response.status_code == 503
    assert response.get_json()["error"] == "sync_paused"
    assert fetcher.calls == []


def test_force_cancel_cancels_active_runs(client, auth_headers):
    existing = _active_run()

    response = client.post("/sync/paypal", json={"forceCancel": True}, headers=auth_headers)

    assert response.status_code == 200
    assert response.get_json() == {"success": True, "status": "cancelled", "cancelled": 1}
    assert SyncRunService().get_run(existing.id).status is SyncRunStatus.CANCELLED


def test_continuation_request_runs_next_step(app, client, auth_headers, install_source):
    install_source(_single_page([paypal_detail("TX-1")]))
    run = _active_run()
    SyncRunService().mark_continuing(run.id)

    response = client.post(
        "/sync/paypal",
        json={"syncRunId": run.id, "continuation": True},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.get_json()["status"] == "completed"
    assert response.get_json()["totalFetched"] == 1


def test_continuation_of_non_continuing_run_is_409(client, auth_headers, install_source):
    install_source(_single_page([]))
    run = _active_run()

    response = client.post("/sync/paypal", json={"syncRunId": run.id, "continuation": True}, headers=auth_headers)

    assert response.status_code == 409
    assert response.get_json()["status"] == "running"


def test_non_numeric_sync_run_id_is_400(client, auth_headers):
    response = client.post("/sync/paypal", json={"syncRunId": "latest", "continuation": True}, headers=auth_headers)

    assert response.status_code == 400
    assert "syncRunId" in response.get_json()["error"]


def test_continuation_of_missing_run_is_404(client, auth_headers):
    response = client.post("/sync/paypal", json={"syncRunId": 999, "continuation": True}, headers=auth_headers)

    assert response.status_code == 404


def test_failed_step_returns_500(client, auth_headers, install_source):
    def responder(start, end, page):
        raise RuntimeError("upstream exploded")

    install_source(FakePageFetcher(responder))

    response = client.post("/sync/paypal", json=BODY, headers=auth_headers)

    assert response.status_code == 500
    payload = response.get_json()
    assert payload["success"] is False
    assert payload["status"] == "failed"
    assert "upstream exploded" in payload["error"]


def test_cleanup_stale_before_start(client, auth_headers, install_source):
    install_source(_single_page([]))
    stale = _active_run()
    stale.last_activity_at = utc_now() - timedelta(hours=2)
    db.session.commit()

    response = client.post("/sync/paypal", json={**BODY, "cleanupStale": True}, headers=auth_headers)

    assert response.status_code == 200
    assert SyncRunService().get_run(stale.id).status is SyncRunStatus.FAILED


def test_list_and_get_runs(client, auth_headers):
    run = _active_run()

    listed = client.get("/sync/paypal/runs?limit=5", headers=auth_headers)
    detail = client.get(f"/sync/runs/{run.id}", headers=auth_headers)
    missing = client.get("/sync/runs/999", headers=auth_headers)
    bad_limit = client.get("/sync/paypal/runs?limit=lots", headers=auth_headers)

    assert listed.status_code == 200
    assert [item["syncRunId"] for item in listed.get_json()["runs"]] == [run.id]
    assert detail.get_json()["status"] == "running"
    assert missing.status_code == 404
    assert bad_limit.status_code == 400


def test_cancel_single_run(client, auth_headers):
    run = _active_run()

    first = client.post(f"/sync/runs/{run.id}/cancel", headers=auth_headers)
    second = client.post(f"/sync/runs/{run.id}/cancel", headers=auth_headers)

    assert first.status_code == 200
    assert first.get_json()["run"]["status"] == "cancelled"
    assert second.status_code == 409
    assert second.get_json()["error"] == "sync_run_not_active"
    assert second.get_json()["status"] == "cancelled"


def test_health_lists_sources_and_pause_state(client):
    set_sync_paused(True)

    response = client.get("/ingest/health")

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["status"] == "ok"
    assert [source["name"] for source in payload["sources"]] == ["paypal"]
    assert "paypal" in payload["sourceReadiness"]
    assert payload["syncPaused"] is True


def test_worker_health_runs_heartbeat(client):
    response = client.get("/ingest/worker_health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["queue"] == "ingest"
    assert payload["heartbeat"]["status"] == "ok"


def test_metrics_endpoint_exposes_prometheus_text(client, auth_headers, install_source):
    install_source(_single_page([paypal_detail("TX-1")]))
    client.post("/sync/paypal", json=BODY, headers=auth_headers)

    response = client.get("/ingest/metrics")

    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert b"paysync_sync" in response.data
