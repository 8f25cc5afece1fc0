from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from paysync.ingest.pipeline import continuation as continuation_module
from paysync.models import Customer, ImportRun, ImportRunStatus, db, utc_now

CONTACTS = (
    "Contact Id,First Name,Last Name,Email,Phone,Tags\n"
    "C1,Ada,Lovelace,ada@example.com,,vip\n"
    "C2,Grace,Hopper,grace@example.com,+1 415 555 0102,\n"
    "C3,No,Identity,,,\n"
)


def _stage(client, auth_headers, **body):
    payload = {"csvText": CONTACTS, "filename": "contacts.csv"}
    payload.update(body)
    return client.post("/import/csv", json=payload, headers=auth_headers)


def test_import_requires_token(client):
    response = client.post("/import/csv", json={"csvText": CONTACTS})

    assert response.status_code == 403


def test_stage_reports_counts(client, auth_headers):
    response = _stage(client, auth_headers)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["phase"] == "staged"
    assert payload["sourceType"] == "ghl"
    assert payload["staged"] == 2
    assert payload["skipped"] == 1
    assert payload["totalRows"] == 3
    assert payload["batches"] == 1
    assert "mergeQueued" not in payload
    assert db.session.get(ImportRun, payload["importId"]).status is ImportRunStatus.STAGED


def test_second_chunk_appends_to_import(client, auth_headers):
    first = _stage(client, auth_headers).get_json()

    second = _stage(
        client,
        auth_headers,
        csvText="Contact Id,First Name,Last Name,Email,Phone,Tags\nC4,Alan,Turing,alan@example.com,,\n",
        importId=first["importId"],
    )

    assert second.status_code == 200
    assert second.get_json()["importId"] == first["importId"]
    detail = client.get(f"/import/{first['importId']}", headers=auth_headers).get_json()
    assert detail["totalRows"] == 4
    assert detail["rowsStaged"] == 3
    assert detail["rowsInvalid"] == 1
    assert detail["filename"] == "contacts.csv"


def test_empty_csv_is_400(client, auth_headers):
    response = _stage(client, auth_headers, csvText="")

    assert response.status_code == 400


def test_unknown_csv_type_is_400(client, auth_headers):
    response = _stage(client, auth_headers, csvType="hubspot")

    assert response.status_code == 400
    assert "Unknown csvType" in response.get_json()["error"]


def test_chunk_for_missing_import_is_404(client, auth_headers):
    response = _stage(client, auth_headers, importId=404)

    assert response.status_code == 404
    assert response.get_json()["error"] == "import_not_found"


def test_stage_with_merge_runs_background_merge(client, auth_headers):
    response = _stage(client, auth_headers, merge=True)

    payload = response.get_json()
    assert response.status_code == 200
    assert payload["mergeQueued"] is True
    run = db.session.get(ImportRun, payload["importId"], populate_existing=True)
    assert run.status is ImportRunStatus.COMPLETED
    emails = set(db.session.scalars(select(Customer.email)))
    assert emails == {"ada@example.com", "grace@example.com"}


def test_merge_endpoint_queues_and_is_idempotent(client, auth_headers):
    import_id = _stage(client, auth_headers).get_json()["importId"]

    queued = client.post(f"/import/{import_id}/merge", headers=auth_headers)
    repeated = client.post(f"/import/{import_id}/merge", headers=auth_headers)

    assert queued.status_code == 202
    assert queued.get_json()["status"] == "completed"
    assert repeated.status_code == 200
    assert repeated.get_json() == {"ok": True, "importId": import_id, "status": "completed"}
    detail = client.get(f"/import/{import_id}", headers=auth_headers).get_json()
    assert detail["rowsMerged"] == 2
    assert detail["completedAt"] is not None


def test_completed_import_rejects_new_chunks(client, auth_headers):
    import_id = _stage(client, auth_headers, merge=True).get_json()["importId"]

    response = _stage(client, auth_headers, importId=import_id)

    assert response.status_code == 409
    assert response.get_json()["status"] == "completed"


def test_merge_while_processing_is_409(client, auth_headers):
    import_id = _stage(client, auth_headers).get_json()["importId"]
    run = db.session.get(ImportRun, import_id)
    run.status = ImportRunStatus.PROCESSING
    db.session.commit()

    response = client.post(f"/import/{import_id}/merge", headers=auth_headers)

    assert response.status_code == 409
    assert response.get_json()["status"] == "processing"


def test_stale_processing_import_can_be_merged_again(client, auth_headers):
    import_id = _stage(client, auth_headers).get_json()["importId"]
    run = db.session.get(ImportRun, import_id)
    run.status = ImportRunStatus.PROCESSING
    run.last_activity_at = utc_now() - timedelta(hours=2)
    db.session.commit()

    response = client.post(f"/import/{import_id}/merge", headers=auth_headers)

    assert response.status_code == 202
    assert response.get_json()["status"] == "completed"


def test_merge_dispatch_failure_is_reported(client, auth_headers, monkeypatch):
    monkeypatch.setattr(continuation_module, "get_celery_app", lambda app: None)

    response = _stage(client, auth_headers, merge=True)

    assert response.status_code == 503
    payload = response.get_json()
    assert payload["error"] == "merge_dispatch_failed"
    assert payload["mergeQueued"] is False
    assert payload["staged"] == 2
    assert "not configured" in payload["detail"]
    assert db.session.get(ImportRun, payload["importId"], populate_existing=True).status is ImportRunStatus.STAGED

    retry = client.post(f"/import/{payload['importId']}/merge", headers=auth_headers)
    assert retry.status_code == 503
    assert retry.get_json()["error"] == "merge_dispatch_failed"


def test_missing_import(client, auth_headers):
    assert client.post("/import/77/merge", headers=auth_headers).status_code == 404
    assert client.get("/import/77", headers=auth_headers).status_code == 404
