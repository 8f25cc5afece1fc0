import json
from typing import Any, Dict

import pytest
from flask import Flask

from paysync import create_app
from paysync.ingest import get_celery_app
from paysync.ingest.celery_app import DEFAULT_QUEUE_NAME
from paysync.ingest.pipeline.run_service import SyncParams, SyncRunService
from paysync.models import utc_now


def build_ingest_app(**overrides) -> Flask:
    """
    Construct a PaySync app with an in-memory database for worker tests.
    """
    options = {"SQLALCHEMY_DATABASE_URI": "sqlite://"}
    options.update(overrides)
    return create_app(**options)


def test_celery_defaults_to_sqlite_transport(tmp_path):
    sqlite_path = tmp_path / "instance" / "custom.sqlite"

    app = build_ingest_app(
        CELERY_BROKER_URL=None,
        CELERY_RESULT_BACKEND=None,
        CELERY_SQLITE_PATH=str(sqlite_path),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert sqlite_path.parent.is_dir()


def test_celery_config_json_string_is_applied():
    app = build_ingest_app(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"task_always_eager": True, "worker_concurrency": 3}),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.worker_concurrency == 3
    assert celery_app.conf.task_always_eager is True


def test_ingest_tasks_are_registered(app):
    celery_app = get_celery_app(app)

    assert {
        "paysync.healthcheck",
        "paysync.sync.continue_run",
        "paysync.import.merge",
        "paysync.sync.cleanup_stale",
    } <= set(celery_app.tasks.keys())


def test_worker_ping_cli(runner):
    result = runner.invoke(args=["ingest", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(app, runner, monkeypatch):
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = runner.invoke(
        args=[
            "ingest",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "payments",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "payments",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_cleanup_stale_task_runs_eagerly(app):
    task = get_celery_app(app).tasks["paysync.sync.cleanup_stale"]

    result = task.apply_async(kwargs={"source": "paypal", "threshold_minutes": 15})

    assert result.get() == {"source": "paypal", "thresholdMinutes": 15, "swept": 0}


def test_continue_task_skips_runs_that_are_not_continuing(app):
    task = get_celery_app(app).tasks["paysync.sync.continue_run"]

    run = SyncRunService().start_or_resume("paypal", SyncParams(start=utc_now(), end=utc_now()))

    result = task.apply_async(kwargs={"run_id": run.id, "cursor": [0, 1]}).get()

    assert result == {"syncRunId": run.id, "status": "running", "skipped": True}


def test_unknown_configured_source_aborts_startup():
    with pytest.raises(ValueError, match="venmo"):
        build_ingest_app(INGEST_SOURCES=("paypal", "venmo"))


def test_missing_credentials_are_recorded_as_not_ready():
    app = build_ingest_app(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        PAYPAL_CLIENT_ID=None,
        PAYPAL_CLIENT_SECRET=None,
    )

    readiness = app.extensions["ingest"]["source_readiness"]["paypal"]
    assert readiness["status"] == "missing-env"
    assert set(readiness["missing_env_vars"]) == {"PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"}
