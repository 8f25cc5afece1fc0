"""
Ingest feature package.

Registers the sync/import blueprint and CLI, resolves the configured payment
sources and records their readiness on ``app.extensions['ingest']``.
"""

from __future__ import annotations

from flask import Flask

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import ingest_cli
from .registry import compute_source_readiness, get_source_registry, resolve_sources
from .views import ingest_blueprint

__all__ = [
    "init_ingest",
    "EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "configured_sources": (),
            "source_registry": {},
            "verifier": None,
            "celery_app": None,
            "source_readiness": {},
        },
    )


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when running tests
    if ingest_cli.name in app.cli.commands:
        app.cli.commands.pop(ingest_cli.name)
    app.cli.add_command(ingest_cli)


def init_ingest(app: Flask) -> None:
    """
    Mount the ingest blueprint and CLI and prepare the worker.

    Unknown names in ``INGEST_SOURCES`` abort start-up.
    """
    configured = tuple(app.config.get("INGEST_SOURCES") or ())
    state = _ensure_extension_state(app)
    descriptors = tuple(resolve_sources(configured, get_source_registry()))
    state.update(
        {
            "configured_sources": configured,
            "source_registry": {descriptor.name: descriptor for descriptor in descriptors},
        }
    )
    ensure_celery_app(app, state)

    readiness_map = compute_source_readiness(app.config, descriptors)
    state["source_readiness"] = readiness_map
    for descriptor in descriptors:
        payload = readiness_map.get(descriptor.name, {})
        status = payload.get("status")
        if status and status != "ready":
            messages = list(payload.get("messages") or ())
            message_str = "; ".join(messages) if messages else "No additional context provided."
            app.logger.warning(
                "Ingest source '%s' not ready (status=%s). %s",
                descriptor.name,
                status,
                message_str,
                extra={
                    "ingest_source": descriptor.name,
                    "ingest_source_status": status,
                    "ingest_source_missing_env": payload.get("missing_env_vars"),
                },
            )

    if ingest_blueprint.name not in app.blueprints:
        app.register_blueprint(ingest_blueprint)
    _set_cli(app)

    source_names = ", ".join(descriptor.name for descriptor in descriptors) or "none"
    app.logger.info("Ingest enabled with sources: %s", source_names)
