"""
Registry of payment sources that can be synchronised.

Each descriptor carries the API limits and the factories the sync service
needs, so ``POST /sync/<source>`` stays source-agnostic.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from paysync.ingest.adapters.paypal import PageResult, check_paypal_readiness, create_paypal_client
from paysync.ingest.pipeline.normalize import NormalizedRecord, normalize_paypal_transaction


class PageFetcher(Protocol):
    def fetch_page(self, start, end, page: int, page_size: int = 100) -> PageResult: ...


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata and factories describing a payment source."""

    name: str
    title: str
    max_window_days: int
    client_factory: Callable[..., PageFetcher]
    normalizer: Callable[[Mapping[str, Any]], NormalizedRecord | None]
    readiness_check: Callable[..., Any] | None = None
    summary: str | None = None


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    """Return every source the sync engine knows how to fetch."""
    return OrderedDict(
        (
            (
                "paypal",
                SourceDescriptor(
                    name="paypal",
                    title="PayPal Transaction Search",
                    max_window_days=31,
                    client_factory=create_paypal_client,
                    normalizer=normalize_paypal_transaction,
                    readiness_check=check_paypal_readiness,
                    summary="Pull completed, pending and refunded PayPal transactions.",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown ingest sources configured: "
            + ", ".join(unknown)
            + ". Update INGEST_SOURCES or register these sources first."
        )
    return tuple(registry[source] for source in configured)


def get_active_registry(app) -> Mapping[str, SourceDescriptor]:
    """
    Sources enabled for ``app`` (``INGEST_SOURCES``), as recorded by
    ``init_ingest``; the full registry when ingest is not initialised.
    """
    state = app.extensions.get("ingest")
    if state is None:
        return get_source_registry()
    return state.get("source_registry", {})


def compute_source_readiness(
    config: Mapping[str, Any],
    descriptors: Iterable[SourceDescriptor],
    *,
    require_auth_ping: bool = False,
) -> dict[str, dict[str, Any]]:
    """Non-raising readiness report for each descriptor, keyed by name."""
    readiness: dict[str, dict[str, Any]] = {}
    for descriptor in descriptors:
        payload: dict[str, Any] = {"name": descriptor.name, "title": descriptor.title}
        if descriptor.readiness_check is not None:
            payload.update(descriptor.readiness_check(config, require_auth_ping=require_auth_ping).as_dict())
        else:
            payload.update({"status": "ready", "missing_env_vars": [], "auth_status": "skipped", "messages": []})
        readiness[descriptor.name] = payload
    return readiness
