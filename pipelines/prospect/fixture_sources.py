"""Fixture-backed source adapters for offline and replay runs.

Each source reads ``<source_id>/<target_key>.json`` from a fixture store. A
fixture is either a bare mapping of field values or an envelope::

    {"success": false, "errors": ["source_unavailable: invalid credentials"]}
    {"success": true, "fields": {"phone": "(303) 555-0100"}}

A missing fixture means the source knows nothing about the target and yields
an empty success, which the coordinator records as ``no_data_found``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import httpx

from app.config import Settings, settings
from app.models.prospect import ProspectField, Target
from app.services.prospecting.errors import ProspectingError, SourceUnavailableError
from app.services.prospecting.passes import DEFAULT_PASS_PLAN, AdapterResult, SourceAdapter

logger = logging.getLogger("pipelines.prospect.fixture_sources")

HTTP_TIMEOUT_SECONDS = 15


class SourceMode(str, Enum):
    """Available adapter behaviors."""

    FIXTURE = "fixture"


class FixtureSourceError(ProspectingError):
    """Raised when fixture configuration is invalid."""

    def __init__(self, message: str, code: str = "E_FIXTURE_CONFIG") -> None:
        super().__init__(message, code=code)


class FixtureNotFoundError(FixtureSourceError):
    """Raised when a requested fixture artifact cannot be located."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Fixture not found: {path}", code="E_FIXTURE_NOT_FOUND")
        self.path = path


class FixtureStore(Protocol):
    """Common interface for fixture stores."""

    def load_json(self, relative_path: str) -> Any:
        ...


class LocalFixtureStore:
    """Loads fixtures from a directory tree."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir

    def load_json(self, relative_path: str) -> Any:
        target = (self._base_dir / relative_path).resolve()
        if not target.exists():
            raise FixtureNotFoundError(str(target))
        with target.open("r", encoding="utf-8") as infile:
            try:
                return json.load(infile)
            except json.JSONDecodeError as exc:
                raise SourceUnavailableError(f"invalid fixture {target.name}: {exc.msg}") from exc


class HttpFixtureStore:
    """Loads fixtures from an HTTP bucket (for example object storage)."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = client

    def load_json(self, relative_path: str) -> Any:
        url = f"{self._base_url}/{relative_path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            if self._client is not None:
                response = self._client.get(url, headers=headers, timeout=HTTP_TIMEOUT_SECONDS)
            else:
                response = httpx.get(url, headers=headers, timeout=HTTP_TIMEOUT_SECONDS)
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(f"fixture request failed: {exc}") from exc
        if response.status_code == 404:
            raise FixtureNotFoundError(url)
        if response.status_code in (401, 403):
            raise SourceUnavailableError("invalid credentials")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceUnavailableError(f"HTTP {response.status_code}") from exc
        return response.json()


class FixtureSourceAdapter:
    """Source adapter replaying recorded responses for one source id."""

    def __init__(self, store: FixtureStore, source_id: str) -> None:
        self._store = store
        self.source_id = source_id

    def __call__(self, target: Target, aggregate: Mapping[ProspectField, Any]) -> AdapterResult:
        _ = aggregate  # Fixtures are static snapshots.
        relative_path = f"{self.source_id}/{target.key}.json"
        try:
            payload = self._store.load_json(relative_path)
        except FixtureNotFoundError:
            logger.info(
                "Fixture missing for source=%s target=%s", self.source_id, target.key
            )
            return AdapterResult.ok({})
        return _to_result(payload, relative_path)


def _to_result(payload: Any, relative_path: str) -> AdapterResult:
    if not isinstance(payload, Mapping):
        raise SourceUnavailableError(f"fixture {relative_path} must be a JSON object")
    if "success" not in payload:
        return AdapterResult.ok(payload)
    if payload.get("success"):
        fields = payload.get("fields") or {}
        if not isinstance(fields, Mapping):
            raise SourceUnavailableError(f"fixture {relative_path} fields must be an object")
        return AdapterResult.ok(fields)
    errors = payload.get("errors") or []
    return AdapterResult.failed(*[str(error) for error in errors])


def build_fixture_store(config: Settings | None = None) -> FixtureStore:
    config = config or settings
    if config.prospect_fixture_base_url:
        return HttpFixtureStore(
            base_url=config.prospect_fixture_base_url,
            token=config.prospect_fixture_token,
        )
    return LocalFixtureStore(Path(config.prospect_fixture_dir).expanduser())


def build_source_adapters(config: Settings | None = None) -> dict[str, SourceAdapter]:
    """Return one adapter per source id used by the default pass plan."""
    config = config or settings
    try:
        mode = SourceMode(config.prospect_source_mode.strip().lower())
    except ValueError as exc:
        raise FixtureSourceError(
            f"Unsupported prospect source mode: {config.prospect_source_mode}",
            code="E_MODE_UNSUPPORTED",
        ) from exc
    store = build_fixture_store(config)
    logger.info(
        "Prospect sources mode=%s store=%s", mode.value, type(store).__name__
    )
    return {
        source_id: FixtureSourceAdapter(store, source_id)
        for _, _, source_id, _ in DEFAULT_PASS_PLAN
    }
