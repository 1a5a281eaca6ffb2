"""
Store metadata snapshot - scoped access to the schema-change history.

open_snapshot() owns one requests.Session for the duration of a `with`
block and yields a MetaSnapshot bound to the first endpoint that answers
its status probe. Nothing is registered process-wide, so concurrent or
repeated runs in one process never share a handle.

Endpoints are the store's HTTP status addresses. The history is read from
GET /ddl/history, which returns every schema-change job the store has
recorded, ordered by job id.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from urllib.parse import urlparse

import requests

from pitr.errors import ConfigError, SnapshotError
from pitr.schemas import SchemaJob

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
STATUS_PATH = "/status"
HISTORY_PATH = "/ddl/history"


def parse_endpoints(urls: Any) -> list[str]:
    """
    Normalize a comma-separated string (or list) of endpoint URLs.

    "host:10080" becomes "http://host:10080". Trailing slashes are removed.

    Raises:
        ConfigError: If no endpoint is given or one is malformed
    """
    if isinstance(urls, str):
        items = urls.split(",")
    else:
        items = list(urls or [])

    endpoints = []
    for item in items:
        item = str(item).strip()
        if not item:
            continue
        if "://" not in item:
            item = f"http://{item}"
        parsed = urlparse(item)
        if parsed.scheme not in ("http", "https"):
            raise ConfigError(f"unsupported endpoint scheme in {item!r}")
        try:
            port = parsed.port
        except ValueError as e:
            raise ConfigError(f"invalid endpoint port in {item!r}") from e
        if not parsed.hostname or port is None:
            raise ConfigError(f"endpoint must be host:port, got {item!r}")
        endpoints.append(f"{parsed.scheme}://{parsed.netloc}{parsed.path.rstrip('/')}")

    if not endpoints:
        raise ConfigError("no store endpoint given")
    return endpoints


class MetaSnapshot:
    """
    Read handle on the store's schema metadata.

    Only valid inside the open_snapshot() block that produced it.
    """

    def __init__(self, session: requests.Session, endpoint: str, server_info: dict, timeout: int):
        self._session = session
        self.endpoint = endpoint
        self.server_info = server_info
        self._timeout = timeout

    def _get_json(self, path: str) -> Any:
        url = f"{self.endpoint}{path}"
        try:
            response = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as e:
            raise SnapshotError(f"GET {url} failed: {e}") from e
        if response.status_code != 200:
            raise SnapshotError(f"GET {url} returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise SnapshotError(f"GET {url} returned invalid JSON: {e}") from e

    def list_history_schema_jobs(self) -> list[SchemaJob]:
        """
        Enumerate every history schema job visible in this snapshot.

        Raises:
            SnapshotError: If the request fails or a job cannot be parsed
        """
        payload = self._get_json(HISTORY_PATH)
        if not isinstance(payload, list):
            raise SnapshotError(f"expected a JSON list from {HISTORY_PATH}, got {type(payload).__name__}")
        jobs = []
        for raw in payload:
            try:
                jobs.append(SchemaJob.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                raise SnapshotError(f"malformed history schema job {raw!r:.200}: {e}") from e
        logger.info(f"Read {len(jobs)} history schema jobs from {self.endpoint}")
        return jobs


@contextmanager
def open_snapshot(
    endpoints: list[str],
    timeout: int = DEFAULT_TIMEOUT,
    session: Optional[requests.Session] = None,
) -> Iterator[MetaSnapshot]:
    """
    Acquire a metadata snapshot from the first reachable endpoint.

    The session is closed when the block exits, whether or not it raised.

    Args:
        endpoints: Normalized endpoint URLs (see parse_endpoints)
        timeout: Per-request timeout in seconds
        session: Session to use instead of a new one (closed on exit)

    Raises:
        SnapshotError: If no endpoint answers
    """
    session = session or requests.Session()
    try:
        snapshot = None
        failures = []
        for endpoint in endpoints:
            url = f"{endpoint}{STATUS_PATH}"
            try:
                response = session.get(url, timeout=timeout)
            except requests.RequestException as e:
                failures.append(f"{endpoint}: {e}")
                continue
            if response.status_code != 200:
                failures.append(f"{endpoint}: HTTP {response.status_code}")
                continue
            try:
                info = response.json()
            except ValueError:
                info = {}
            snapshot = MetaSnapshot(session, endpoint, info if isinstance(info, dict) else {}, timeout)
            logger.info(f"Acquired metadata snapshot from {endpoint} (version {snapshot.server_info.get('version', 'unknown')})")
            break

        if snapshot is None:
            raise SnapshotError("no store endpoint reachable: " + "; ".join(failures))
        yield snapshot
    finally:
        session.close()
        logger.debug("Released metadata snapshot session")
