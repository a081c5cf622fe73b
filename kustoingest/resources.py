"""Discovery and caching of the storage resources used for queued ingestion."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlsplit

from .errors import HttpError
from .ranked import default_ranked_storage_account_set

_DEFAULT_DATABASE = "NetDefaultDB"
_INITIAL_INTERVAL = 1.0
_MULTIPLIER = 2.0
_RANDOMIZATION = 0.5
_RETRY_COUNT = 4
_FETCH_INTERVAL = 3600.0
_TICK = 30.0
_FETCH_RETRY_SLEEP = 10.0
_AUTH_CACHE_SECONDS = 3600.0


@dataclass
class ResourceURI:
    """A storage resource URI: its account, object (container, queue or table) and SAS."""

    url: str
    account: str
    object_name: str
    sas: dict = field(default_factory=dict)

    def __str__(self):
        return self.url


def _hostname(netloc):
    host = netloc.rsplit("@", 1)[-1]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    return host.split(":", 1)[0]


def parse_uri(resource_uri):
    """Parse a resource URI; it must be https and name an object."""
    try:
        parts = urlsplit(resource_uri)
    except ValueError as exc:
        raise ValueError(f"could not parse resource URI {resource_uri!r}: {exc}") from exc
    if parts.scheme != "https":
        raise ValueError(f"URI scheme must be 'https', was '{parts.scheme}'")
    object_name = parts.path.lstrip("/")
    if not object_name:
        raise ValueError("object name was not provided")
    return ResourceURI(
        url=resource_uri,
        account=_hostname(parts.netloc),
        object_name=object_name,
        sas=parse_qs(parts.query, keep_blank_values=True),
    )


def group_resources_by_storage_account(resources, ranked_accounts):
    """Order resources by the rank of their storage account, best account first."""
    by_account = {}
    for resource in resources:
        by_account.setdefault(resource.account, []).append(resource)

    ranked = []
    for account in ranked_accounts:
        ranked.extend(by_account.get(account.account_name, ()))
    return ranked


@dataclass
class IngestionResources:
    """The queues, blob containers and status tables available for ingestion."""

    queues: list = field(default_factory=list)
    containers: list = field(default_factory=list)
    tables: list = field(default_factory=list)

    def ranked_containers(self, ranked_accounts):
        """Containers ordered by storage account rank."""
        return group_resources_by_storage_account(self.containers, ranked_accounts)

    def ranked_queues(self, ranked_accounts):
        """Queues ordered by storage account rank."""
        return group_resources_by_storage_account(self.queues, ranked_accounts)

    def _import_row(self, resource_type, root, ranked_accounts):
        try:
            uri = parse_uri(root)
        except ValueError as exc:
            raise ValueError(f"the StorageRoot URI received({root}) has an error: {exc}") from exc

        if resource_type == "TempStorage":
            self.containers.append(uri)
            ranked_accounts.register(uri.account)
        elif resource_type == "SecuredReadyForAggregationQueue":
            self.queues.append(uri)
            ranked_accounts.register(uri.account)
        elif resource_type == "IngestionsStatusTable":
            self.tables.append(uri)


def _backoff_delays():
    current = _INITIAL_INTERVAL
    for _ in range(_RETRY_COUNT):
        delta = _RANDOMIZATION * current
        yield random.uniform(current - delta, current + delta)
        current *= _MULTIPLIER


class ResourceManager:
    """Fetches and caches ingestion resources and the ingestion authorization context.

    The client must offer ``mgmt(database, command)`` returning an iterable of rows,
    each a mapping from column name to value.
    """

    def __init__(self, client, ranked_accounts=None, auto_refresh=True):
        self._client = client
        self._ranked = ranked_accounts if ranked_accounts is not None else default_ranked_storage_account_set()
        self._done = threading.Event()
        self._auth_lock = threading.Lock()
        self._fetch_lock = threading.Lock()
        self._auth_context = ""
        self._auth_expires = 0.0
        self._resources = None
        self._last_fetch = None
        self._thread = None
        if auto_refresh:
            self._thread = threading.Thread(target=self._renew, daemon=True)
            self._thread.start()

    def close(self):
        """Stop refreshing resources in the background. Safe to call more than once."""
        self._done.set()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _renew(self):
        elapsed = _FETCH_INTERVAL
        while not self._done.wait(_TICK):
            elapsed += _TICK
            if elapsed >= _FETCH_INTERVAL:
                elapsed = 0.0
                try:
                    self._fetch_retry()
                except Exception:
                    # The next tick or an explicit request will try again.
                    pass

    def _mgmt_with_retry(self, command):
        delays = _backoff_delays()
        while True:
            try:
                return list(self._client.mgmt(_DEFAULT_DATABASE, command))
            except HttpError as exc:
                if not exc.is_throttled():
                    raise
                delay = next(delays, None)
                if delay is None:
                    raise
                time.sleep(delay)

    def auth_context(self):
        """Return the ingestion authorization context, cached for an hour."""
        with self._auth_lock:
            if self._auth_expires > time.monotonic():
                return self._auth_context

            try:
                rows = self._mgmt_with_retry(".get kusto identity token")
            except Exception as exc:
                raise RuntimeError(
                    f"problem getting authorization context from Kusto via Mgmt: {exc}"
                ) from exc

            if not rows:
                raise RuntimeError("call for AuthContext returned no Rows")
            if len(rows) != 1:
                raise RuntimeError("call for AuthContext returned more than 1 Row")

            self._auth_context = rows[0]["AuthorizationContext"]
            self._auth_expires = time.monotonic() + _AUTH_CACHE_SECONDS
            return self._auth_context

    def fetch(self):
        """Retrieve the ingestion resources from the service and cache them."""
        with self._fetch_lock:
            try:
                rows = self._mgmt_with_retry(".get ingestion resources")
            except Exception as exc:
                raise RuntimeError(f"problem getting ingestion resources from Kusto: {exc}") from exc

            resources = IngestionResources()
            for row in rows:
                resources._import_row(row["ResourceTypeName"], row["StorageRoot"], self._ranked)

            self._resources = resources
            self._last_fetch = time.monotonic()

    def _fetch_retry(self):
        attempts = 0
        while not self._done.is_set():
            try:
                self.fetch()
                return
            except Exception as exc:
                attempts += 1
                if attempts > _RETRY_COUNT:
                    raise RuntimeError(f"failed to fetch ingestion resources: {exc}") from exc
                time.sleep(_FETCH_RETRY_SLEEP)

    def get_resources(self):
        """Cached resources, refetched when missing or older than two fetch intervals."""
        last = self._last_fetch
        if last is None or last + 2 * _FETCH_INTERVAL < time.monotonic():
            self._fetch_retry()
        resources = self._resources
        if resources is None:
            raise RuntimeError("manager has not retrieved an Ingestion object yet")
        return resources

    def report_storage_resource_result(self, account_name, success):
        """Record whether using a storage account succeeded."""
        self._ranked.add_result(account_name, success)

    def get_ranked_storage_containers(self):
        """Blob containers ordered by the rank of their storage accounts."""
        resources = self.get_resources()
        return resources.ranked_containers(self._ranked.ranked_shuffled_accounts())

    def get_ranked_storage_queues(self):
        """Queues ordered by the rank of their storage accounts."""
        resources = self.get_resources()
        return resources.ranked_queues(self._ranked.ranked_shuffled_accounts())

    def get_tables(self):
        """Status tables, in the order the service returned them."""
        return list(self.get_resources().tables)