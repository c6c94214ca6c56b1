from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

import requests

from kube2vulcan.src.errors import ConfigError, StoreError, StoreUnavailableError
from kube2vulcan.src.metrics import METRICS
from kube2vulcan.src.translator import (
    BACKENDS_ROOT,
    FRONTENDS_ROOT,
    LISTENERS_ROOT,
    ConfigTranslator,
    Endpoint,
    backend_dir,
    frontend_dir,
    identifier_matches,
)

# etcd v2 "Key not found"
ETCD_KEY_NOT_FOUND = 100

DIRECT = "direct"
SCAN = "scan"
UNREGISTER_STRATEGIES = (DIRECT, SCAN)

LOGGER = logging.getLogger(__name__)


def parse_endpoints(raw: str) -> list[str]:
    """Split a comma-separated etcd endpoint list, adding ``http://`` where missing."""
    endpoints = []
    for part in raw.split(","):
        part = part.strip().rstrip("/")
        if not part:
            continue
        if "://" not in part:
            part = f"http://{part}"
        endpoints.append(part)
    if not endpoints:
        raise ConfigError("at least one etcd endpoint is required")
    return endpoints


class EtcdKeysClient:
    """Minimal client for the etcd v2 keys API used by vulcand.

    Requests go to the first endpoint that answers; connection failures and
    timeouts fall through to the next endpoint in order.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        timeout: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        if not endpoints:
            raise ConfigError("at least one etcd endpoint is required")
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, key: str, **kwargs: Any) -> requests.Response:
        last_error: Exception | None = None
        for endpoint in self.endpoints:
            url = f"{endpoint}/v2/keys{key}"
            try:
                return self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                LOGGER.warning("etcd endpoint %s unavailable: %s", endpoint, exc)
                last_error = exc
            except requests.RequestException as exc:
                raise StoreError(f"etcd {method} {key} failed: {exc}") from exc
        raise StoreUnavailableError(
            f"no etcd endpoint reachable for {method} {key}: {last_error}"
        )

    @staticmethod
    def _error_for(response: requests.Response, method: str, key: str) -> StoreError:
        error_code = None
        message = response.reason or ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error_code = body.get("errorCode")
            message = body.get("message") or message
        return StoreError(
            f"etcd {method} {key} failed with HTTP {response.status_code}: {message}",
            error_code=error_code,
        )

    @staticmethod
    def _is_not_found(response: requests.Response) -> bool:
        if response.status_code != 404:
            return False
        try:
            body = response.json()
        except ValueError:
            return True
        if not isinstance(body, dict):
            return True
        return body.get("errorCode", ETCD_KEY_NOT_FOUND) == ETCD_KEY_NOT_FOUND

    def set(self, key: str, value: str) -> None:
        response = self._request("PUT", key, data={"value": value})
        if response.status_code not in {200, 201}:
            raise self._error_for(response, "PUT", key)

    def get(self, key: str) -> dict[str, Any] | None:
        """Return the etcd node for ``key``, or ``None`` when it does not exist."""
        response = self._request("GET", key)
        if self._is_not_found(response):
            return None
        if response.status_code != 200:
            raise self._error_for(response, "GET", key)
        try:
            body = response.json()
        except ValueError as exc:
            raise StoreError(f"etcd GET {key} returned a malformed body: {exc}") from exc
        if not isinstance(body, dict):
            raise StoreError(f"etcd GET {key} returned a malformed body")
        return body.get("node")

    def list_children(self, key: str) -> list[str]:
        """Return the full keys of the direct children of directory ``key``."""
        node = self.get(key)
        if node is None:
            return []
        return [child["key"] for child in node.get("nodes") or [] if "key" in child]

    def delete(self, key: str, recursive: bool = False) -> bool:
        """Delete ``key``; returns False when it was already absent."""
        params = {"recursive": "true"} if recursive else None
        response = self._request("DELETE", key, params=params)
        if self._is_not_found(response):
            return False
        if response.status_code != 200:
            raise self._error_for(response, "DELETE", key)
        return True

    def close(self) -> None:
        self.session.close()


class VulcandRegistry:
    """Registers and unregisters endpoints as vulcand backends and frontends.

    Store failures are logged and counted here and never propagate: a failed
    write abandons the rest of that endpoint's writes without rolling back
    what was already written.
    """

    def __init__(
        self,
        store: EtcdKeysClient,
        translator: ConfigTranslator,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.translator = translator
        self.logger = logger or LOGGER

    def register(self, endpoint: Endpoint) -> bool:
        record = self.translator.to_record(endpoint)
        self.logger.info(
            "Register %s/%s listening on %s:%s as %s",
            endpoint.namespace,
            endpoint.name,
            endpoint.address,
            endpoint.port,
            record.identifier,
        )
        for key, value in record.items():
            try:
                self.store.set(key, value)
            except StoreError:
                METRICS.store_errors_total.labels(operation="set").inc()
                self.logger.exception("Can't write vulcand key %s", key)
                return False
        return True

    def _delete_dir(self, key: str) -> bool:
        try:
            deleted = self.store.delete(key, recursive=True)
        except StoreError:
            METRICS.store_errors_total.labels(operation="delete").inc()
            self.logger.exception("Can't delete vulcand key %s", key)
            return False
        if not deleted:
            self.logger.debug("Key %s already absent", key)
        return deleted

    def unregister(self, endpoint: Endpoint) -> None:
        """Delete the backend and frontend directories of exactly this endpoint."""
        identifier = self.translator.identifier_for(endpoint)
        self.logger.info(
            "Unregister %s/%s (%s)", endpoint.namespace, endpoint.name, identifier
        )
        self._delete_dir(backend_dir(identifier))
        self._delete_dir(frontend_dir(identifier))

    def unregister_resource(self, namespace: str, name: str) -> int:
        """Delete every frontend and backend whose identifier belongs to this resource.

        Matching compares whole identifier parts, so ``foo-bar`` never removes
        the records of ``foo-barbaz``. Returns the number of directories deleted.
        """
        self.logger.info("Unregister %s/%s by scan", namespace, name)
        removed = 0
        for root in (FRONTENDS_ROOT, BACKENDS_ROOT):
            try:
                children = self.store.list_children(root)
            except StoreError:
                METRICS.store_errors_total.labels(operation="list").inc()
                self.logger.exception("Can't list %s", root)
                continue

            for key in children:
                identifier = key.rstrip("/").rsplit("/", 1)[-1]
                if not identifier_matches(identifier, namespace, name):
                    continue
                if self._delete_dir(key):
                    removed += 1
        return removed

    def sync_listeners(self, ports: Iterable[int]) -> None:
        """Replace vulcand's extra listeners with one per configured port but the first.

        The first port is vulcand's default listener and registering it again
        makes vulcand fail to bind.
        """
        ports = list(ports)
        self.logger.info("Enable extra vulcand listen ports: %s", ports[1:])
        self._delete_dir(LISTENERS_ROOT)

        for port in ports[1:]:
            key, value = self.translator.listener_record(port)
            try:
                self.store.set(key, value)
            except StoreError:
                METRICS.store_errors_total.labels(operation="set").inc()
                self.logger.exception("Can't create listen port on key %s", key)
