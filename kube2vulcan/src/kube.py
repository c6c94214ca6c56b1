from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.watch.watch import iter_resp_lines
from urllib3.exceptions import HTTPError

from kube2vulcan.src.errors import StreamError, StreamOpenError
from kube2vulcan.src.events import POD, SERVICE

LOGGER = logging.getLogger(__name__)


def api_host(master: str) -> str:
    """Return the API server URL for ``host:port`` or a full URL."""
    master = master.strip().rstrip("/")
    if "://" in master:
        return master
    return f"http://{master}"


def build_core_api(master: str) -> CoreV1Api:
    """Return a CoreV1 API client bound to the given Kubernetes API address."""
    configuration = client.Configuration()
    configuration.host = api_host(master)
    return client.CoreV1Api(client.ApiClient(configuration))


class WatchStream:
    """An open watch connection yielding one raw JSON message per line."""

    def __init__(self, response: Any, kind: str) -> None:
        self.response = response
        self.kind = kind
        self._lines: Iterator[str] = iter_resp_lines(response)

    def next_message(self) -> str:
        """Block until the next message arrives.

        Raises :class:`StreamError` when the server closes the stream or the
        connection fails.
        """
        try:
            return next(self._lines)
        except StopIteration:
            raise StreamError(f"{self.kind} watch stream closed by server") from None
        except (HTTPError, OSError) as exc:
            raise StreamError(f"{self.kind} watch stream failed: {exc}") from exc

    def close(self) -> None:
        try:
            self.response.close()
            self.response.release_conn()
        except (HTTPError, OSError):
            LOGGER.debug("Ignoring error while closing %s watch stream", self.kind, exc_info=True)


class WatchStreamConnector:
    """Opens watch streams for one resource collection across all namespaces."""

    def __init__(self, core_api: CoreV1Api, kind: str) -> None:
        self.core_api = core_api
        self.kind = kind
        if kind == POD:
            self._list = core_api.list_pod_for_all_namespaces
        elif kind == SERVICE:
            self._list = core_api.list_service_for_all_namespaces
        else:
            raise ValueError(f"unsupported resource kind: {kind!r}")

    def open(self) -> WatchStream:
        host = getattr(getattr(self.core_api, "api_client", None), "configuration", None)
        LOGGER.info(
            "Opening %s watch on Kubernetes API %s",
            self.kind,
            getattr(host, "host", "<unknown>"),
        )
        try:
            response = self._list(watch=True, _preload_content=False)
        except ApiException as exc:
            raise StreamOpenError(
                f"Kubernetes API refused {self.kind} watch (status={exc.status}): {exc.reason}"
            ) from exc
        except (HTTPError, OSError) as exc:
            raise StreamOpenError(f"cannot connect {self.kind} watch: {exc}") from exc
        return WatchStream(response, self.kind)
