from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from kube2vulcan.src.errors import ConfigError, StoreError, StoreUnavailableError
from kube2vulcan.src.store import EtcdKeysClient, VulcandRegistry, parse_endpoints
from kube2vulcan.src.translator import ConfigTranslator, Endpoint


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None, reason: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.reason = reason

    def json(self) -> Any:
        if self.body is None:
            raise ValueError("no body")
        return self.body


class FakeSession:
    def __init__(
        self,
        responses: list[FakeResponse] | None = None,
        down: set[str] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.down = down or set()
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False
        self.error: Exception | None = None

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((method, url, kwargs))
        if any(url.startswith(endpoint) for endpoint in self.down):
            raise requests.ConnectionError(f"refused: {url}")
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def close(self) -> None:
        self.closed = True


NOT_FOUND = FakeResponse(404, {"errorCode": 100, "message": "Key not found"})


def make_client(
    *responses: FakeResponse, down: set[str] | None = None
) -> tuple[EtcdKeysClient, FakeSession]:
    session = FakeSession(list(responses), down=down)
    client = EtcdKeysClient(
        ["http://etcd-0:2379", "http://etcd-1:2379"],
        timeout=1.0,
        session=session,  # type: ignore[arg-type]
    )
    return client, session


# ---------------------------------------------------------------------------
# etcd keys client
# ---------------------------------------------------------------------------


def test_parse_endpoints_adds_scheme_and_drops_blanks() -> None:
    assert parse_endpoints("etcd-0:2379, http://etcd-1:2379/ ,") == [
        "http://etcd-0:2379",
        "http://etcd-1:2379",
    ]
    with pytest.raises(ConfigError):
        parse_endpoints(" , ")


def test_set_puts_value_with_timeout() -> None:
    client, session = make_client(FakeResponse(201, {"action": "set"}))

    client.set("/vulcand/backends/x/backend", '{"Type": "http"}')

    method, url, kwargs = session.requests[0]
    assert method == "PUT"
    assert url == "http://etcd-0:2379/v2/keys/vulcand/backends/x/backend"
    assert kwargs["data"] == {"value": '{"Type": "http"}'}
    assert kwargs["timeout"] == 1.0


def test_set_raises_store_error_with_etcd_code() -> None:
    client, _ = make_client(
        FakeResponse(403, {"errorCode": 110, "message": "The request requires user authentication"})
    )

    with pytest.raises(StoreError) as excinfo:
        client.set("/vulcand/backends/x/backend", "{}")

    assert excinfo.value.error_code == 110
    assert "user authentication" in str(excinfo.value)


def test_falls_over_to_next_endpoint() -> None:
    client, session = make_client(FakeResponse(200, {"action": "set"}), down={"http://etcd-0"})

    client.set("/k", "v")

    assert [url for _, url, _ in session.requests] == [
        "http://etcd-0:2379/v2/keys/k",
        "http://etcd-1:2379/v2/keys/k",
    ]


def test_all_endpoints_down_raises_unavailable() -> None:
    client, _ = make_client(down={"http://etcd-0", "http://etcd-1"})

    with pytest.raises(StoreUnavailableError, match="no etcd endpoint reachable"):
        client.set("/k", "v")


def test_broken_response_raises_store_error_without_failover() -> None:
    client, session = make_client()
    session.error = requests.exceptions.ChunkedEncodingError("truncated response")

    with pytest.raises(StoreError, match="truncated response"):
        client.set("/k", "v")

    assert len(session.requests) == 1


@pytest.mark.parametrize("body", [None, ["not", "an", "object"]])
def test_get_malformed_body_raises_store_error(body: Any) -> None:
    client, _ = make_client(FakeResponse(200, body))

    with pytest.raises(StoreError, match="malformed body"):
        client.get("/vulcand/frontends")


def test_get_missing_key_returns_none() -> None:
    client, _ = make_client(NOT_FOUND)

    assert client.get("/vulcand/frontends") is None


def test_list_children_returns_child_keys() -> None:
    client, _ = make_client(
        FakeResponse(
            200,
            {
                "action": "get",
                "node": {
                    "key": "/vulcand/frontends",
                    "dir": True,
                    "nodes": [
                        {"key": "/vulcand/frontends/default-web-8000", "dir": True},
                        {"key": "/vulcand/frontends/shop-api-80", "dir": True},
                    ],
                },
            },
        )
    )

    assert client.list_children("/vulcand/frontends") == [
        "/vulcand/frontends/default-web-8000",
        "/vulcand/frontends/shop-api-80",
    ]


def test_list_children_of_missing_dir_is_empty() -> None:
    client, _ = make_client(NOT_FOUND)

    assert client.list_children("/vulcand/backends") == []


def test_delete_recursive_and_absent() -> None:
    client, session = make_client(FakeResponse(200, {"action": "delete"}), NOT_FOUND)

    assert client.delete("/vulcand/backends/x", recursive=True) is True
    assert client.delete("/vulcand/backends/x", recursive=True) is False
    assert session.requests[0][2]["params"] == {"recursive": "true"}


def test_delete_other_failures_raise() -> None:
    client, _ = make_client(FakeResponse(500, None, reason="Internal Server Error"))

    with pytest.raises(StoreError, match="HTTP 500: Internal Server Error"):
        client.delete("/vulcand/listeners", recursive=True)


def test_close_closes_session() -> None:
    client, session = make_client()

    client.close()

    assert session.closed is True


# ---------------------------------------------------------------------------
# vulcand registry
# ---------------------------------------------------------------------------

WEB = Endpoint(name="web", namespace="default", address="10.1.2.3", port=8000)


def make_registry(etcd: Any, port_in_identifier: bool = True) -> VulcandRegistry:
    translator = ConfigTranslator(pass_host_header=False, port_in_identifier=port_in_identifier)
    return VulcandRegistry(store=etcd, translator=translator)


def test_register_writes_three_keys(etcd: Any) -> None:
    registry = make_registry(etcd)

    assert registry.register(WEB) is True

    assert etcd.keys_under("/vulcand/") == [
        "/vulcand/backends/default-web-8000/backend",
        "/vulcand/backends/default-web-8000/servers/svc",
        "/vulcand/frontends/default-web-8000/frontend",
    ]


def test_register_again_overwrites_server(etcd: Any) -> None:
    registry = make_registry(etcd)
    registry.register(WEB)

    moved = Endpoint(name="web", namespace="default", address="10.9.9.9", port=8000)
    registry.register(moved)

    servers = etcd.keys_under("/vulcand/backends/default-web-8000/servers/")
    assert servers == ["/vulcand/backends/default-web-8000/servers/svc"]
    assert json.loads(etcd.data[servers[0]]) == {"URL": "http://10.9.9.9:8000"}


def test_register_abandons_remaining_writes_after_failure(etcd: Any) -> None:
    registry = make_registry(etcd)
    etcd.fail_set_keys.add("/vulcand/backends/default-web-8000/servers/svc")

    assert registry.register(WEB) is False

    assert etcd.keys_under("/vulcand/") == ["/vulcand/backends/default-web-8000/backend"]


def test_unregister_removes_only_that_endpoint(etcd: Any) -> None:
    registry = make_registry(etcd)
    other = Endpoint(name="web-2", namespace="default", address="10.1.2.4", port=8000)
    registry.register(WEB)
    registry.register(other)

    registry.unregister(Endpoint(name="web", namespace="default", port=8000))

    assert etcd.keys_under("/vulcand/") == [
        "/vulcand/backends/default-web--2-8000/backend",
        "/vulcand/backends/default-web--2-8000/servers/svc",
        "/vulcand/frontends/default-web--2-8000/frontend",
    ]


def test_unregister_unknown_endpoint_is_noop(etcd: Any) -> None:
    registry = make_registry(etcd)

    registry.unregister(Endpoint(name="ghost", namespace="default", port=8000))
    registry.unregister(Endpoint(name="ghost", namespace="default", port=8000))

    assert etcd.data == {}


def test_unregister_logs_store_failures(etcd: Any, caplog: pytest.LogCaptureFixture) -> None:
    registry = make_registry(etcd)
    registry.register(WEB)
    etcd.fail_delete_keys.add("/vulcand/backends/default-web-8000")

    registry.unregister(WEB)

    assert "Can't delete vulcand key /vulcand/backends/default-web-8000" in caplog.text
    assert etcd.keys_under("/vulcand/frontends/") == []


def test_scan_unregister_anchors_on_identifier_parts(etcd: Any) -> None:
    registry = make_registry(etcd)
    for name, namespace, address, port in [
        ("foo-bar", "default", "10.0.0.1", 8000),
        ("foo-bar", "default", "10.0.0.1", 8080),
        ("foo-barbaz", "default", "10.0.0.2", 8000),
        ("bar", "default-foo", "10.0.0.3", 8000),
    ]:
        registry.register(Endpoint(name=name, namespace=namespace, address=address, port=port))

    removed = registry.unregister_resource("default", "foo-bar")

    assert removed == 4
    assert sorted({key.split("/")[3] for key in etcd.keys_under("/vulcand/")}) == [
        "default--foo-bar-8000",
        "default-foo--barbaz-8000",
    ]


def test_register_contains_transport_errors(caplog: pytest.LogCaptureFixture) -> None:
    client, session = make_client()
    session.error = requests.exceptions.ChunkedEncodingError("truncated response")
    registry = VulcandRegistry(store=client, translator=ConfigTranslator())

    assert registry.register(WEB) is False
    registry.unregister(WEB)
    assert registry.unregister_resource("default", "web") == 0

    assert "Can't write vulcand key /vulcand/backends/default-web-8000/backend" in caplog.text
    assert "Can't list /vulcand/frontends" in caplog.text


def test_scan_unregister_counts_only_successful_deletes(
    etcd: Any, caplog: pytest.LogCaptureFixture
) -> None:
    registry = make_registry(etcd)
    registry.register(WEB)
    etcd.fail_delete_keys.add("/vulcand/backends/default-web-8000")

    assert registry.unregister_resource("default", "web") == 1
    assert etcd.keys_under("/vulcand/frontends/") == []
    assert "Can't delete vulcand key /vulcand/backends/default-web-8000" in caplog.text


def test_scan_unregister_without_records_is_noop(etcd: Any) -> None:
    registry = make_registry(etcd)

    assert registry.unregister_resource("default", "web") == 0


def test_scan_unregister_continues_after_list_failure(etcd: Any) -> None:
    registry = make_registry(etcd)
    registry.register(WEB)
    etcd.fail_list_keys.add("/vulcand/frontends")

    assert registry.unregister_resource("default", "web") == 1
    assert etcd.keys_under("/vulcand/backends/") == []
    assert etcd.keys_under("/vulcand/frontends/") == [
        "/vulcand/frontends/default-web-8000/frontend"
    ]


def test_sync_listeners_skips_first_port_and_replaces_old(etcd: Any) -> None:
    registry = make_registry(etcd)
    etcd.data["/vulcand/listeners/9999"] = "{}"

    registry.sync_listeners([8000, 8080, 8081])

    assert etcd.keys_under("/vulcand/listeners/") == [
        "/vulcand/listeners/8080",
        "/vulcand/listeners/8081",
    ]
    assert json.loads(etcd.data["/vulcand/listeners/8080"]) == {
        "Protocol": "http",
        "Address": {"Network": "tcp", "Address": "0.0.0.0:8080"},
    }
