from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from kube2vulcan.src.events import ResourceSnapshot

VULCAND_ROOT = "/vulcand"
BACKENDS_ROOT = f"{VULCAND_ROOT}/backends"
FRONTENDS_ROOT = f"{VULCAND_ROOT}/frontends"
LISTENERS_ROOT = f"{VULCAND_ROOT}/listeners"

IDENTIFIER_SEPARATOR = "-"


@dataclass(frozen=True)
class Endpoint:
    """One proxyable target derived from a pod or service.

    ``port`` is ``None`` when only the resource identity is known, for
    example when unregistering by name.
    """

    name: str
    namespace: str
    address: str | None = None
    port: int | None = None


@dataclass(frozen=True)
class ConfigRecord:
    """The three vulcand keys written for one endpoint, sharing one identifier."""

    identifier: str
    backend_key: str
    backend_value: str
    server_key: str
    server_value: str
    frontend_key: str
    frontend_value: str

    def items(self) -> Iterator[tuple[str, str]]:
        """Yield ``(key, value)`` pairs in write order: backend, server, frontend."""
        yield self.backend_key, self.backend_value
        yield self.server_key, self.server_value
        yield self.frontend_key, self.frontend_value


def _escape(part: str) -> str:
    return part.replace(IDENTIFIER_SEPARATOR, IDENTIFIER_SEPARATOR * 2)


def compose_identifier(namespace: str, name: str, port: int | None = None) -> str:
    """Compose the identifier shared by every key of one endpoint.

    Hyphens inside a part are doubled before joining with a single hyphen,
    so ``("a-b", "c")`` and ``("a", "b-c")`` give ``a--b-c`` and ``a-b--c``.
    Kubernetes names never start or end with a hyphen, which keeps the
    composition reversible with :func:`split_identifier`.
    """
    parts = [_escape(namespace), _escape(name)]
    if port is not None:
        parts.append(str(port))
    return IDENTIFIER_SEPARATOR.join(parts)


def split_identifier(identifier: str) -> tuple[str, ...]:
    """Split an identifier back into its unescaped parts.

    Returns an empty tuple for strings that could not have been produced by
    :func:`compose_identifier` (empty parts or a dangling escape).
    """
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(identifier):
        char = identifier[i]
        if char != IDENTIFIER_SEPARATOR:
            current.append(char)
            i += 1
            continue
        if identifier.startswith(IDENTIFIER_SEPARATOR * 2, i):
            current.append(IDENTIFIER_SEPARATOR)
            i += 2
            continue
        if not current:
            return ()
        parts.append("".join(current))
        current = []
        i += 1

    if not current:
        return ()
    parts.append("".join(current))
    return tuple(parts)


def identifier_matches(identifier: str, namespace: str, name: str) -> bool:
    """Return True when ``identifier`` belongs to exactly this namespace and name."""
    parts = split_identifier(identifier)
    if len(parts) == 2:
        return parts == (namespace, name)
    if len(parts) == 3:
        return parts[:2] == (namespace, name) and parts[2].isdigit()
    return False


def _encode(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(", ", ": "))


class ConfigTranslator:
    """Builds vulcand configuration records for endpoints."""

    def __init__(self, pass_host_header: bool = False, port_in_identifier: bool = True) -> None:
        self.pass_host_header = pass_host_header
        self.port_in_identifier = port_in_identifier

    def identifier_for(self, endpoint: Endpoint) -> str:
        port = endpoint.port if self.port_in_identifier else None
        return compose_identifier(endpoint.namespace, endpoint.name, port)

    def route_for(self, endpoint: Endpoint) -> str:
        rule = f"HostRegexp(`{endpoint.name}.{endpoint.namespace}.*`)"
        if self.port_in_identifier and endpoint.port is not None:
            rule += f" && Port(`{endpoint.port}`)"
        return rule

    def to_record(self, endpoint: Endpoint) -> ConfigRecord:
        if endpoint.address is None or endpoint.port is None:
            raise ValueError(
                f"endpoint {endpoint.namespace}/{endpoint.name} needs an address and a port"
            )

        identifier = self.identifier_for(endpoint)
        return ConfigRecord(
            identifier=identifier,
            backend_key=backend_dir(identifier) + "/backend",
            backend_value=_encode({"Type": "http"}),
            server_key=backend_dir(identifier) + "/servers/svc",
            server_value=_encode({"URL": f"http://{endpoint.address}:{endpoint.port}"}),
            frontend_key=frontend_dir(identifier) + "/frontend",
            frontend_value=_encode(
                {
                    "Type": "http",
                    "BackendId": identifier,
                    "Route": self.route_for(endpoint),
                    "Settings": {"PassHostHeader": self.pass_host_header},
                }
            ),
        )

    @staticmethod
    def endpoints_for(snapshot: ResourceSnapshot, ports: Iterable[int]) -> list[Endpoint]:
        return [
            Endpoint(
                name=snapshot.name,
                namespace=snapshot.namespace,
                address=snapshot.address,
                port=port,
            )
            for port in ports
        ]

    @staticmethod
    def listener_record(port: int) -> tuple[str, str]:
        return (
            f"{LISTENERS_ROOT}/{port}",
            _encode(
                {
                    "Protocol": "http",
                    "Address": {"Network": "tcp", "Address": f"0.0.0.0:{port}"},
                }
            ),
        )


def backend_dir(identifier: str) -> str:
    return f"{BACKENDS_ROOT}/{identifier}"


def frontend_dir(identifier: str) -> str:
    return f"{FRONTENDS_ROOT}/{identifier}"
