from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from kube2vulcan.src.errors import DecodeError

POD = "pod"
SERVICE = "service"
RESOURCE_KINDS = (POD, SERVICE)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass(frozen=True)
class PortSpec:
    """A single declared port of a pod container or a service."""

    number: int
    protocol: str = "TCP"
    name: str | None = None


@dataclass(frozen=True)
class PodSnapshot:
    """Read-only view of the parts of a Pod the bridge cares about.

    ``ports`` holds every container port, flattened in container order.
    """

    name: str
    namespace: str
    phase: str | None
    address: str | None
    ports: tuple[PortSpec, ...] = ()


@dataclass(frozen=True)
class ServiceSnapshot:
    """Read-only view of the parts of a Service the bridge cares about."""

    name: str
    namespace: str
    address: str | None
    ports: tuple[PortSpec, ...] = ()


ResourceSnapshot = PodSnapshot | ServiceSnapshot


@dataclass(frozen=True)
class WatchEvent:
    """One decoded watch message.

    ``action`` is the raw envelope ``type``; values other than ``ADDED``,
    ``MODIFIED`` and ``DELETED`` are kept as-is so the caller can drop them.
    """

    action: str
    kind: str
    snapshot: ResourceSnapshot


def _mapping(value: Any, field: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"{field} must be an object, got {type(value).__name__}")
    return value


def _decode_port(raw: Any, number_field: str) -> PortSpec:
    port = _mapping(raw, "port")
    number = port.get(number_field)
    if isinstance(number, bool) or not isinstance(number, int):
        raise DecodeError(f"port {number_field} must be an integer, got {number!r}")
    return PortSpec(
        number=number,
        protocol=port.get("protocol") or "TCP",
        name=port.get("name"),
    )


def _decode_metadata(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = _mapping(obj.get("metadata"), "metadata")
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise DecodeError("metadata.name is missing")
    namespace = metadata.get("namespace") or "default"
    return name, namespace


def decode_pod(obj: dict[str, Any]) -> PodSnapshot:
    name, namespace = _decode_metadata(obj)
    spec = _mapping(obj.get("spec"), "spec")
    status = _mapping(obj.get("status"), "status")

    ports: list[PortSpec] = []
    for container in spec.get("containers") or []:
        container = _mapping(container, "container")
        for port in container.get("ports") or []:
            ports.append(_decode_port(port, "containerPort"))

    return PodSnapshot(
        name=name,
        namespace=namespace,
        phase=status.get("phase"),
        address=status.get("podIP") or None,
        ports=tuple(ports),
    )


def decode_service(obj: dict[str, Any]) -> ServiceSnapshot:
    name, namespace = _decode_metadata(obj)
    spec = _mapping(obj.get("spec"), "spec")
    cluster_ip = spec.get("clusterIP")
    if cluster_ip == "None":
        # Headless service, nothing to route to.
        cluster_ip = None

    return ServiceSnapshot(
        name=name,
        namespace=namespace,
        address=cluster_ip or None,
        ports=tuple(_decode_port(port, "port") for port in spec.get("ports") or []),
    )


_OBJECT_DECODERS = {
    POD: decode_pod,
    SERVICE: decode_service,
}


def decode_event(raw: str | bytes, kind: str) -> WatchEvent:
    """Decode one raw watch message for a subscription of the given kind.

    The envelope is parsed first; the embedded object is then decoded
    according to ``kind``, not according to the object's own ``kind`` field.
    An unknown or missing ``type`` is not an error.
    """
    try:
        decoder = _OBJECT_DECODERS[kind]
    except KeyError:
        raise ValueError(f"unsupported resource kind: {kind!r}") from None

    try:
        envelope = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(f"malformed watch message: {exc}") from exc
    if not isinstance(envelope, dict):
        raise DecodeError("watch message is not a JSON object")

    obj = envelope.get("object")
    if not isinstance(obj, dict):
        raise DecodeError("watch message has no object")

    action = envelope.get("type")
    return WatchEvent(
        action=action if isinstance(action, str) else "",
        kind=kind,
        snapshot=decoder(obj),
    )
