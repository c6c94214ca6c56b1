from __future__ import annotations

import logging
from collections.abc import Iterable

from kube2vulcan.src.errors import ConfigError
from kube2vulcan.src.events import PortSpec, ResourceSnapshot

ALLOW_LIST = "allow-list"
FIRST_ELIGIBLE = "first-eligible"
PORT_POLICIES = (ALLOW_LIST, FIRST_ELIGIBLE)

RESERVED_SECURE_PORTS = frozenset({443, 8443})

LOGGER = logging.getLogger(__name__)


def _is_tcp(port: PortSpec) -> bool:
    return port.protocol == "TCP"


class AllowListPortSelector:
    """Selects every declared TCP port that appears in an operator-supplied set.

    One resource may yield several ports, so identifiers must carry the port
    to keep the resulting records apart.
    """

    includes_port_in_identifier = True

    def __init__(self, ports: Iterable[int]) -> None:
        self.ports = frozenset(ports)

    def select(self, snapshot: ResourceSnapshot) -> list[int]:
        selected: list[int] = []
        for port in snapshot.ports:
            if not _is_tcp(port):
                continue
            if port.number in self.ports and port.number not in selected:
                selected.append(port.number)
        return selected


class FirstEligiblePortSelector:
    """Selects the first declared TCP port that is not a reserved TLS port."""

    includes_port_in_identifier = False

    def __init__(self, reserved: Iterable[int] = RESERVED_SECURE_PORTS) -> None:
        self.reserved = frozenset(reserved)

    def select(self, snapshot: ResourceSnapshot) -> list[int]:
        for port in snapshot.ports:
            if _is_tcp(port) and port.number not in self.reserved:
                return [port.number]

        LOGGER.warning(
            "No eligible TCP port on %s/%s (declared: %s)",
            snapshot.namespace,
            snapshot.name,
            ", ".join(f"{p.number}/{p.protocol}" for p in snapshot.ports) or "none",
        )
        return []


PortSelector = AllowListPortSelector | FirstEligiblePortSelector


def build_port_selector(policy: str, ports: Iterable[int] = ()) -> PortSelector:
    if policy == ALLOW_LIST:
        return AllowListPortSelector(ports)
    if policy == FIRST_ELIGIBLE:
        return FirstEligiblePortSelector()
    raise ConfigError(f"unknown port policy {policy!r}; expected one of {', '.join(PORT_POLICIES)}")
