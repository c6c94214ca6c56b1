from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from kube2vulcan.src.errors import ConfigError
from kube2vulcan.src.ports import ALLOW_LIST, PORT_POLICIES
from kube2vulcan.src.store import DIRECT, UNREGISTER_STRATEGIES, parse_endpoints


@dataclass(frozen=True)
class BridgeConfig:
    """Immutable bridge configuration loaded at startup.

    Attributes:
        master:              Kubernetes API address (``host:port`` or URL).
        etcd_endpoints:      etcd URLs backing vulcand, tried in order.
        ports:               Ports eligible for proxying under ``allow-list``.
                             All but the first also become vulcand listeners.
        retain_host_header:  Value of vulcand's ``PassHostHeader`` setting.
        port_policy:         ``allow-list`` or ``first-eligible``.
        unregister_strategy: ``direct`` or ``scan``.
    """

    master: str
    etcd_endpoints: tuple[str, ...]
    ports: tuple[int, ...] = (8000,)
    retain_host_header: bool = False
    port_policy: str = ALLOW_LIST
    unregister_strategy: str = DIRECT
    store_timeout_seconds: float = 1.0
    reconnect_delay_seconds: float = 5.0
    health_port: int = 8080


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_ports(raw: str) -> tuple[int, ...]:
    """Parse a comma-separated port list such as ``8000,8080``."""
    ports: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            port = int(part)
        except ValueError as exc:
            raise ConfigError(f"invalid port {part!r} in {raw!r}") from exc
        if not 1 <= port <= 65535:
            raise ConfigError(f"port {port} out of range in {raw!r}")
        if port not in ports:
            ports.append(port)
    return tuple(ports)


def _number(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    integer: bool = False,
) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw) if integer else float(raw)
        except ValueError as exc:
            kind = "an integer" if integer else "a number"
            raise ConfigError(f"{name} must be {kind}, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> BridgeConfig:
    """Load the bridge configuration from the environment.

    ``KUBE_MASTER`` and ``ETCD_ENDPOINTS`` are required; everything else has
    a default. Raises :class:`ConfigError` on missing or invalid values so the
    process stops before opening any connection.
    """
    values = env if env is not None else os.environ

    master = (values.get("KUBE_MASTER") or "").strip()
    etcd = (values.get("ETCD_ENDPOINTS") or "").strip()
    if not master or not etcd:
        raise ConfigError(
            "Missing required properties. Usage: KUBE_MASTER=[k8s-master-ip]:[port] "
            "ETCD_ENDPOINTS=http://[etcd-ip]:[port],http://[2nd-etcd-ip]:[port],... "
            "VULCAND_PORTS=8000,8080"
        )

    port_policy = (values.get("PORT_POLICY") or ALLOW_LIST).strip()
    if port_policy not in PORT_POLICIES:
        raise ConfigError(
            f"PORT_POLICY must be one of {', '.join(PORT_POLICIES)}, got: {port_policy!r}"
        )

    unregister_strategy = (values.get("UNREGISTER_STRATEGY") or DIRECT).strip()
    if unregister_strategy not in UNREGISTER_STRATEGIES:
        raise ConfigError(
            "UNREGISTER_STRATEGY must be one of "
            f"{', '.join(UNREGISTER_STRATEGIES)}, got: {unregister_strategy!r}"
        )

    ports = parse_ports(values.get("VULCAND_PORTS", "8000"))
    if not ports and port_policy == ALLOW_LIST:
        raise ConfigError("VULCAND_PORTS must list at least one port for the allow-list policy")

    return BridgeConfig(
        master=master,
        etcd_endpoints=tuple(parse_endpoints(etcd)),
        ports=ports,
        retain_host_header=parse_bool(values.get("RETAIN_HOST_HEADER")),
        port_policy=port_policy,
        unregister_strategy=unregister_strategy,
        store_timeout_seconds=_number(values, "STORE_TIMEOUT_SECONDS", 1.0, minimum=0.1),
        reconnect_delay_seconds=_number(values, "RECONNECT_DELAY_SECONDS", 5.0, minimum=0),
        health_port=int(
            _number(values, "HEALTH_PORT", 8080, minimum=0, maximum=65535, integer=True)
        ),
    )
