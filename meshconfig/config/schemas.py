"""Pydantic schemas for the mesh config file (camelCase keys, frozen values)."""

from __future__ import annotations

import re
from datetime import timedelta
from enum import Enum
from functools import cache
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> timedelta:
    """Parse "10s", "100ms", "1m30s" (or a number of seconds) into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _seconds(value, value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")
    text = value.strip()
    if text == "0":
        return timedelta(0)
    pos = 0
    seconds = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        seconds += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return _seconds(seconds, value)


def _seconds(seconds: float, raw: Any) -> timedelta:
    # timedelta raises OverflowError for inf/nan and huge values; pydantic only wraps ValueError.
    try:
        return timedelta(seconds=seconds)
    except (OverflowError, ValueError) as e:
        raise ValueError(f"duration out of range {raw!r}") from e


def format_duration(value: timedelta) -> str:
    us = value // timedelta(microseconds=1)
    if us % 1_000_000 == 0:
        return f"{us // 1_000_000}s"
    if us % 1000 == 0:
        return f"{us // 1000}ms"
    return f"{us}us"


Duration = Annotated[timedelta, BeforeValidator(parse_duration), PlainSerializer(format_duration, return_type=str)]
Port = Annotated[int, Field(ge=1, le=65535)]


class IngressControllerMode(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    OFF = "OFF"
    DEFAULT = "DEFAULT"
    STRICT = "STRICT"


class AccessLogEncoding(str, Enum):
    TEXT = "TEXT"
    JSON = "JSON"


class OutboundTrafficMode(str, Enum):
    REGISTRY_ONLY = "REGISTRY_ONLY"
    ALLOW_ANY = "ALLOW_ANY"


class AuthenticationPolicy(str, Enum):
    NONE = "NONE"
    MUTUAL_TLS = "MUTUAL_TLS"


class _MeshModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class OutboundTrafficPolicy(_MeshModel):
    """How sidecars treat traffic to hosts outside the service registry."""

    mode: OutboundTrafficMode = OutboundTrafficMode.ALLOW_ANY


class ProxyConfig(_MeshModel):
    """Default sidecar proxy settings (defaultConfig in the mesh file)."""

    config_path: str = "./etc/istio/proxy"
    binary_path: str = "/usr/local/bin/envoy"
    service_cluster: str = "istio-proxy"
    drain_duration: Duration = timedelta(seconds=45)
    parent_shutdown_duration: Duration = timedelta(seconds=60)
    discovery_address: str = "istiod.istio-system.svc:15012"
    proxy_admin_port: Port = 15000
    status_port: Port = 15020
    control_plane_auth_policy: AuthenticationPolicy = AuthenticationPolicy.MUTUAL_TLS
    stat_name_length: int = Field(189, ge=0)
    concurrency: int = Field(2, ge=0)

    @field_validator("drain_duration", "parent_shutdown_duration")
    @classmethod
    def _at_least_one_second(cls, v: timedelta) -> timedelta:
        if v < timedelta(seconds=1):
            raise ValueError("duration must be at least 1s")
        return v

    @field_validator("discovery_address")
    @classmethod
    def _host_port(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit() or not 1 <= int(port) <= 65535:
            raise ValueError(f"discovery address must be host:port, got {v!r}")
        return v


class MeshConfig(_MeshModel):
    """Mesh-wide settings. Instances are immutable snapshots."""

    proxy_listen_port: Port = 15001
    connect_timeout: Duration = timedelta(seconds=10)
    protocol_detection_timeout: Duration = timedelta(milliseconds=100)
    ingress_class: str = ""
    ingress_service: str = "istio-ingressgateway"
    ingress_controller_mode: IngressControllerMode = IngressControllerMode.DEFAULT
    enable_tracing: bool = True
    access_log_file: str = ""
    access_log_format: str = ""
    access_log_encoding: AccessLogEncoding = AccessLogEncoding.TEXT
    default_config: ProxyConfig = Field(default_factory=ProxyConfig)
    outbound_traffic_policy: OutboundTrafficPolicy = Field(default_factory=OutboundTrafficPolicy)
    enable_auto_mtls: bool = True
    enable_prometheus_merge: bool = True
    trust_domain: str = "cluster.local"
    trust_domain_aliases: tuple[str, ...] = ()
    root_namespace: str = "istio-system"
    dns_refresh_rate: Duration = timedelta(seconds=5)
    default_service_export_to: tuple[str, ...] = ("*",)
    default_virtual_service_export_to: tuple[str, ...] = ("*",)
    default_destination_rule_export_to: tuple[str, ...] = ("*",)

    @field_validator("connect_timeout")
    @classmethod
    def _at_least_one_ms(cls, v: timedelta) -> timedelta:
        if v < timedelta(milliseconds=1):
            raise ValueError("connect timeout must be at least 1ms")
        return v

    @field_validator("trust_domain")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("trust domain must not be empty")
        return v


@cache
def default_mesh_config() -> MeshConfig:
    """
    Default mesh config: upstream defaults with the istio ingress class in STRICT mode.

    Computed once per process on first use and shared by every cache; the
    model is frozen, so callers can hold the reference without copying.
    """
    return MeshConfig(
        ingress_class="istio",
        ingress_controller_mode=IngressControllerMode.STRICT,
    )


class AppSettings(BaseModel):
    """Process settings (loaded from config/app.yaml)."""

    model_config = {"extra": "ignore"}

    host: str = "0.0.0.0"
    port: int = 8080
    mesh_config_file: str = Field(
        "/etc/istio/config/mesh",
        description="Mesh config file to watch; MESH_CONFIG_FILE env overrides.",
    )
    # Seconds the file watcher waits for a burst of writes to settle before notifying.
    watch_debounce: float = Field(0.1, ge=0, description="File watcher debounce in seconds")
