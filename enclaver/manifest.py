"""Loading and validating enclave manifest files."""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import yaml

_T = TypeVar("_T")

_U16_RANGE = (0, 0xFFFF)
_I32_RANGE = (-(2**31), 2**31 - 1)


class ManifestError(ValueError):
    """Raised when a manifest cannot be read or does not validate."""


@dataclass
class Sources:
    app: str
    supervisor: str | None = None
    wrapper: str | None = None


@dataclass
class ServerTls:
    key_file: str
    cert_file: str


@dataclass
class Ingress:
    listen_port: int
    tls: ServerTls | None = None


@dataclass
class Egress:
    proxy_port: int | None = None
    allow: list[str] | None = None
    deny: list[str] | None = None


@dataclass
class Defaults:
    cpu_count: int | None = None
    memory_mb: int | None = None


@dataclass
class KmsProxy:
    listen_port: int
    endpoints: dict[str, str] | None = None


@dataclass
class Api:
    listen_port: int


@dataclass
class Manifest:
    version: str
    name: str
    target: str
    sources: Sources
    ingress: list[Ingress] | None = None
    egress: Egress | None = None
    defaults: Defaults | None = None
    kms_proxy: KmsProxy | None = None
    api: Api | None = None


def _kind(value: Any) -> str:
    return "null" if value is None else type(value).__name__


def _mapping(value: Any, where: str, allowed: tuple[str, ...]) -> dict:
    if not isinstance(value, dict):
        raise ManifestError(f"{where}: expected a mapping, got {_kind(value)}")
    for key in value:
        if key not in allowed:
            raise ManifestError(
                f"{where}: unknown field `{key}`, expected one of {', '.join(allowed)}"
            )
    return value


def _required(data: dict, key: str, where: str) -> Any:
    value = data.get(key)
    if value is None:
        raise ManifestError(f"{where}: missing field `{key}`")
    return value


def _string(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ManifestError(f"{where}: expected a string, got {_kind(value)}")
    return value


def _integer(value: Any, where: str, bounds: tuple[int, int]) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise ManifestError(f"{where}: expected an integer, got {_kind(value)}")
    if not low <= value <= high:
        raise ManifestError(f"{where}: {value} is out of range {low}..={high}")
    return value


def _port(value: Any, where: str) -> int:
    return _integer(value, where, _U16_RANGE)


def _list(value: Any, where: str, item: Callable[[Any, str], _T]) -> list[_T]:
    if not isinstance(value, list):
        raise ManifestError(f"{where}: expected a sequence, got {_kind(value)}")
    return [item(entry, f"{where}[{index}]") for index, entry in enumerate(value)]


def _optional(
    data: dict, key: str, where: str, parse: Callable[[Any, str], _T]
) -> _T | None:
    value = data.get(key)
    return None if value is None else parse(value, f"{where}.{key}")


def _string_map(value: Any, where: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ManifestError(f"{where}: expected a mapping, got {_kind(value)}")
    return {
        _string(key, f"{where} key"): _string(entry, f"{where}.{key}")
        for key, entry in value.items()
    }


def _parse_sources(value: Any, where: str) -> Sources:
    data = _mapping(value, where, ("app", "supervisor", "wrapper"))
    return Sources(
        app=_string(_required(data, "app", where), f"{where}.app"),
        supervisor=_optional(data, "supervisor", where, _string),
        wrapper=_optional(data, "wrapper", where, _string),
    )


def _parse_server_tls(value: Any, where: str) -> ServerTls:
    data = _mapping(value, where, ("key_file", "cert_file"))
    return ServerTls(
        key_file=_string(_required(data, "key_file", where), f"{where}.key_file"),
        cert_file=_string(_required(data, "cert_file", where), f"{where}.cert_file"),
    )


def _parse_ingress(value: Any, where: str) -> Ingress:
    data = _mapping(value, where, ("listen_port", "tls"))
    return Ingress(
        listen_port=_port(_required(data, "listen_port", where), f"{where}.listen_port"),
        tls=_optional(data, "tls", where, _parse_server_tls),
    )


def _parse_egress(value: Any, where: str) -> Egress:
    data = _mapping(value, where, ("proxy_port", "allow", "deny"))

    def strings(entry: Any, at: str) -> list[str]:
        return _list(entry, at, _string)

    return Egress(
        proxy_port=_optional(data, "proxy_port", where, _port),
        allow=_optional(data, "allow", where, strings),
        deny=_optional(data, "deny", where, strings),
    )


def _parse_defaults(value: Any, where: str) -> Defaults:
    data = _mapping(value, where, ("cpu_count", "memory_mb"))

    def i32(entry: Any, at: str) -> int:
        return _integer(entry, at, _I32_RANGE)

    return Defaults(
        cpu_count=_optional(data, "cpu_count", where, i32),
        memory_mb=_optional(data, "memory_mb", where, i32),
    )


def _parse_kms_proxy(value: Any, where: str) -> KmsProxy:
    data = _mapping(value, where, ("listen_port", "endpoints"))
    return KmsProxy(
        listen_port=_port(_required(data, "listen_port", where), f"{where}.listen_port"),
        endpoints=_optional(data, "endpoints", where, _string_map),
    )


def _parse_api(value: Any, where: str) -> Api:
    data = _mapping(value, where, ("listen_port",))
    return Api(
        listen_port=_port(_required(data, "listen_port", where), f"{where}.listen_port")
    )


def _parse_ingress_list(value: Any, where: str) -> list[Ingress]:
    return _list(value, where, _parse_ingress)


_MANIFEST_FIELDS = (
    "version",
    "name",
    "target",
    "sources",
    "ingress",
    "egress",
    "defaults",
    "kms_proxy",
    "api",
)


def parse_manifest(buf: bytes | str) -> Manifest:
    """Parse YAML manifest text, rejecting unknown fields and wrong types."""
    try:
        document = yaml.safe_load(buf)
    except yaml.YAMLError as err:
        raise ManifestError(str(err)) from err

    where = "manifest"
    data = _mapping(document, where, _MANIFEST_FIELDS)
    return Manifest(
        version=_string(_required(data, "version", where), "version"),
        name=_string(_required(data, "name", where), "name"),
        target=_string(_required(data, "target", where), "target"),
        sources=_parse_sources(_required(data, "sources", where), "sources"),
        ingress=_optional(data, "ingress", where, _parse_ingress_list),
        egress=_optional(data, "egress", where, _parse_egress),
        defaults=_optional(data, "defaults", where, _parse_defaults),
        kms_proxy=_optional(data, "kms_proxy", where, _parse_kms_proxy),
        api=_optional(data, "api", where, _parse_api),
    )


def load_manifest_raw(path: str | os.PathLike[str]) -> tuple[bytes, Manifest]:
    """Read a manifest file, returning its raw bytes together with the parsed manifest."""
    path = Path(path)
    try:
        buf = path.read_bytes()
    except OSError as err:
        raise ManifestError(f"failed to open {path}: {err}") from err

    try:
        manifest = parse_manifest(buf)
    except ManifestError as err:
        raise ManifestError(f"invalid configuration in {path}: {err}") from err

    return buf, manifest


def load_manifest(path: str | os.PathLike[str]) -> Manifest:
    """Read and parse a manifest file."""
    _, manifest = load_manifest_raw(path)
    return manifest