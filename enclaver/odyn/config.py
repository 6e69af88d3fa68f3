"""Supervisor configuration derived from the manifest in the config directory."""

from __future__ import annotations

import logging
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path

from enclaver.constants import HTTP_EGRESS_PROXY_PORT, MANIFEST_FILE_NAME
from enclaver.manifest import Ingress, Manifest, load_manifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListenerConfig:
    """How an ingress port listens: plain TCP, or TLS with the given context."""

    tls: ssl.SSLContext | None = None

    @property
    def is_tls(self) -> bool:
        return self.tls is not None


def _load_tls_server_config(tls_path: Path, ingress: Ingress) -> ssl.SSLContext:
    ingress_path = tls_path / str(ingress.listen_port)
    key_path = ingress_path / "key.pem"
    cert_path = ingress_path / "cert.pem"

    logger.debug("Loading key_file: %s", key_path)
    logger.debug("Loading cert_file: %s", cert_path)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context


@dataclass
class Configuration:
    config_dir: Path
    manifest: Manifest
    listener_configs: dict[int, ListenerConfig] = field(default_factory=dict)

    @classmethod
    def load(cls, config_dir: str | os.PathLike[str]) -> Configuration:
        """Load the manifest and ingress TLS material from ``config_dir``."""
        config_dir = Path(config_dir)
        manifest = load_manifest(config_dir / MANIFEST_FILE_NAME)
        tls_path = config_dir / "tls" / "server"

        listener_configs: dict[int, ListenerConfig] = {}
        for item in manifest.ingress or ():
            if item.tls is not None:
                listener_configs[item.listen_port] = ListenerConfig(
                    _load_tls_server_config(tls_path, item)
                )
            else:
                listener_configs[item.listen_port] = ListenerConfig()

        return cls(config_dir=config_dir, manifest=manifest, listener_configs=listener_configs)

    def egress_proxy_uri(self) -> str | None:
        """The local egress proxy URI, if egress with an allow list is configured."""
        egress = self.manifest.egress
        if egress is None or not egress.allow:
            return None
        port = egress.proxy_port if egress.proxy_port is not None else HTTP_EGRESS_PROXY_PORT
        return f"http://127.0.0.1:{port}"

    def kms_proxy_port(self) -> int | None:
        kms_proxy = self.manifest.kms_proxy
        return None if kms_proxy is None else kms_proxy.listen_port

    def api_port(self) -> int | None:
        api = self.manifest.api
        return None if api is None else api.listen_port

    def endpoint(self, region: str) -> str:
        """The KMS endpoint for ``region``, honouring manifest overrides."""
        kms_proxy = self.manifest.kms_proxy
        if kms_proxy is not None and kms_proxy.endpoints:
            override = kms_proxy.endpoints.get(region)
            if override is not None:
                return override
        return f"kms.{region}.amazonaws.com"