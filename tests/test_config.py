import datetime
import ssl
from pathlib import Path
from urllib.parse import urlsplit

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from enclaver.constants import HTTP_EGRESS_PROXY_PORT, MANIFEST_FILE_NAME
from enclaver.manifest import ManifestError
from enclaver.odyn.config import Configuration

MANIFEST = """\
version: v1
name: test
target: target-image:latest
sources:
  app: app-image:latest
"""


def write_config(directory: Path, extra: str = "") -> Path:
    (directory / MANIFEST_FILE_NAME).write_text(MANIFEST + extra)
    return directory


def write_tls_material(directory: Path) -> None:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    directory.mkdir(parents=True)
    (directory / "key.pem").write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    (directory / "cert.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def test_minimal_configuration(tmp_path):
    config = Configuration.load(write_config(tmp_path))
    assert config.config_dir == tmp_path
    assert config.manifest.name == "test"
    assert config.listener_configs == {}
    assert config.api_port() is None
    assert config.kms_proxy_port() is None
    assert config.egress_proxy_uri() is None


def test_ports(tmp_path):
    extra = "api:\n  listen_port: 9001\nkms_proxy:\n  listen_port: 9002\n"
    config = Configuration.load(write_config(tmp_path, extra))
    assert config.api_port() == 9001
    assert config.kms_proxy_port() == 9002


def test_egress_default_port(tmp_path):
    config = Configuration.load(write_config(tmp_path, "egress:\n  allow:\n    - example.com\n"))
    parts = urlsplit(config.egress_proxy_uri())
    assert parts.scheme == "http"
    assert parts.hostname == "127.0.0.1"
    assert parts.port == HTTP_EGRESS_PROXY_PORT


def test_egress_custom_port(tmp_path):
    extra = "egress:\n  proxy_port: 3128\n  allow:\n    - example.com\n"
    config = Configuration.load(write_config(tmp_path, extra))
    assert urlsplit(config.egress_proxy_uri()).port == 3128


@pytest.mark.parametrize(
    "extra",
    [
        "egress:\n  allow: []\n",
        "egress:\n  deny:\n    - example.com\n",
    ],
)
def test_egress_disabled_without_allow(tmp_path, extra):
    config = Configuration.load(write_config(tmp_path, extra))
    assert config.egress_proxy_uri() is None


def test_kms_endpoint_default(tmp_path):
    config = Configuration.load(write_config(tmp_path, "kms_proxy:\n  listen_port: 9002\n"))
    assert config.endpoint("eu-west-1") == "kms.eu-west-1.amazonaws.com"


def test_kms_endpoint_override(tmp_path):
    extra = (
        "kms_proxy:\n"
        "  listen_port: 9002\n"
        "  endpoints:\n"
        "    us-east-1: kms.internal.example.com\n"
    )
    config = Configuration.load(write_config(tmp_path, extra))
    assert config.endpoint("us-east-1") == "kms.internal.example.com"
    assert config.endpoint("us-west-2") == "kms.us-west-2.amazonaws.com"


def test_tcp_ingress(tmp_path):
    config = Configuration.load(write_config(tmp_path, "ingress:\n  - listen_port: 8080\n"))
    assert list(config.listener_configs) == [8080]
    assert config.listener_configs[8080].tls is None
    assert not config.listener_configs[8080].is_tls


TLS_INGRESS = """\
ingress:
  - listen_port: 443
    tls:
      key_file: key.pem
      cert_file: cert.pem
"""


def test_tls_ingress(tmp_path):
    write_tls_material(tmp_path / "tls" / "server" / "443")
    config = Configuration.load(write_config(tmp_path, TLS_INGRESS))
    listener = config.listener_configs[443]
    assert listener.is_tls
    assert isinstance(listener.tls, ssl.SSLContext)


def test_tls_ingress_missing_material(tmp_path):
    with pytest.raises(FileNotFoundError):
        Configuration.load(write_config(tmp_path, TLS_INGRESS))


def test_missing_manifest(tmp_path):
    with pytest.raises(ManifestError):
        Configuration.load(tmp_path)