"""The in-enclave HTTP API, serving attestation documents."""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from enclaver.http_util import (
    HttpHandler,
    HttpRequest,
    HttpResponse,
    bad_request,
    method_not_allowed,
    not_found,
)
from enclaver.nsm import AttestationParams, AttestationProvider

MIME_APPLICATION_CBOR = "application/cbor"

_PEM_RE = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----\s*(.*?)\s*-----END \1-----", re.DOTALL
)
_DER_SEQUENCE = 0x30
_DER_BIT_STRING = 0x03


def _read_tlv(data: bytes, offset: int = 0) -> tuple[int, bytes, int]:
    if offset + 2 > len(data):
        raise ValueError("truncated DER data")
    tag = data[offset]
    length = data[offset + 1]
    pos = offset + 2
    if length & 0x80:
        count = length & 0x7F
        if count == 0 or count > 4 or pos + count > len(data):
            raise ValueError("invalid DER length")
        length = int.from_bytes(data[pos : pos + count], "big")
        pos += count
    end = pos + length
    if end > len(data):
        raise ValueError("truncated DER data")
    return tag, data[pos:end], end


def pem_decode(pem: str) -> bytes:
    """Return the subject public key bits of a PEM ``PUBLIC KEY`` block."""
    match = _PEM_RE.fullmatch(pem.strip())
    if match is None:
        raise ValueError("invalid PEM encoding")
    if match.group(1) != "PUBLIC KEY":
        raise ValueError(f"unexpected PEM label: {match.group(1)}")
    der = base64.b64decode("".join(match.group(2).split()), validate=True)

    tag, spki, end = _read_tlv(der)
    if tag != _DER_SEQUENCE or end != len(der):
        raise ValueError("malformed SubjectPublicKeyInfo")
    alg_tag, _, pos = _read_tlv(spki)
    if alg_tag != _DER_SEQUENCE:
        raise ValueError("malformed algorithm identifier")
    bits_tag, bits, pos = _read_tlv(spki, pos)
    if bits_tag != _DER_BIT_STRING or pos != len(spki) or not bits or bits[0] != 0:
        raise ValueError("malformed subject public key")
    return bytes(bits[1:])


def _optional_string(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"`{key}` must be a string")
    return value


@dataclass(frozen=True)
class AttestationRequest:
    nonce: str | None = None
    public_key: str | None = None
    user_data: str | None = None

    @classmethod
    def from_json(cls, body: bytes | str) -> AttestationRequest:
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return cls(
            nonce=_optional_string(data, "nonce"),
            public_key=_optional_string(data, "public_key"),
            user_data=_optional_string(data, "user_data"),
        )

    def into_params(self) -> AttestationParams:
        def b64(value: str | None) -> bytes | None:
            return None if value is None else base64.b64decode(value, validate=True)

        return AttestationParams(
            nonce=b64(self.nonce),
            public_key=None if self.public_key is None else pem_decode(self.public_key),
            user_data=b64(self.user_data),
        )


class ApiHandler(HttpHandler):
    """Serves ``POST /v1/attestation``."""

    def __init__(self, attester: AttestationProvider) -> None:
        self._attester = attester

    async def handle(self, req: HttpRequest) -> HttpResponse:
        if req.path != "/v1/attestation":
            return not_found()
        if req.method != "POST":
            return method_not_allowed()
        return self._handle_attestation(req.body)

    def _handle_attestation(self, body: bytes) -> HttpResponse:
        try:
            params = AttestationRequest.from_json(body).into_params()
        except ValueError as err:
            return bad_request(str(err))

        doc = self._attester.attestation(params)
        return HttpResponse(
            HTTPStatus.OK, {"Content-Type": MIME_APPLICATION_CBOR}, doc
        )