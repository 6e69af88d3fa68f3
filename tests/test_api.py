import base64
import json
from http import HTTPStatus

import pytest
from cryptography.hazmat.primitives import serialization

from enclaver.api import ApiHandler, AttestationRequest, pem_decode
from enclaver.http_util import HttpRequest
from enclaver.nsm import AttestationParams, AttestationProvider, StaticAttestationProvider

PUBLIC_KEY_PEM = (
    "-----BEGIN PUBLIC KEY-----\n"
    "MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEAyY9b3O0t0zDH3pcxYWW2\n"
    "TBjW302L3eL+S4C1rmW6OFIXa6U1ZrBtSvMvI3ievCVHq7AOof6xkbXXqobgbokc\n"
    "0514+7stOsq/CqnXGWhWwW+aCIj5FFi+gf4kXbXvUYKhUVFFJm5Rq71r5stt3B1p\n"
    "jYC0Nm391GjR98gO9Sw8TGYx21Q7KuNFsfMa/dtYboFX38fQFw4eTHvSafErgZNO\n"
    "MUmzLPibM+1zXqHbXX1M5hyFMBJE28zNi+TmvopdMxsG/a2yTiM1j6Srw2Y5ZrE6\n"
    "O1Rr8MxrAepPbmybNOn0K0YIcf/KZurDuvOIuhsurxFgGTVQhsMZ0iNaXA0usFM+\n"
    "pQIDAQAB\n"
    "-----END PUBLIC KEY-----"
)


class RecordingProvider(AttestationProvider):
    def __init__(self):
        self.calls: list[AttestationParams] = []

    def attestation(self, params):
        self.calls.append(params)
        return b"document"


def post(body, path="/v1/attestation", method="POST"):
    if not isinstance(body, (bytes, str)):
        body = json.dumps(body)
    if isinstance(body, str):
        body = body.encode()
    return HttpRequest(method=method, path=path, body=body)


@pytest.mark.asyncio
async def test_attestation_handler():
    handler = ApiHandler(StaticAttestationProvider(b""))

    resp = await handler.handle(post({"public_key": PUBLIC_KEY_PEM}))
    assert resp.status == HTTPStatus.OK

    resp = await handler.handle(
        post(
            {
                "nonce": base64.b64encode(b"the nonce").decode(),
                "user_data": base64.b64encode(b"my data").decode(),
            }
        )
    )
    assert resp.status == HTTPStatus.OK


@pytest.mark.asyncio
async def test_attestation_passes_decoded_params():
    provider = RecordingProvider()
    handler = ApiHandler(provider)
    resp = await handler.handle(
        post(
            {
                "nonce": base64.b64encode(b"the nonce").decode(),
                "user_data": base64.b64encode(b"my data").decode(),
            }
        )
    )
    assert resp.body == b"document"
    assert resp.headers["Content-Type"] == "application/cbor"
    assert provider.calls == [
        AttestationParams(nonce=b"the nonce", user_data=b"my data", public_key=None)
    ]


@pytest.mark.asyncio
async def test_bad_json_is_bad_request():
    handler = ApiHandler(RecordingProvider())
    resp = await handler.handle(post("{not json"))
    assert resp.status == HTTPStatus.BAD_REQUEST


@pytest.mark.asyncio
async def test_bad_base64_is_bad_request():
    provider = RecordingProvider()
    handler = ApiHandler(provider)
    resp = await handler.handle(post({"nonce": "!!!"}))
    assert resp.status == HTTPStatus.BAD_REQUEST
    assert provider.calls == []


@pytest.mark.asyncio
async def test_bad_pem_is_bad_request():
    handler = ApiHandler(RecordingProvider())
    resp = await handler.handle(post({"public_key": "nope"}))
    assert resp.status == HTTPStatus.BAD_REQUEST


@pytest.mark.asyncio
async def test_wrong_method_and_path():
    handler = ApiHandler(RecordingProvider())
    resp = await handler.handle(post({}, method="GET"))
    assert resp.status == HTTPStatus.METHOD_NOT_ALLOWED
    resp = await handler.handle(post({}, path="/v1/other"))
    assert resp.status == HTTPStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_attester_error_propagates():
    class Broken(AttestationProvider):
        def attestation(self, params):
            raise RuntimeError("device failure")

    handler = ApiHandler(Broken())
    with pytest.raises(RuntimeError, match="device failure"):
        await handler.handle(post({}))


def test_pem_decode_matches_pkcs1_key():
    key = serialization.load_pem_public_key(PUBLIC_KEY_PEM.encode())
    expected = key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.PKCS1
    )
    assert pem_decode(PUBLIC_KEY_PEM) == expected


def test_pem_decode_rejects_other_labels():
    other = PUBLIC_KEY_PEM.replace("PUBLIC KEY", "CERTIFICATE")
    with pytest.raises(ValueError):
        pem_decode(other)


def test_request_ignores_unknown_fields():
    req = AttestationRequest.from_json(b'{"nonce": "YQ==", "extra": 1}')
    assert req == AttestationRequest(nonce="YQ==")
    assert req.into_params().nonce == b"a"


def test_request_rejects_non_string():
    with pytest.raises(ValueError):
        AttestationRequest.from_json(b'{"nonce": 5}')
    with pytest.raises(ValueError):
        AttestationRequest.from_json(b"[]")