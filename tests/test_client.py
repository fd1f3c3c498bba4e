import datetime
import json
import ssl
from pathlib import Path
from typing import Any, Callable, List, Tuple
from urllib.parse import unquote

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

import gitlab_snippet.client as client_module
from gitlab_snippet.client import (
    USER_AGENT,
    GitLabClient,
    PlatformError,
    Snippet,
    SnippetRequest,
    build_ssl_context,
    decode_snippet,
)
from gitlab_snippet.config import EffectiveConfig, TlsMaterial, resolve_config
from gitlab_snippet.errors import (
    BadRequestError,
    ConfigError,
    JSONParseError,
    ResponseShapeError,
    TransportError,
)


def _config(**overrides: Any) -> EffectiveConfig:
    values = {"api_token": "T", "api_host": "gitlab.example.com", "project_ref": "grp/proj"}
    values.update(overrides)
    return EffectiveConfig(**values)


def _client(
    config: EffectiveConfig,
    captured: List[httpx.Request],
    handler: Callable[[httpx.Request], httpx.Response],
) -> GitLabClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        request.read()
        captured.append(request)
        return handler(request)

    return GitLabClient(config, transport=httpx.MockTransport(_handler))


def _request(content: bytes = b"print('hi')\n") -> SnippetRequest:
    return SnippetRequest(
        project_id=7,
        title="hello.py",
        file_name="hello.py",
        visibility_level=20,
        content=content,
    )


@pytest.mark.asyncio
async def test_project_lookup_url_and_headers() -> None:
    captured: List[httpx.Request] = []
    config = _config()

    async with _client(config, captured, lambda r: httpx.Response(200, json={"id": 7, "name": "proj"})) as client:
        project = await client.get_project("grp/proj")

    assert project.id == 7
    request = captured[0]
    assert request.method == "GET"
    assert request.url.scheme == "http"
    assert request.url.host == "gitlab.example.com"
    assert request.url.raw_path == b"/api/v3/projects/grp%2Fproj"
    assert request.headers["PRIVATE-TOKEN"] == "T"
    assert request.headers["User-Agent"] == USER_AGENT


@pytest.mark.asyncio
@pytest.mark.parametrize("ref", ["grp/sub group/proj", "a&b?c#d", 42])
async def test_project_reference_round_trips_through_encoding(ref) -> None:
    captured: List[httpx.Request] = []

    async with _client(_config(), captured, lambda r: httpx.Response(200, json={"id": 1})) as client:
        await client.get_project(ref)

    encoded = captured[0].url.raw_path.decode("ascii").rsplit("/", 1)[-1]
    assert "/" not in encoded
    assert unquote(encoded) == str(ref)


@pytest.mark.asyncio
async def test_https_scheme_used_when_configured() -> None:
    captured: List[httpx.Request] = []

    async with _client(_config(api_scheme="https"), captured, lambda r: httpx.Response(200, json={"id": 1})) as client:
        await client.get_project("grp/proj")

    assert str(captured[0].url) == "https://gitlab.example.com/api/v3/projects/grp%2Fproj"


@pytest.mark.asyncio
async def test_create_snippet_posts_multipart_form() -> None:
    captured: List[httpx.Request] = []
    content = b"caf\xc3\xa9\r\n\xff\x00tail"

    async with _client(_config(), captured, lambda r: httpx.Response(201, json={"id": 42})) as client:
        snippet = await client.create_snippet(_request(content))

    assert snippet == Snippet(id=42)
    request = captured[0]
    assert request.method == "POST"
    assert request.url.raw_path == b"/api/v3/projects/7/snippets"
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="id"\r\n\r\n7\r\n' in body
    assert b'name="title"\r\n\r\nhello.py\r\n' in body
    assert b'name="file_name"\r\n\r\nhello.py\r\n' in body
    assert b'name="visibility_level"\r\n\r\n20\r\n' in body
    assert b'name="code"' in body
    assert content in body


@pytest.mark.asyncio
async def test_bad_request_is_split_into_field_messages() -> None:
    body = {"message": {"file_name": ["is too long"], "title": ["can't be blank", "is invalid"]}}

    async with _client(_config(), [], lambda r: httpx.Response(400, json=body)) as client:
        with pytest.raises(BadRequestError) as excinfo:
            await client.create_snippet(_request())

    assert excinfo.value.errors == [
        ("file_name", "is too long"),
        ("title", "can't be blank,is invalid"),
    ]


@pytest.mark.asyncio
async def test_bad_request_with_unparsable_body() -> None:
    async with _client(_config(), [], lambda r: httpx.Response(400, text="<html>")) as client:
        with pytest.raises(BadRequestError, match="Failed to handle bad request error") as excinfo:
            await client.get_project("grp/proj")

    assert excinfo.value.errors == []


@pytest.mark.asyncio
async def test_missing_project_id_is_response_shape_error() -> None:
    async with _client(
        _config(), [], lambda r: httpx.Response(404, json={"message": "404 Project Not Found"})
    ) as client:
        with pytest.raises(ResponseShapeError, match="404 Project Not Found") as excinfo:
            await client.get_project("grp/missing")

    assert excinfo.value.platform_message == "404 Project Not Found"


@pytest.mark.asyncio
async def test_malformed_json_is_reported_with_body() -> None:
    async with _client(_config(), [], lambda r: httpx.Response(502, text="Bad Gateway")) as client:
        with pytest.raises(JSONParseError) as excinfo:
            await client.create_snippet(_request())

    assert excinfo.value.body == "Bad Gateway"


@pytest.mark.asyncio
async def test_connection_failure_is_transport_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with GitLabClient(_config(), transport=httpx.MockTransport(_handler)) as client:
        with pytest.raises(TransportError, match="failed to get project grp/proj") as excinfo:
            await client.get_project("grp/proj")

    assert isinstance(excinfo.value.cause, httpx.ConnectError)


def test_decode_snippet_is_tagged() -> None:
    assert decode_snippet({"id": 3}) == Snippet(id=3)
    error = decode_snippet({"message": {"code": ["is missing"]}}, raw=json.dumps({}))
    assert isinstance(error, PlatformError)
    assert error.message == {"code": ["is missing"]}
    assert isinstance(decode_snippet(["unexpected"]), PlatformError)


def test_ssl_context_not_built_without_tls_settings() -> None:
    assert build_ssl_context(_config()) is None


def test_ssl_context_rejects_invalid_ca() -> None:
    config = _config(api_scheme="https", tls=TlsMaterial(ca=b"not a certificate"))
    with pytest.raises(ConfigError, match="invalid TLS material"):
        build_ssl_context(config)


def test_ssl_context_key_without_cert() -> None:
    config = _config(api_scheme="https", tls=TlsMaterial(key=b"KEY"))
    with pytest.raises(ConfigError, match="requires agentOptions.cert"):
        build_ssl_context(config)


def test_ssl_context_honours_reject_unauthorized() -> None:
    context = build_ssl_context(_config(agent_options={"rejectUnauthorized": False}))
    assert context is not None
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def _self_signed(common_name: str = "gitlab-snippet-client") -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, certificate


def _pem(key: ec.EllipticCurvePrivateKey, certificate: x509.Certificate) -> Tuple[bytes, bytes]:
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return certificate.public_bytes(serialization.Encoding.PEM), key_pem


def _record_cert_chains(monkeypatch) -> List[Tuple[bytes, Any]]:
    loaded: List[Tuple[bytes, Any]] = []
    original = ssl.SSLContext.load_cert_chain

    def _recording(self, certfile, keyfile=None, password=None):
        original(self, certfile, keyfile, password)
        loaded.append((Path(certfile).read_bytes(), Path(keyfile).read_bytes() if keyfile else None))

    monkeypatch.setattr(ssl.SSLContext, "load_cert_chain", _recording)
    return loaded


def _record_client_kwargs(monkeypatch) -> dict:
    captured: dict = {}

    class _RecordingAsyncClient(httpx.AsyncClient):
        def __init__(self, **kwargs: Any) -> None:
            captured.update(kwargs)
            super().__init__(**kwargs)

    monkeypatch.setattr(client_module.httpx, "AsyncClient", _RecordingAsyncClient)
    return captured


def _ca_common_names(context: ssl.SSLContext) -> List[str]:
    return [
        value
        for cert in context.get_ca_certs()
        for rdn in cert["subject"]
        for name, value in rdn
        if name == "commonName"
    ]


@pytest.mark.asyncio
async def test_configured_cert_and_key_reach_the_http_client(monkeypatch, tmp_path: Path) -> None:
    key, certificate = _self_signed()
    cert_pem, key_pem = _pem(key, certificate)
    (tmp_path / "client.crt").write_bytes(cert_pem)
    (tmp_path / "client.key").write_bytes(key_pem)
    (tmp_path / "ca.crt").write_bytes(cert_pem)
    conf = tmp_path / "gitlab-snippet.json"
    conf.write_text(
        json.dumps(
            {
                "token": "T",
                "host": "gitlab.example.com",
                "project": "grp/proj",
                "agentOptions": {
                    "ca": str(tmp_path / "ca.crt"),
                    "cert": str(tmp_path / "client.crt"),
                    "key": str(tmp_path / "client.key"),
                },
            }
        ),
        encoding="utf-8",
    )
    loaded = _record_cert_chains(monkeypatch)
    client_kwargs = _record_client_kwargs(monkeypatch)

    config = resolve_config(conf, environ={})
    async with GitLabClient(config):
        pass

    assert config.api_url == "https://gitlab.example.com/api/v3"
    context = client_kwargs["verify"]
    assert isinstance(context, ssl.SSLContext)
    assert loaded == [(cert_pem, key_pem)]
    assert "gitlab-snippet-client" in _ca_common_names(context)


def test_pkcs12_bundle_is_unpacked_with_passphrase(monkeypatch) -> None:
    key, certificate = _self_signed()
    _, issuer = _self_signed("gitlab-snippet-issuer")
    bundle = pkcs12.serialize_key_and_certificates(
        b"client",
        key,
        certificate,
        [issuer],
        serialization.BestAvailableEncryption(b"s3cret"),
    )
    loaded = _record_cert_chains(monkeypatch)
    config = _config(
        api_scheme="https",
        tls=TlsMaterial(pfx=bundle),
        agent_options={"passphrase": "s3cret"},
    )

    context = build_ssl_context(config)

    assert isinstance(context, ssl.SSLContext)
    [(chain, key_pem)] = loaded
    assert chain == certificate.public_bytes(serialization.Encoding.PEM) + issuer.public_bytes(
        serialization.Encoding.PEM
    )
    unpacked = serialization.load_pem_private_key(key_pem, password=None)
    assert unpacked.public_key().public_numbers() == key.public_key().public_numbers()


def test_pkcs12_bundle_with_wrong_passphrase() -> None:
    key, certificate = _self_signed()
    bundle = pkcs12.serialize_key_and_certificates(
        b"client", key, certificate, None, serialization.BestAvailableEncryption(b"s3cret")
    )
    config = _config(
        api_scheme="https",
        tls=TlsMaterial(pfx=bundle),
        agent_options={"passphrase": "wrong"},
    )

    with pytest.raises(ConfigError, match="invalid TLS material"):
        build_ssl_context(config)


def test_pkcs12_bundle_without_key_is_rejected() -> None:
    _, certificate = _self_signed()
    bundle = pkcs12.serialize_key_and_certificates(
        None, None, None, [certificate], serialization.NoEncryption()
    )
    config = _config(api_scheme="https", tls=TlsMaterial(pfx=bundle))

    with pytest.raises(ConfigError, match="certificate and its private key"):
        build_ssl_context(config)
