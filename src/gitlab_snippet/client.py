"""HTTP client for the GitLab v3 projects/snippets API."""

from __future__ import annotations

import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union
from urllib.parse import quote

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from . import __version__
from .config import EffectiveConfig, ProjectRef, TlsMaterial
from .errors import (
    BadRequestError,
    ConfigError,
    JSONParseError,
    ResponseShapeError,
    TransportError,
)
from .logging import get_logger, redact_mapping


USER_AGENT = f"gitlab-snippet/{__version__}"
# Agent options that only make sense for a TLS connection.
_TLS_OPTION_KEYS = ("passphrase", "ciphers", "rejectUnauthorized")


@dataclass(frozen=True)
class SnippetRequest:
    """Form payload for a snippet creation call."""

    project_id: Union[int, str]
    title: str
    file_name: str
    visibility_level: int
    content: bytes

    def form_fields(self) -> Dict[str, str]:
        return {
            "id": str(self.project_id),
            "title": self.title,
            "file_name": self.file_name,
            "visibility_level": str(self.visibility_level),
        }


@dataclass(frozen=True)
class Project:
    """Project lookup result; only the numeric ID is used."""

    id: int


@dataclass(frozen=True)
class Snippet:
    """Created snippet."""

    id: int


@dataclass(frozen=True)
class PlatformError:
    """Body returned by the platform when the expected ``id`` is absent."""

    message: Any
    raw: str = ""


def decode_project(body: Any, raw: str = "") -> Union[Project, PlatformError]:
    if isinstance(body, Mapping) and body.get("id") is not None:
        return Project(id=body["id"])
    return PlatformError(message=_platform_message(body), raw=raw)


def decode_snippet(body: Any, raw: str = "") -> Union[Snippet, PlatformError]:
    if isinstance(body, Mapping) and body.get("id") is not None:
        return Snippet(id=body["id"])
    return PlatformError(message=_platform_message(body), raw=raw)


def _platform_message(body: Any) -> Any:
    if isinstance(body, Mapping):
        return body.get("message", body.get("error"))
    return body


def build_ssl_context(config: EffectiveConfig) -> Optional[ssl.SSLContext]:
    """Build an SSL context from the resolved TLS material and agent options.

    Returns ``None`` when nothing TLS-related was configured, leaving httpx
    with its default verification.
    """

    tls = config.tls
    options = config.agent_options
    if tls is None and not any(key in options for key in _TLS_OPTION_KEYS):
        return None

    context = ssl.create_default_context()
    try:
        if tls is not None and tls.ca is not None:
            context.load_verify_locations(cadata=_cadata(tls.ca))
        if tls is not None:
            _load_client_chain(context, tls, options.get("passphrase"))
        if options.get("ciphers"):
            context.set_ciphers(str(options["ciphers"]))
    except (ssl.SSLError, ValueError) as exc:
        raise ConfigError(f"invalid TLS material: {exc}") from exc
    if options.get("rejectUnauthorized") is False:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _cadata(data: bytes) -> Union[str, bytes]:
    # PEM goes in as text, anything else is treated as DER.
    if b"-----BEGIN" in data:
        return data.decode("ascii")
    return data


def _load_client_chain(context: ssl.SSLContext, tls: TlsMaterial, passphrase: Any) -> None:
    if tls.cert is not None:
        chain, key = tls.cert, tls.key
    elif tls.pfx is not None:
        chain, key = _pkcs12_to_pem(tls.pfx, passphrase)
        # The key was decrypted while unpacking the bundle.
        passphrase = None
    else:
        if tls.key is not None:
            raise ConfigError("agentOptions.key requires agentOptions.cert")
        return
    # ssl only loads certificate chains from files.
    with tempfile.TemporaryDirectory(prefix="gitlab-snippet-") as tmpdir:
        cert_path = Path(tmpdir) / "cert.pem"
        cert_path.write_bytes(chain)
        key_path: Optional[Path] = None
        if key is not None:
            key_path = Path(tmpdir) / "key.pem"
            key_path.write_bytes(key)
        context.load_cert_chain(
            certfile=str(cert_path),
            keyfile=str(key_path) if key_path else None,
            password=str(passphrase) if passphrase is not None else None,
        )


def _pkcs12_to_pem(data: bytes, passphrase: Any) -> Tuple[bytes, bytes]:
    """Unpack a PKCS#12 bundle into a PEM certificate chain and an unencrypted PEM key."""

    password = str(passphrase).encode("utf-8") if passphrase is not None else None
    key, certificate, additional = pkcs12.load_key_and_certificates(data, password)
    if key is None or certificate is None:
        raise ConfigError("agentOptions.pfx must contain a certificate and its private key")
    chain = b"".join(
        cert.public_bytes(serialization.Encoding.PEM) for cert in [certificate, *additional]
    )
    pem_key = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return chain, pem_key


class GitLabClient:
    """Async client issuing the project lookup and snippet creation calls."""

    def __init__(
        self,
        config: EffectiveConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.logger = get_logger("gitlab_snippet.client")
        kwargs: Dict[str, Any] = {}
        if config.timeout is not None:
            kwargs["timeout"] = config.timeout
        context = build_ssl_context(config)
        if context is not None:
            kwargs["verify"] = context
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            headers={"PRIVATE-TOKEN": config.api_token, "User-Agent": USER_AGENT},
            **kwargs,
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_project(self, ref: ProjectRef) -> Project:
        """Resolve a project path-with-namespace or numeric ID."""

        response = await self._request(
            "GET",
            f"/projects/{quote(str(ref), safe='')}",
            failure=f"failed to get project {ref}",
        )
        result = decode_project(_decode_json(response), response.text)
        if isinstance(result, PlatformError):
            raise ResponseShapeError("failed to fetch project ID from response", result.message)
        return result

    async def create_snippet(self, request: SnippetRequest) -> Snippet:
        """Upload the snippet as a multipart form."""

        response = await self._request(
            "POST",
            f"/projects/{quote(str(request.project_id), safe='')}/snippets",
            failure="upload failed",
            data=request.form_fields(),
            files={"code": (None, request.content)},
        )
        result = decode_snippet(_decode_json(response), response.text)
        if isinstance(result, PlatformError):
            raise ResponseShapeError("Failed to parse response", result.message)
        return result

    async def _request(self, method: str, url: str, *, failure: str, **kwargs: Any) -> httpx.Response:
        self.logger.debug(
            "Sending request",
            extra={
                "method": method,
                "url": url,
                "headers": redact_mapping(dict(self._client.headers)),
            },
        )
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise TransportError(failure, exc) from exc
        self.logger.debug(
            "Received response",
            extra={"method": method, "url": url, "status_code": response.status_code},
        )
        if response.status_code == 400:
            raise _bad_request(response)
        return response


def _decode_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise JSONParseError(str(exc), response.text) from exc


def _bad_request(response: httpx.Response) -> BadRequestError:
    try:
        payload = response.json()
    except ValueError as exc:
        return BadRequestError([], f"Failed to handle bad request error: {exc}")
    return BadRequestError(list(_field_errors(_platform_message(payload))))


def _field_errors(message: Any) -> Iterator[Tuple[str, str]]:
    if message is None:
        return
    if isinstance(message, Mapping):
        for field_name, messages in message.items():
            if isinstance(messages, (list, tuple)):
                yield str(field_name), ",".join(str(item) for item in messages)
            else:
                yield str(field_name), str(messages)
    else:
        yield "message", str(message)
