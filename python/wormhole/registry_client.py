"""
Docker Registry HTTP API v2 client.

This module provides the registry operations the migration engine needs:
manifest and blob existence checks, streaming blob download and upload, and
manifest push. Each worker thread gets its own requests.Session.
"""

import threading
from typing import Iterable, Optional, Tuple, Union
from urllib.parse import urljoin

import requests

from wormhole.error_utils import (
    RegistryError,
    create_registry_auth_error,
    create_registry_connection_error,
    create_registry_response_error,
)
from wormhole.image import (
    INDEX_MANIFEST_TYPES,
    SUPPORTED_MANIFEST_TYPES,
    Image,
    Manifest,
    compute_digest,
)
from wormhole.logging_utils import get_logger

ACCEPT_MANIFEST = ", ".join(SUPPORTED_MANIFEST_TYPES + INDEX_MANIFEST_TYPES)

DIGEST_HEADER = "Docker-Content-Digest"


class BlobStream:
    """Readable stream over a blob download. Closing it releases the connection."""

    def __init__(self, response: requests.Response):
        self._response = response
        self._raw = response.raw
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return self._raw.read()
        return self._raw.read(size)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._response.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SizedBody:
    """Chunk iterator that reports the blob size, so requests sends Content-Length instead of chunking."""

    def __init__(self, chunks: Iterable[bytes], size: int):
        self._chunks = chunks
        self.size = size

    def __len__(self) -> int:
        return self.size

    def __iter__(self):
        return iter(self._chunks)


class RegistryClient:
    """Client for a single Docker registry."""

    def __init__(
        self,
        registry_url: str,
        insecure: bool = False,
        tls_verify: bool = True,
        timeout: int = 300,
        chunk_size: int = 1024 * 1024,
    ):
        """Initialize RegistryClient.

        Args:
            registry_url: Registry host[:port], optionally with an http(s):// scheme
            insecure: If True, talk plain HTTP when no scheme is given
            tls_verify: Whether to verify TLS certificates
            timeout: Per-request timeout in seconds
            chunk_size: Bytes per chunk when streaming uploads
        """
        if registry_url.startswith(("http://", "https://")):
            self.base_url = registry_url.rstrip("/")
            self.registry_url = registry_url.split("://", 1)[1].rstrip("/")
        else:
            scheme = "http" if insecure else "https"
            self.registry_url = registry_url.rstrip("/")
            self.base_url = f"{scheme}://{self.registry_url}"
        self.tls_verify = tls_verify
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.logger = get_logger(self.__class__.__name__)
        self._local = threading.local()

    @classmethod
    def from_config(cls, config_manager, side: str) -> "RegistryClient":
        """Build a client for the 'source' or 'destination' registry from configuration."""
        if side == "source":
            url = config_manager.get_source_registry_url()
            insecure = config_manager.is_source_insecure()
            tls_verify = config_manager.get_source_tls_verify()
        elif side == "destination":
            url = config_manager.get_dest_registry_url()
            insecure = config_manager.is_dest_insecure()
            tls_verify = config_manager.get_dest_tls_verify()
        else:
            raise ValueError(f"Unknown registry side: {side}")
        return cls(
            url,
            insecure=insecure,
            tls_verify=tls_verify,
            timeout=config_manager.get_registry_timeout(),
            chunk_size=config_manager.get_chunk_size(),
        )

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.verify = self.tls_verify
            self._local.session = session
        return session

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v2/{path}"

    def _request(self, method: str, url: str, operation: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            self.logger.error(f"{operation} failed against {self.registry_url}: {e}")
            raise create_registry_connection_error(self.registry_url, e)

    def _raise_for_status(self, response: requests.Response, operation: str, expected: Tuple[int, ...]) -> None:
        if response.status_code in expected:
            return
        body = ""
        if response.request is not None and response.request.method != "HEAD":
            try:
                body = response.text
            except (requests.RequestException, UnicodeDecodeError):
                body = ""
        response.close()
        if response.status_code in (401, 403):
            raise create_registry_auth_error(self.registry_url, operation, response.status_code)
        raise create_registry_response_error(self.registry_url, operation, response.status_code, body)

    def _exists(self, url: str, operation: str, headers: Optional[dict] = None) -> bool:
        response = self._request("HEAD", url, operation, headers=headers, allow_redirects=True)
        if response.status_code == 404:
            return False
        self._raise_for_status(response, operation, (200,))
        return True

    def ping(self) -> int:
        """GET /v2/ and return the status code. Does not raise for HTTP errors."""
        response = self._request("GET", f"{self.base_url}/v2/", "ping")
        response.close()
        return response.status_code

    def has_manifest(self, repository: str, reference: str) -> bool:
        """Return True if the registry has a manifest for repository:reference."""
        return self._exists(
            self._url(f"{repository}/manifests/{reference}"),
            f"manifest check {repository}:{reference}",
            headers={"Accept": ACCEPT_MANIFEST},
        )

    def manifest_digest(self, repository: str, reference: str) -> str:
        """Return the content digest of the manifest stored under repository:reference."""
        operation = f"manifest digest {repository}:{reference}"
        response = self._request(
            "HEAD",
            self._url(f"{repository}/manifests/{reference}"),
            operation,
            headers={"Accept": ACCEPT_MANIFEST},
        )
        self._raise_for_status(response, operation, (200,))
        digest = response.headers.get(DIGEST_HEADER)
        if digest:
            return digest

        # Registry did not advertise the digest; hash the manifest ourselves
        return self.get_manifest(repository, reference)[2]

    def get_manifest(self, repository: str, reference: str) -> Tuple[str, bytes, str]:
        """Fetch a manifest.

        Returns:
            Tuple of (media_type, payload bytes, digest)
        """
        operation = f"manifest fetch {repository}:{reference}"
        response = self._request(
            "GET",
            self._url(f"{repository}/manifests/{reference}"),
            operation,
            headers={"Accept": ACCEPT_MANIFEST},
        )
        self._raise_for_status(response, operation, (200,))
        payload = response.content
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        digest = compute_digest(payload)
        if reference.startswith("sha256:") and digest != reference:
            raise RegistryError(
                f"Manifest digest mismatch for {repository}@{reference}: got {digest}",
                registry_url=self.registry_url,
            )
        return media_type, payload, digest

    def fetch_image(self, repository: str, reference: str) -> Image:
        """Build an Image for repository:reference from this registry."""
        media_type, payload, digest = self.get_manifest(repository, reference)
        manifest = Manifest.from_payload(media_type, payload)
        return Image(repository=repository, reference=reference, digest=digest, manifest=manifest)

    def has_layer(self, repository: str, digest: str) -> bool:
        """Return True if the registry has the blob for digest in repository."""
        return self._exists(self._url(f"{repository}/blobs/{digest}"), f"blob check {repository}@{digest}")

    def download_layer(self, repository: str, digest: str) -> BlobStream:
        """Open a streaming download of a blob. The caller must close the stream."""
        operation = f"blob download {repository}@{digest}"
        response = self._request("GET", self._url(f"{repository}/blobs/{digest}"), operation, stream=True)
        self._raise_for_status(response, operation, (200,))
        return BlobStream(response)

    def _iter_chunks(self, reader) -> Iterable[bytes]:
        if hasattr(reader, "read"):
            while True:
                chunk = reader.read(self.chunk_size)
                if not chunk:
                    return
                yield chunk
        else:
            yield from reader

    def upload_layer(self, repository: str, digest: str, reader: Union[Iterable[bytes], object],
                     size: Optional[int] = None) -> None:
        """Upload a blob with a monolithic PUT, streaming the reader in chunks.

        When size is known it is sent as Content-Length; otherwise the body is
        sent with chunked transfer encoding.
        """
        operation = f"blob upload {repository}@{digest}"
        response = self._request("POST", self._url(f"{repository}/blobs/uploads/"), operation)
        self._raise_for_status(response, operation, (202,))
        location = response.headers.get("Location")
        if not location:
            raise RegistryError(
                f"Registry {self.registry_url} did not return an upload location for {repository}",
                registry_url=self.registry_url,
            )
        upload_url = urljoin(f"{self.base_url}/", location)
        body = self._iter_chunks(reader)
        if size is not None:
            body = SizedBody(body, size)

        response = self._request(
            "PUT",
            upload_url,
            operation,
            params={"digest": digest},
            data=body,
            headers={"Content-Type": "application/octet-stream"},
        )
        self._raise_for_status(response, operation, (201,))
        response.close()

    def push_manifest(self, repository: str, reference: str, media_type: str, payload: bytes) -> str:
        """Push a manifest under repository:reference and return its digest."""
        operation = f"manifest push {repository}:{reference}"
        response = self._request(
            "PUT",
            self._url(f"{repository}/manifests/{reference}"),
            operation,
            data=payload,
            headers={"Content-Type": media_type},
        )
        self._raise_for_status(response, operation, (200, 201))
        digest = response.headers.get(DIGEST_HEADER) or compute_digest(payload)
        response.close()
        return digest
