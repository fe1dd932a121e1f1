"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory registry used by the engine and pool tests.
"""
import io
import json
import os
import sys
import threading
from pathlib import Path

import pytest

os.environ.setdefault("SKIP_CONFIG_VALIDATION", "true")

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)


class FakeStream(io.BytesIO):
    """BytesIO that remembers it was closed."""

    def __init__(self, data: bytes):
        super().__init__(data)
        self.was_closed = False

    def close(self):
        self.was_closed = True
        super().close()


class FakeRegistry:
    """In-memory stand-in for RegistryClient that records every call."""

    def __init__(self, registry_url="registry.test:5000"):
        self.registry_url = registry_url
        self.blobs = {}  # (repository, digest) -> bytes
        self.manifests = {}  # (repository, reference) -> (media_type, payload)
        self.calls = []
        self.streams = []
        self.failures = {}  # operation name -> exception to raise
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name,) + args)
        if name in self.failures:
            raise self.failures[name]

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def has_manifest(self, repository, reference):
        self._record("has_manifest", repository, reference)
        return (repository, reference) in self.manifests

    def manifest_digest(self, repository, reference):
        from wormhole.image import compute_digest

        self._record("manifest_digest", repository, reference)
        return compute_digest(self.manifests[(repository, reference)][1])

    def fetch_image(self, repository, reference):
        from wormhole.error_utils import RegistryError
        from wormhole.image import Image, Manifest, compute_digest

        self._record("fetch_image", repository, reference)
        if (repository, reference) not in self.manifests:
            raise RegistryError(f"Registry {self.registry_url} returned HTTP 404 for {repository}:{reference}",
                                status_code=404)
        media_type, payload = self.manifests[(repository, reference)]
        return Image(repository=repository, reference=reference, digest=compute_digest(payload),
                     manifest=Manifest.from_payload(media_type, payload))

    def has_layer(self, repository, digest):
        self._record("has_layer", repository, digest)
        return (repository, digest) in self.blobs

    def download_layer(self, repository, digest):
        self._record("download_layer", repository, digest)
        if (repository, digest) not in self.blobs:
            from wormhole.error_utils import RegistryError

            raise RegistryError(f"Blob {digest} not found in {repository}", status_code=404)
        stream = FakeStream(self.blobs[(repository, digest)])
        self.streams.append(stream)
        return stream

    def upload_layer(self, repository, digest, reader, size=None):
        self._record("upload_layer", repository, digest, size)
        chunks = []
        while True:
            chunk = reader.read(65536)
            if not chunk:
                break
            chunks.append(chunk)
        with self._lock:
            self.blobs[(repository, digest)] = b"".join(chunks)

    def push_manifest(self, repository, reference, media_type, payload):
        from wormhole.image import compute_digest

        self._record("push_manifest", repository, reference, media_type)
        with self._lock:
            self.manifests[(repository, reference)] = (media_type, payload)
        return compute_digest(payload)


def build_image(registry: FakeRegistry, repository: str = "app", reference: str = "v1", layers=(b"l1", b"l2"),
                config: bytes = b'{"architecture": "amd64"}'):
    """Store config and layer blobs in registry and return an Image referencing them."""
    from wormhole.image import MEDIA_TYPE_DOCKER_MANIFEST, Image, Manifest, compute_digest

    config_digest = compute_digest(config)
    registry.blobs[(repository, config_digest)] = config
    layer_descriptors = []
    for data in layers:
        digest = compute_digest(data)
        registry.blobs[(repository, digest)] = data
        layer_descriptors.append({"mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                                  "size": len(data), "digest": digest})

    payload = json.dumps({
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_DOCKER_MANIFEST,
        "config": {"mediaType": "application/vnd.docker.container.image.v1+json", "size": len(config),
                   "digest": config_digest},
        "layers": layer_descriptors,
    }).encode("utf-8")
    registry.manifests[(repository, reference)] = (MEDIA_TYPE_DOCKER_MANIFEST, payload)
    manifest = Manifest.from_payload(MEDIA_TYPE_DOCKER_MANIFEST, payload)
    return Image(repository=repository, reference=reference, digest=compute_digest(payload), manifest=manifest)


@pytest.fixture
def source_registry():
    return FakeRegistry()


@pytest.fixture
def dest_registry():
    return FakeRegistry()


@pytest.fixture
def make_image(source_registry):
    """Factory building images stored in the source registry."""

    def _make(repository="app", reference="v1", layers=(b"l1", b"l2"), config=b'{"architecture": "amd64"}'):
        return build_image(source_registry, repository, reference, layers, config)

    return _make
