"""
Image data model.

An Image is built once from the source registry and is read-only afterwards.
The manifest keeps the raw payload exactly as the source served it, so pushing
it to the destination reproduces the same content digest.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Optional, Tuple

from wormhole.error_utils import ErrorCategory, RegistryError

MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"

SUPPORTED_MANIFEST_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST, MEDIA_TYPE_OCI_MANIFEST)
INDEX_MANIFEST_TYPES = (MEDIA_TYPE_DOCKER_MANIFEST_LIST, MEDIA_TYPE_OCI_INDEX)


def compute_digest(payload: bytes) -> str:
    """Return the sha256 content digest of a payload as 'sha256:<hex>'."""
    return f"sha256:{hashlib.sha256(payload).hexdigest()}"


@dataclass(frozen=True)
class LayerRef:
    """A content-addressed blob (config or layer) referenced by a manifest."""

    digest: str
    size: Optional[int] = None
    media_type: Optional[str] = None


@dataclass(frozen=True)
class Manifest:
    """Image manifest: one config blob and an ordered tuple of layer blobs."""

    config: LayerRef
    layers: Tuple[LayerRef, ...]
    media_type: str
    raw: bytes = field(repr=False)
    schema_version: int = 2

    @classmethod
    def from_payload(cls, media_type: str, raw: bytes) -> "Manifest":
        """Parse a Docker v2 schema 2 or OCI image manifest.

        Args:
            media_type: Content-Type the registry returned for the manifest
            raw: Manifest bytes as served

        Returns:
            Parsed Manifest

        Raises:
            RegistryError: If the payload is not a single-platform image manifest
        """
        try:
            doc = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise RegistryError(f"Manifest payload is not valid JSON: {e}", category=ErrorCategory.PROTOCOL)

        # Registries sometimes return a generic Content-Type; the document knows better
        media_type = (media_type or "").split(";")[0].strip() or doc.get("mediaType", "")
        if not media_type and "config" in doc:
            media_type = MEDIA_TYPE_OCI_MANIFEST

        if media_type in INDEX_MANIFEST_TYPES or "manifests" in doc:
            raise RegistryError(
                f"Manifest lists are not supported (media type {media_type})",
                category=ErrorCategory.PROTOCOL,
                suggestions=["Migrate a platform-specific manifest by digest instead of the index"],
            )
        if media_type not in SUPPORTED_MANIFEST_TYPES:
            raise RegistryError(f"Unsupported manifest media type: {media_type}", category=ErrorCategory.PROTOCOL)

        try:
            config = _layer_ref(doc["config"])
            layers = tuple(_layer_ref(layer) for layer in doc.get("layers", []))
        except (KeyError, TypeError) as e:
            raise RegistryError(f"Manifest is missing a blob descriptor: {e}", category=ErrorCategory.PROTOCOL)

        return cls(
            config=config,
            layers=layers,
            media_type=media_type,
            raw=raw,
            schema_version=int(doc.get("schemaVersion", 2)),
        )

    def payload(self) -> Tuple[str, bytes]:
        """Return (media_type, payload bytes) for pushing to a registry."""
        return self.media_type, self.raw

    @property
    def digest(self) -> str:
        return compute_digest(self.raw)

    @property
    def total_size(self) -> int:
        """Sum of the blob sizes declared by the manifest (0 where unknown)."""
        return sum(ref.size or 0 for ref in (self.config,) + self.layers)


def _layer_ref(descriptor: dict) -> LayerRef:
    return LayerRef(
        digest=descriptor["digest"],
        size=descriptor.get("size"),
        media_type=descriptor.get("mediaType"),
    )


@dataclass(frozen=True)
class Image:
    """One source-side image to migrate."""

    repository: str
    reference: str
    digest: str
    manifest: Manifest

    @property
    def reference_string(self) -> str:
        if self.reference.startswith("sha256:"):
            return f"{self.repository}@{self.reference}"
        return f"{self.repository}:{self.reference}"

    def __str__(self) -> str:
        return self.reference_string


def parse_image_reference(text: str) -> Tuple[str, str]:
    """Split 'repo[:tag]' or 'repo@sha256:...' into (repository, reference).

    The tag defaults to 'latest'. A colon inside the registry host part
    (e.g. 'host:5000/repo') is not treated as a tag separator.
    """
    text = text.strip()
    if not text:
        raise ValueError("Empty image reference")

    if "@" in text:
        repository, reference = text.split("@", 1)
    elif ":" in text.rsplit("/", 1)[-1]:
        repository, reference = text.rsplit(":", 1)
    else:
        repository, reference = text, "latest"

    if not repository or not reference:
        raise ValueError(f"Invalid image reference: {text}")
    return repository, reference
