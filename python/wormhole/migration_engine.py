"""
Migration engine: copy one image from a source registry to a destination registry.

For each image the engine first checks whether the destination already holds a
manifest with the same digest. If it does, nothing is transferred. Otherwise
the config blob, then every layer in manifest order, then the manifest itself
are copied. The first failing step aborts the migration; artifacts already
uploaded stay at the destination and are skipped on the next attempt.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional

from wormhole.error_utils import MigrationCancelledError
from wormhole.image import Image
from wormhole.logging_utils import get_logger
from wormhole.rate_limit import DEFAULT_CHUNK_SIZE, new_limited_reader
from wormhole.report_utils import sizeof_fmt


@dataclass
class MigrationResult:
    """Outcome of one successful Migrate call."""

    image: Image
    copied: bool
    destination_digest: Optional[str] = None
    blobs_uploaded: int = 0
    blobs_skipped: int = 0
    bytes_uploaded: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "image": self.image.reference_string,
            "copied": self.copied,
            "source_digest": self.image.digest,
            "destination_digest": self.destination_digest,
            "blobs_uploaded": self.blobs_uploaded,
            "blobs_skipped": self.blobs_skipped,
            "bytes_uploaded": self.bytes_uploaded,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class _CountingReader:
    """Pass-through reader that counts the bytes handed to the upload."""

    def __init__(self, stream):
        self.stream = stream
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self.stream.read(size)
        self.count += len(data)
        return data


class MigrationEngine:
    """Copies images between two registry clients."""

    def __init__(self, source, destination, cancel_event: Optional[threading.Event] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        """Initialize MigrationEngine

        Args:
            source: Registry client for the source registry
            destination: Registry client for the destination registry
            cancel_event: Event that, once set, stops in-flight migrations at the next step
            chunk_size: Chunk size used by rate-limited readers
        """
        self.source = source
        self.destination = destination
        self.cancel_event = cancel_event or threading.Event()
        self.chunk_size = chunk_size
        self.logger = get_logger(self.__class__.__name__)

    def check(self, image: Image) -> bool:
        """Return True if the destination needs a copy of image.

        A copy is needed when the destination has no manifest for
        (repository, reference) or when its manifest digest differs from the
        image's recorded digest. Registry errors propagate.
        """
        if not self.destination.has_manifest(image.repository, image.reference):
            self.logger.debug(f"{image} not present at destination")
            return True

        dest_digest = self.destination.manifest_digest(image.repository, image.reference)
        if dest_digest != image.digest:
            self.logger.info(f"{image} differs at destination ({dest_digest} != {image.digest})")
            return True

        return False

    def migrate(self, image: Image, rate_limit: Optional[float] = None) -> MigrationResult:
        """Copy image to the destination unless it is already there."""
        started = time.monotonic()
        self._raise_if_cancelled(image)
        if not self.check(image):
            self.logger.info(f"{image} already up to date at destination, skipping")
            return MigrationResult(image=image, copied=False, destination_digest=image.digest,
                                   duration_seconds=time.monotonic() - started)

        result = self.start(image, rate_limit)
        result.duration_seconds = time.monotonic() - started
        return result

    def start(self, image: Image, rate_limit: Optional[float] = None) -> MigrationResult:
        """Transfer config, then layers in manifest order, then push the manifest.

        Stops at the first failing step and re-raises its error.
        """
        limit_label = f"{sizeof_fmt(rate_limit)}/s" if rate_limit else "unthrottled"
        self.logger.info(f"Migrating {image} ({len(image.manifest.layers)} layers, {limit_label})")
        result = MigrationResult(image=image, copied=True)

        config = image.manifest.config
        self._migrate_layer(config.digest, image.repository, rate_limit, result, size=config.size)

        for layer in image.manifest.layers:
            self._migrate_layer(layer.digest, image.repository, rate_limit, result, size=layer.size)

        self._raise_if_cancelled(image)
        media_type, payload = image.manifest.payload()
        digest = self.destination.push_manifest(image.repository, image.reference, media_type, payload)
        result.destination_digest = digest
        self.logger.info(f"Pushed manifest for {image}: {digest}")
        if digest != image.digest:
            self.logger.warning(f"Destination digest {digest} for {image} differs from source {image.digest}")

        return result

    def _migrate_layer(self, digest: str, repository: str, rate_limit: Optional[float],
                       result: Optional[MigrationResult] = None, size: Optional[int] = None) -> None:
        """Copy one blob unless the destination already has it.

        The source stream is closed on every exit path.
        """
        self._raise_if_cancelled(f"{repository}@{digest}")
        if self.destination.has_layer(repository, digest):
            self.logger.debug(f"Blob {digest} already present in {repository}, skipping")
            if result is not None:
                result.blobs_skipped += 1
            return

        reader = self.source.download_layer(repository, digest)
        try:
            counter = _CountingReader(reader)
            if rate_limit:
                stream = new_limited_reader(counter, rate_limit, cancel_event=self.cancel_event,
                                            chunk_size=self.chunk_size)
            else:
                stream = counter
            self.destination.upload_layer(repository, digest, stream, size=size)
        finally:
            reader.close()

        self.logger.info(f"Uploaded blob {digest} to {repository} ({sizeof_fmt(counter.count)})")
        if result is not None:
            result.blobs_uploaded += 1
            result.bytes_uploaded += counter.count

    def _raise_if_cancelled(self, subject) -> None:
        if self.cancel_event.is_set():
            raise MigrationCancelledError(f"Migration of {subject} cancelled")
