"""Unit tests for wormhole/migration_engine.py"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from wormhole.error_utils import ErrorCategory, MigrationCancelledError, RegistryError
from wormhole.image import compute_digest
from wormhole.migration_engine import MigrationEngine
from wormhole.rate_limit import new_limited_reader

TRANSFER_CALLS = ("download_layer", "upload_layer", "push_manifest")


@pytest.fixture
def engine(source_registry, dest_registry):
    return MigrationEngine(source_registry, dest_registry)


class TestCheck:
    """Tests for MigrationEngine.check"""

    def test_absent_manifest_needs_copy(self, engine, make_image, dest_registry):
        image = make_image()
        assert engine.check(image) is True
        assert dest_registry.calls_to("manifest_digest") == []

    def test_matching_digest_needs_no_copy(self, engine, make_image, dest_registry):
        image = make_image()
        dest_registry.manifests[("app", "v1")] = image.manifest.payload()
        assert engine.check(image) is False

    def test_differing_digest_needs_copy(self, engine, make_image, dest_registry):
        image = make_image()
        dest_registry.manifests[("app", "v1")] = ("application/json", b'{"old": true}')
        assert engine.check(image) is True

    def test_query_failure_propagates(self, engine, make_image, dest_registry):
        image = make_image()
        error = RegistryError("boom", category=ErrorCategory.CONNECTION)
        dest_registry.failures["has_manifest"] = error
        with pytest.raises(RegistryError) as exc_info:
            engine.check(image)
        assert exc_info.value is error


class TestMigrate:
    """Tests for MigrationEngine.migrate"""

    def test_copies_absent_image_in_order(self, engine, make_image, source_registry, dest_registry):
        """repository=app, reference=v1, destination empty, no rate limit"""
        image = make_image(layers=(b"layer-one", b"layer-two"))
        config_digest = image.manifest.config.digest
        l1, l2 = (layer.digest for layer in image.manifest.layers)

        result = engine.migrate(image)

        uploads = [c[2] for c in dest_registry.calls_to("upload_layer")]
        assert uploads == [config_digest, l1, l2]
        assert dest_registry.calls[-1][0] == "push_manifest"
        assert result.copied is True
        assert result.blobs_uploaded == 3
        assert result.bytes_uploaded == len(b"layer-one") + len(b"layer-two") + len(
            source_registry.blobs[("app", config_digest)])
        assert dest_registry.manifest_digest("app", "v1") == image.digest
        assert result.destination_digest == image.digest
        assert dest_registry.blobs[("app", l1)] == b"layer-one"

    def test_uploads_carry_manifest_sizes(self, engine, make_image, dest_registry):
        image = make_image(layers=(b"layer-one", b"layer-two"))

        engine.migrate(image)

        sizes = {c[2]: c[3] for c in dest_registry.calls_to("upload_layer")}
        assert sizes[image.manifest.config.digest] == image.manifest.config.size
        assert [sizes[layer.digest] for layer in image.manifest.layers] == [9, 9]

    def test_up_to_date_image_makes_no_transfers(self, engine, make_image, source_registry, dest_registry):
        image = make_image()
        dest_registry.manifests[("app", "v1")] = image.manifest.payload()

        result = engine.migrate(image)

        assert result.copied is False
        for name in TRANSFER_CALLS:
            assert dest_registry.calls_to(name) == []
            assert source_registry.calls_to(name) == []

    def test_differing_image_recopies_and_overwrites(self, engine, make_image, dest_registry):
        image = make_image()
        dest_registry.manifests[("app", "v1")] = ("application/json", b'{"old": true}')

        result = engine.migrate(image)

        assert result.copied is True
        assert len(dest_registry.calls_to("upload_layer")) == 3
        assert dest_registry.manifests[("app", "v1")][1] == image.manifest.raw

    def test_existing_blobs_are_not_uploaded(self, engine, make_image, source_registry, dest_registry):
        image = make_image()
        first_layer = image.manifest.layers[0].digest
        dest_registry.blobs[("app", first_layer)] = b"l1"

        result = engine.migrate(image)

        uploaded = [c[2] for c in dest_registry.calls_to("upload_layer")]
        assert first_layer not in uploaded
        assert ("download_layer", "app", first_layer) not in source_registry.calls
        assert result.blobs_skipped == 1
        assert result.blobs_uploaded == 2

    def test_does_not_mutate_image_digest(self, engine, make_image):
        image = make_image()
        digest = image.digest
        engine.migrate(image)
        assert image.digest == digest

    def test_retry_after_failure_skips_uploaded_blobs(self, engine, make_image, source_registry, dest_registry):
        image = make_image()
        dest_registry.failures["push_manifest"] = RegistryError("push refused")

        with pytest.raises(RegistryError):
            engine.migrate(image)
        assert len(dest_registry.calls_to("upload_layer")) == 3

        del dest_registry.failures["push_manifest"]
        dest_registry.calls.clear()
        result = engine.migrate(image)

        assert dest_registry.calls_to("upload_layer") == []
        assert result.blobs_skipped == 3
        assert dest_registry.manifest_digest("app", "v1") == image.digest


class TestStart:
    """Tests for MigrationEngine.start fail-fast behaviour"""

    def test_config_failure_stops_before_layers(self, make_image, source_registry, dest_registry):
        image = make_image()
        source_registry.failures["download_layer"] = RegistryError("download failed")
        engine = MigrationEngine(source_registry, dest_registry)

        with pytest.raises(RegistryError, match="download failed"):
            engine.start(image)

        assert len(source_registry.calls_to("download_layer")) == 1
        assert dest_registry.calls_to("push_manifest") == []

    def test_layer_failure_stops_before_manifest(self, make_image, dest_registry):
        image = make_image()
        engine = MigrationEngine(MagicMock(), dest_registry)
        engine.source.download_layer.side_effect = [MagicMock(read=MagicMock(return_value=b"")),
                                                    RegistryError("layer failed")]

        with pytest.raises(RegistryError, match="layer failed"):
            engine.start(image)

        assert dest_registry.calls_to("push_manifest") == []
        assert len(dest_registry.calls_to("upload_layer")) == 1

    def test_cancelled_engine_raises(self, make_image, source_registry, dest_registry):
        image = make_image()
        cancel = threading.Event()
        cancel.set()
        engine = MigrationEngine(source_registry, dest_registry, cancel_event=cancel)

        with pytest.raises(MigrationCancelledError):
            engine.migrate(image)
        assert dest_registry.calls == []


class TestMigrateLayer:
    """Tests for the blob transfer primitive"""

    def test_noop_when_destination_has_blob(self, engine, source_registry, dest_registry):
        digest = compute_digest(b"data")
        dest_registry.blobs[("app", digest)] = b"data"

        engine._migrate_layer(digest, "app", None)

        assert dest_registry.calls_to("upload_layer") == []
        assert source_registry.calls_to("download_layer") == []

    def test_stream_closed_after_success(self, engine, source_registry):
        digest = compute_digest(b"data")
        source_registry.blobs[("app", digest)] = b"data"

        engine._migrate_layer(digest, "app", None)

        assert source_registry.streams[0].was_closed

    def test_stream_closed_after_upload_failure(self, engine, source_registry, dest_registry):
        digest = compute_digest(b"data")
        source_registry.blobs[("app", digest)] = b"data"
        dest_registry.failures["upload_layer"] = RegistryError("upload failed")

        with pytest.raises(RegistryError):
            engine._migrate_layer(digest, "app", None)

        assert source_registry.streams[0].was_closed

    def test_rate_limit_wraps_stream_with_burst(self, engine, source_registry, dest_registry):
        digest = compute_digest(b"data")
        source_registry.blobs[("app", digest)] = b"data"

        with patch("wormhole.migration_engine.new_limited_reader", wraps=new_limited_reader) as limited:
            engine._migrate_layer(digest, "app", 1000.0)

        limited.assert_called_once()
        assert limited.call_args[0][1] == 1000.0
        assert dest_registry.blobs[("app", digest)] == b"data"

    def test_no_rate_limit_uploads_unwrapped(self, engine, source_registry):
        digest = compute_digest(b"data")
        source_registry.blobs[("app", digest)] = b"data"

        with patch("wormhole.migration_engine.new_limited_reader") as limited:
            engine._migrate_layer(digest, "app", None)

        limited.assert_not_called()
