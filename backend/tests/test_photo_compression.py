"""Tests for pre-upload photo compression and the photo capture path."""
import io
import os
import struct
import zlib

import pytest
from PIL import Image

from fieldsync.services import photo_compression
from fieldsync.services.capture import CaptureService, GeoLocation, PhotoUpload
from fieldsync.services.photo_compression import (
    CompressionError,
    PhotoFile,
    get_optimal_compression_options,
    prepare_photo,
    should_compress,
)

MB = 1024 * 1024


def _noise_png(width: int, height: int) -> bytes:
    """Random pixels do not compress losslessly, so the PNG stays large."""
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _small_jpeg() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), (120, 90, 60)).save(buffer, format="JPEG")
    return buffer.getvalue()


def _oversized_png(width: int = 30000, height: int = 20000, padding: int = 600 * 1024) -> bytes:
    """A PNG header claiming far more pixels than Pillow will agree to open."""

    def chunk(kind: bytes, body: bytes) -> bytes:
        crc = zlib.crc32(kind + body) & 0xFFFFFFFF
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", b"\x00" * padding)
        + chunk(b"IEND", b"")
    )


@pytest.fixture(scope="module")
def large_photo():
    data = _noise_png(2600, 1400)
    return PhotoFile(file_name="roof.png", mime_type="image/png", data=data)


class TestShouldCompress:
    def test_small_files_are_left_alone(self):
        photo = PhotoFile("tiny.jpg", "image/jpeg", _small_jpeg())
        assert should_compress(photo) is False

    def test_vector_formats_are_skipped(self):
        photo = PhotoFile("plan.svg", "image/svg+xml", b"<svg>" + b" " * MB + b"</svg>")
        assert should_compress(photo) is False

    def test_large_raster_is_compressed(self, large_photo):
        assert large_photo.size > 9 * MB
        assert should_compress(large_photo) is True


class TestCompressionOptions:
    def test_bands_get_more_aggressive_with_size(self):
        huge = get_optimal_compression_options(6 * MB)
        large = get_optimal_compression_options(3 * MB)
        medium = get_optimal_compression_options(int(1.5 * MB))
        small = get_optimal_compression_options(600 * 1024)

        assert (huge.max_size_mb, huge.max_dimension, huge.quality) == (1.5, 1920, 0.7)
        assert (large.max_size_mb, large.max_dimension, large.quality) == (1.0, 2048, 0.8)
        assert (medium.max_size_mb, medium.max_dimension, medium.quality) == (0.8, 2560, 0.85)
        assert (small.max_size_mb, small.max_dimension, small.quality) == (0.5, 2560, 0.9)


class TestPreparePhoto:
    def test_large_photo_is_compressed(self, large_photo):
        prepared = prepare_photo(large_photo)
        result = prepared.compression

        assert result is not None
        assert result.compressed_size < result.original_size
        assert result.compression_ratio > 0
        assert max(result.width, result.height) <= 1920
        assert prepared.mime_type == "image/jpeg"
        assert prepared.blob[:2] == b"\xff\xd8"
        assert prepared.original == large_photo.data
        assert prepared.warning is None

    def test_skipped_photo_never_hits_encoder(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            photo_compression, "compress_photo", lambda *args: calls.append(args)
        )
        data = _small_jpeg()
        prepared = prepare_photo(PhotoFile("tiny.jpg", "image/jpeg", data))

        assert calls == []
        assert prepared.blob == data
        assert prepared.compression is None
        assert prepared.mime_type == "image/jpeg"

    def test_auto_compress_off_keeps_original(self, monkeypatch, large_photo):
        monkeypatch.setattr(
            photo_compression, "compress_photo", lambda *args: pytest.fail("compressed")
        )
        prepared = prepare_photo(large_photo, auto_compress=False)
        assert prepared.blob == large_photo.data

    def test_corrupt_image_falls_back_with_warning(self):
        junk = PhotoFile("broken.jpg", "image/jpeg", b"\x00not-a-jpeg" * 100_000)
        prepared = prepare_photo(junk)

        assert prepared.blob == junk.data
        assert prepared.compression is None
        assert "could not be compressed" in prepared.warning

    def test_decompression_bomb_falls_back_with_warning(self):
        bomb = PhotoFile("facade.png", "image/png", _oversized_png())
        assert should_compress(bomb) is True

        prepared = prepare_photo(bomb)

        assert prepared.blob == bomb.data
        assert prepared.compression is None
        assert prepared.mime_type == "image/png"
        assert "could not be compressed" in prepared.warning

    def test_compress_photo_raises_on_garbage(self):
        junk = PhotoFile("broken.png", "image/png", b"garbage")
        with pytest.raises(CompressionError):
            photo_compression.compress_photo(junk, get_optimal_compression_options(junk.size))


class TestAttachPhoto:
    def test_compressed_photo_keeps_original_copy(self, store, connectivity, notifier, large_photo):
        connectivity.set_online(False)
        capture = CaptureService(store, connectivity, notifier)
        result = capture.attach_photo(
            PhotoUpload(
                assessment_id="offline_assessments_a1",
                project_id="p1",
                photo=large_photo,
                caption="North elevation",
                location=GeoLocation(51.5, -0.12, accuracy=8.0),
            )
        )

        record = store.get(result.photo_id)
        assert result.saved_offline is True
        assert record.parent_id == "offline_assessments_a1"
        assert record.payload["caption"] == "North elevation"
        assert record.payload["latitude"] == 51.5
        assert record.original_blob == large_photo.data
        assert len(record.blob) == result.compression.compressed_size

        titles = [n.title for n in notifier.recent()]
        assert "Photo saved offline" in titles
        assert "Photo compressed" in titles

    def test_small_photo_stored_once(self, store, connectivity, notifier):
        capture = CaptureService(store, connectivity, notifier)
        data = _small_jpeg()
        result = capture.attach_photo(
            PhotoUpload("offline_assessments_a1", "p1", PhotoFile("tiny.jpg", "image/jpeg", data))
        )

        record = store.get(result.photo_id)
        assert record.blob == data
        assert record.original_blob is None
        assert [p.local_id for p in capture.get_assessment_photos("offline_assessments_a1")] == [
            result.photo_id
        ]

    def test_compressed_photo_is_renamed_to_jpg(self, store, connectivity, notifier, large_photo):
        capture = CaptureService(store, connectivity, notifier)
        result = capture.attach_photo(PhotoUpload("offline_assessments_a1", "p1", large_photo))

        record = store.get(result.photo_id)
        assert record.mime_type == "image/jpeg"
        assert record.file_name == "roof.jpg"

    def test_oversized_image_is_queued_uncompressed(self, store, connectivity, notifier):
        capture = CaptureService(store, connectivity, notifier)
        bomb = PhotoFile("facade.png", "image/png", _oversized_png())

        result = capture.attach_photo(PhotoUpload("offline_assessments_a1", "p1", bomb))

        record = store.get(result.photo_id)
        assert record.blob == bomb.data
        assert record.file_name == "facade.png"
        assert result.warning is not None
        assert notifier.recent()[-1].title == "Compression skipped"
