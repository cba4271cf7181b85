"""Tests for export archive generation.

Tests cover:
- Single-entry ZIP archive named <request_id>.json
- JSON serialization of common Python types
- Scratch directory cleanup on success and failure
- Data dump failures reported as ExportBuildError
"""

import json
import uuid
import zipfile
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from portability.services.export_builder import (
    ExportBuilder,
    ExportBuildError,
    serialize_document,
)


class TestSerializeDocument:
    """Tests for serialize_document."""

    def test_common_types(self):
        """Test dates, UUIDs, decimals and sets are serialized."""
        ident = uuid.UUID("12345678-1234-5678-1234-567812345678")
        document = {
            "created": datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC),
            "birthday": date(1990, 5, 17),
            "id": ident,
            "balance": Decimal("12.50"),
            "tags": {"a"},
        }
        decoded = json.loads(serialize_document(document))
        assert decoded == {
            "created": "2026-01-02T03:04:05+00:00",
            "birthday": "1990-05-17",
            "id": str(ident),
            "balance": "12.50",
            "tags": ["a"],
        }

    def test_non_ascii_kept(self):
        """Test UTF-8 text is written as is."""
        assert "Zoé".encode() in serialize_document({"name": "Zoé"})

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            serialize_document({"value": object()})

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            serialize_document({"value": float("nan")})


class TestExportBuilder:
    """Tests for ExportBuilder.build."""

    async def test_single_entry_archive(self, registry, owner, make_request, tmp_path):
        """Test the archive holds exactly <request_id>.json with the dump."""
        registry.dumps[owner["email"]] = {"posts": [{"title": "Hello"}]}
        request = make_request()
        builder = ExportBuilder(registry, scratch_dir=tmp_path)

        async with builder.build(request, owner) as artifact:
            assert artifact.archive_path.exists()
            assert artifact.archive_name.endswith(".zip")
            assert artifact.entry_name == f"{request.request_id}.json"
            assert artifact.size_bytes == artifact.archive_path.stat().st_size
            assert len(artifact.sha256) == 64

            with zipfile.ZipFile(artifact.archive_path) as archive:
                assert archive.namelist() == [f"{request.request_id}.json"]
                content = json.loads(archive.read(artifact.entry_name))

        assert content == {"posts": [{"title": "Hello"}]}

    async def test_scratch_removed_after_build(self, registry, owner, make_request, tmp_path):
        """Test nothing is left in the scratch parent once the context exits."""
        builder = ExportBuilder(registry, scratch_dir=tmp_path)

        async with builder.build(make_request(), owner) as artifact:
            scratch = artifact.archive_path.parent

        assert not scratch.exists()
        assert list(tmp_path.iterdir()) == []

    async def test_scratch_removed_when_body_fails(
        self, registry, owner, make_request, tmp_path
    ):
        """Test the scratch directory is removed when the caller fails."""
        builder = ExportBuilder(registry, scratch_dir=tmp_path)

        with pytest.raises(RuntimeError):
            async with builder.build(make_request(), owner):
                raise RuntimeError("upload failed")

        assert list(tmp_path.iterdir()) == []

    async def test_data_dump_failure(self, registry, owner, make_request, tmp_path):
        """Test a registry failure becomes ExportBuildError and leaves no files."""
        registry.dump_error = ConnectionError("registry down")
        request = make_request()
        builder = ExportBuilder(registry, scratch_dir=tmp_path)

        with pytest.raises(ExportBuildError) as exc_info:
            async with builder.build(request, owner):
                pytest.fail("build should not yield")

        assert exc_info.value.request_id == request.request_id
        assert "registry down" in str(exc_info.value)
        assert list(tmp_path.iterdir()) == []

    async def test_unserializable_dump(self, registry, owner, make_request, tmp_path):
        registry.dumps[owner["email"]] = {"value": object()}
        builder = ExportBuilder(registry, scratch_dir=tmp_path)

        with pytest.raises(ExportBuildError, match="serialization failed"):
            async with builder.build(make_request(), owner):
                pytest.fail("build should not yield")

    async def test_archive_names_are_unique(self, registry, owner, make_request, tmp_path):
        """Test two builds of the same request get different archive names."""
        builder = ExportBuilder(registry, scratch_dir=tmp_path)
        request = make_request()

        async with builder.build(request, owner) as first:
            first_name = first.archive_name
        async with builder.build(request, owner) as second:
            second_name = second.archive_name

        assert first_name != second_name
