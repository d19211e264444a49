"""
Unit tests for snapshot directory management.
"""

from datetime import UTC, datetime

import pytest

from legacymigrate.exceptions import StageInputError
from legacymigrate.snapshots import (
    PARTIAL_SUFFIX,
    create_snapshot,
    finalize_snapshot,
    find_latest_snapshot,
    is_snapshot_name,
    phase_base_dir,
    resolve_input_dir,
    snapshot_name,
)

MOMENT = datetime(2026, 1, 5, 10, 15, 0, 123456, tzinfo=UTC)


class TestNames:
    def test_snapshot_name_format(self):
        assert snapshot_name(MOMENT) == "2026-01-05T10-15-00-123456"

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("2026-01-05T10-15-00-123456", True),
            ("2026-01-05T10-15-00-123456-001", True),
            ("2026-01-05T10-15-00-123456.partial", False),
            ("notes", False),
        ],
    )
    def test_is_snapshot_name(self, name, expected):
        assert is_snapshot_name(name) is expected

    def test_phase_base_dir(self, tmp_path):
        assert phase_base_dir(tmp_path, "validate") == tmp_path / "validated"

        with pytest.raises(ValueError, match="Unknown phase"):
            phase_base_dir(tmp_path, "load")


class TestCreateAndFinalize:
    """Tests for create_snapshot and finalize_snapshot."""

    def test_create_makes_staging_directory(self, tmp_path):
        staging = create_snapshot(tmp_path / "raw", MOMENT)

        assert staging.is_dir()
        assert staging.name == f"2026-01-05T10-15-00-123456{PARTIAL_SUFFIX}"

    def test_collision_gets_suffix(self, tmp_path):
        base = tmp_path / "raw"
        first = finalize_snapshot(create_snapshot(base, MOMENT))
        second = create_snapshot(base, MOMENT)
        third = create_snapshot(base, MOMENT)

        assert first.name == "2026-01-05T10-15-00-123456"
        assert second.name == f"2026-01-05T10-15-00-123456-001{PARTIAL_SUFFIX}"
        assert third.name == f"2026-01-05T10-15-00-123456-002{PARTIAL_SUFFIX}"

    def test_finalize_renames(self, tmp_path):
        staging = create_snapshot(tmp_path / "raw", MOMENT)
        (staging / "users.json").write_text("[]")

        final = finalize_snapshot(staging)

        assert not staging.exists()
        assert final.name == "2026-01-05T10-15-00-123456"
        assert (final / "users.json").read_text() == "[]"

    def test_finalize_already_final(self, tmp_path):
        final = finalize_snapshot(create_snapshot(tmp_path / "raw", MOMENT))

        assert finalize_snapshot(final) == final


class TestLatestSnapshot:
    """Tests for find_latest_snapshot and resolve_input_dir."""

    def test_missing_base_dir(self, tmp_path):
        assert find_latest_snapshot(tmp_path / "raw") is None

    def test_latest_ignores_partial_and_unrelated(self, tmp_path):
        base = tmp_path / "raw"
        older = finalize_snapshot(create_snapshot(base, datetime(2026, 1, 4, tzinfo=UTC)))
        newer = finalize_snapshot(create_snapshot(base, datetime(2026, 1, 5, tzinfo=UTC)))
        create_snapshot(base, datetime(2026, 1, 6, tzinfo=UTC))
        (base / "zzz-notes").mkdir()

        assert find_latest_snapshot(base) == newer
        assert older != newer

    def test_only_partial_snapshots(self, tmp_path):
        base = tmp_path / "raw"
        create_snapshot(base, MOMENT)

        assert find_latest_snapshot(base) is None

    def test_resolve_input_uses_predecessor(self, tmp_path):
        raw = finalize_snapshot(create_snapshot(tmp_path / "raw", MOMENT))

        assert resolve_input_dir(tmp_path, "transform") == raw

    def test_resolve_input_without_predecessor_output(self, tmp_path):
        with pytest.raises(StageInputError, match="run the validate phase first") as exc_info:
            resolve_input_dir(tmp_path, "import")

        assert exc_info.value.phase == "import"

    def test_extract_has_no_input(self, tmp_path):
        with pytest.raises(ValueError):
            resolve_input_dir(tmp_path, "extract")
