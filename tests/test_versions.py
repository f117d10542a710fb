"""
Tests for version comparison (aicoder_env/versions.py).
"""

import pytest

from aicoder_env.versions import compare_versions, is_newer


class TestCompareVersions:
    """Tests for compare_versions()."""

    @pytest.mark.parametrize("a,b", [
        ("1.0.0", "1.0.1"),
        ("1.9.0", "1.10.0"),
        ("0.2.29", "1.0.0"),
        ("2.0.0-beta.1", "2.0.0"),
    ])
    def test_antisymmetric(self, a, b):
        """Swapping the arguments flips the sign."""
        assert compare_versions(a, b) == -1
        assert compare_versions(b, a) == 1

    def test_equal_versions(self):
        """Identical strings compare equal."""
        assert compare_versions("1.4.0", "1.4.0") == 0

    def test_missing_segments_are_zero(self):
        """2.1 and 2.1.0 are the same version."""
        assert compare_versions("2.1", "2.1.0") == 0
        assert compare_versions("2.1.0", "2.1") == 0

    def test_numeric_not_lexicographic(self):
        """Segments compare as integers."""
        assert compare_versions("0.10.0", "0.9.9") == 1

    def test_v_prefix_fallback(self):
        """Non-PEP 440 strings fall back to integer segments."""
        assert compare_versions("v1.2.3", "1.2.3") == 0
        assert compare_versions("1.2.3-nightly.20240101", "1.2.4") == -1

    def test_garbage_segments_count_as_zero(self):
        """Segments without a leading integer are treated as 0."""
        assert compare_versions("1.x", "1.0") == 0


class TestIsNewer:
    """Tests for is_newer()."""

    def test_strictly_newer(self):
        assert is_newer("1.0.1", "1.0.0")

    def test_equal_is_not_newer(self):
        assert not is_newer("1.0.0", "1.0")

    def test_older_is_not_newer(self):
        assert not is_newer("0.9.0", "1.0.0")
