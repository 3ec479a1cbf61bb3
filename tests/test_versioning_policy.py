"""Tests for versions, policy bands and change classification."""

import pytest

from errors import PolicyValidationError
from versioning.models import (
    ChangeKind,
    DependencySpec,
    Fixed,
    RollingMajor,
    RollingMinor,
    RollingPatch,
    Version,
    VersionBand,
)
from versioning.policy import classify_change, compatible_upgrade, intersect_bands, satisfies


class TestVersion:
    """Version parsing and ordering."""

    def test_parse_and_str(self):
        v = Version.parse("17.0.6")
        assert v == Version(17, 0, 6)
        assert str(v) == "17.0.6"

    def test_total_order(self):
        versions = [Version.parse(t) for t in ("1.10.0", "1.2.3", "0.9.9", "1.2.10")]
        assert [str(v) for v in sorted(versions)] == ["0.9.9", "1.2.3", "1.2.10", "1.10.0"]

    def test_hashable(self):
        assert len({Version(1, 0, 0), Version.parse("1.0.0")}) == 1

    @pytest.mark.parametrize("text", ["1.0", "abc", "1.0.0-rc.1", "1.0.0+build.5"])
    def test_parse_rejects(self, text):
        with pytest.raises(PolicyValidationError):
            Version.parse(text)

    def test_negative_component_rejected(self):
        with pytest.raises(PolicyValidationError):
            Version(1, -1, 0)


class TestPolicyBands:
    """Each policy variant maps to the documented half-open band."""

    def test_fixed(self):
        band = Fixed(17, 0, 6).band()
        assert Version(17, 0, 6) in band
        assert Version(17, 0, 7) not in band

    def test_rolling_patch(self):
        band = RollingPatch(3, 0).band()
        assert Version(3, 0, 99) in band
        assert Version(3, 1, 0) not in band
        assert Version(2, 9, 9) not in band

    def test_rolling_minor(self):
        band = RollingMinor(17).band()
        assert Version(17, 9, 3) in band
        assert Version(18, 0, 0) not in band

    def test_rolling_major_unbounded(self):
        band = RollingMajor(2).band()
        assert band.upper is None
        assert Version(99, 0, 0) in band
        assert Version(1, 99, 99) not in band

    def test_major_required(self):
        with pytest.raises(PolicyValidationError):
            RollingMinor(None)

    def test_minimum_narrows_band(self):
        spec = DependencySpec("openssl", RollingPatch(3, 0), minimum=Version(3, 0, 2))
        assert not satisfies(Version(3, 0, 1), spec)
        assert satisfies(Version(3, 0, 2), spec)

    def test_minimum_outside_band_is_empty(self):
        spec = DependencySpec("openssl", RollingPatch(3, 0), minimum=Version(4, 0, 0))
        assert spec.band() is None
        assert not satisfies(Version(3, 0, 5), spec)


class TestPolicyFunctions:
    """satisfies, compatible_upgrade and intersect_bands."""

    def test_compatible_upgrade(self):
        assert compatible_upgrade(Version(17, 0, 6), Version(17, 1, 0), RollingMinor(17))
        assert not compatible_upgrade(Version(17, 0, 6), Version(18, 0, 0), RollingMinor(17))

    def test_intersection_of_rolling_and_fixed(self):
        band = intersect_bands([RollingMinor(17).band(), Fixed(17, 0, 6).band()])
        assert band == VersionBand(Version(17, 0, 6), Version(17, 0, 7))

    def test_intersection_of_overlapping_rolling(self):
        band = intersect_bands([RollingPatch(17, 0).band(), RollingMinor(17).band()])
        assert band == VersionBand(Version(17, 0, 0), Version(17, 1, 0))

    def test_disjoint_intersection_is_none(self):
        assert intersect_bands([RollingMinor(17).band(), Fixed(18, 0, 0).band()]) is None

    def test_empty_input_is_unbounded(self):
        band = intersect_bands([])
        assert band.lower == Version(0, 0, 0)
        assert band.upper is None


class TestClassifyChange:
    """Change kinds used in plans and history."""

    @pytest.mark.parametrize(
        "before,after,kind",
        [
            (None, "1.0.0", ChangeKind.INSTALL),
            ("1.0.0", None, ChangeKind.REMOVE),
            ("1.0.0", "1.0.0", ChangeKind.UNCHANGED),
            ("1.0.0", "1.0.1", ChangeKind.PATCH_UPDATE),
            ("1.0.1", "1.2.0", ChangeKind.MINOR_UPDATE),
            ("1.2.0", "2.0.0", ChangeKind.MAJOR_UPDATE),
            ("2.0.0", "1.9.9", ChangeKind.DOWNGRADE),
        ],
    )
    def test_kinds(self, before, after, kind):
        as_version = lambda t: None if t is None else Version.parse(t)  # noqa: E731
        assert classify_change(as_version(before), as_version(after)) is kind
