from pyln.lspsd.version import Version

import pytest


def test_version_parsing():
    cases = [
        ("0.1.5", Version(0, 1, 5)),
        ("v0.1.5", Version(0, 1, 5)),
        ("v0.2", Version(0, 2)),
        ("lspsd 0.1.5\n", Version(0, 1, 5)),
    ]

    for test_in, test_out in cases:
        v = Version.from_str(test_in)
        assert test_out == v


def test_version_ordering():
    assert Version(0, 1, 5) < Version(0, 2)
    assert Version(1, 0) > Version(0, 99, 99)
    assert Version(0, 1, 5) <= Version(0, 1, 5)
    assert Version(0, 1, 5) >= Version(0, 1, 4)
    assert str(Version(0, 2)) == "0.2.0"


def test_version_invalid():
    with pytest.raises(ValueError):
        Version.from_str("latest")
