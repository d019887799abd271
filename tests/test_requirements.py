"""Tests for requirement parsing, constraints and requirements files."""

import pytest
from packaging.version import Version

from fromsource.kernel.requirements import Constraints, Requirement, read_requirements_file


def test_parse_normalizes_specifier_and_extras():
    req = Requirement.parse("Foo_Bar[Test,docs] >= 1.0")
    assert req.name == "Foo_Bar"
    assert req.canonical_name == "foo-bar"
    assert req.extras == ("docs", "test")
    assert req.contains("1.5")
    assert not req.contains("0.9")


def test_str_is_stable_cache_key():
    a = Requirement.parse("pkg>=1.0,<2.0")
    b = Requirement.parse("pkg <2.0, >=1.0")
    assert str(a) == str(b)
    assert a == b
    assert hash(a) == hash(b)


def test_invalid_requirement_raises_value_error():
    with pytest.raises(ValueError, match="Invalid requirement"):
        Requirement.parse("not a requirement !!")


def test_marker_evaluation_with_extras():
    plain = Requirement.parse('dep; python_version >= "3"')
    assert plain.evaluate_marker()

    never = Requirement.parse('dep; python_version < "2"')
    assert not never.evaluate_marker()

    extra_only = Requirement.parse('dep; extra == "test"')
    assert not extra_only.evaluate_marker()
    assert extra_only.evaluate_marker(["test"])
    assert not extra_only.evaluate_marker(["docs"])


def test_direct_reference_round_trips_through_str():
    req = Requirement.parse("pkg @ https://example.invalid/pkg-1.0.tar.gz")
    assert req.url == "https://example.invalid/pkg-1.0.tar.gz"
    assert str(req) == "pkg @ https://example.invalid/pkg-1.0.tar.gz"


def test_requirement_is_frozen():
    req = Requirement.parse("pkg")
    with pytest.raises(Exception):
        req.name = "other"


def test_constraints_intersect():
    constraints = Constraints([Requirement.parse("pkg<2.0"), Requirement.parse("pkg>=1.1")])
    assert "pkg" in constraints
    assert constraints.allows("pkg", "1.5")
    assert not constraints.allows("pkg", "1.0")
    assert not constraints.allows("pkg", Version("2.0"))
    assert constraints.allows("other", "99")
    assert constraints.describe("PKG") == "pkg<2.0,>=1.1"
    assert constraints.describe("other") is None


def test_constraints_ignore_non_matching_markers():
    constraints = Constraints([Requirement.parse('pkg<2.0; python_version < "2"')])
    assert "pkg" not in constraints
    assert len(constraints) == 0


def test_read_requirements_file(tmp_path):
    (tmp_path / "base.txt").write_text("base-pkg==1.0\n", encoding="utf-8")
    (tmp_path / "constraints.txt").write_text("dep<3\n", encoding="utf-8")
    reqs_file = tmp_path / "requirements.txt"
    reqs_file.write_text(
        "# a comment\n"
        "\n"
        "-r base.txt\n"
        "-c constraints.txt\n"
        "--index-url https://example.invalid/simple\n"
        "first>=1.0  # trailing comment\n"
        "second[extra] \\\n"
        "    >=2.0\n",
        encoding="utf-8",
    )
    constraints = Constraints()
    reqs = read_requirements_file(reqs_file, constraints)
    assert [r.canonical_name for r in reqs] == ["base-pkg", "first", "second"]
    assert reqs[2].extras == ("extra",)
    assert not constraints.allows("dep", "3.0")


def test_constraints_load(tmp_path):
    path = tmp_path / "constraints.txt"
    path.write_text("pkg<2.0\nother==1.0\n", encoding="utf-8")
    constraints = Constraints.load(path)
    assert list(constraints) == ["other", "pkg"]
    assert constraints.allows("other", "1.0")
    assert not constraints.allows("other", "1.1")
