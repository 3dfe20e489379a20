"""Tests for label sets and matchers."""
import pytest

from perftest.series import Labels, Matcher, MatchType


def test_labels_are_order_independent():
    a = Labels.from_pairs([("__name__", "up"), ("job", "api"), ("instance", "a:1")])
    b = Labels.from_dict({"instance": "a:1", "job": "api", "__name__": "up"})

    assert a == b
    assert hash(a) == hash(b)
    assert [name for name, _ in a] == ["__name__", "instance", "job"]


def test_empty_values_dropped():
    labels = Labels.from_dict({"__name__": "up", "job": ""})

    assert len(labels) == 1
    assert not labels.has("job")
    assert labels.get("job") == ""


def test_duplicate_names_rejected():
    with pytest.raises(ValueError):
        Labels.from_pairs([("job", "a"), ("job", "b")])


def test_without_and_keep():
    labels = Labels.from_dict({"__name__": "up", "job": "api", "instance": "a"})

    assert labels.without("__name__") == Labels.from_dict({"job": "api", "instance": "a"})
    assert labels.keep(["job"]) == Labels.from_dict({"job": "api"})
    assert labels.name == "up"
    assert labels.without("__name__").name is None


def test_string_form():
    assert str(Labels.from_dict({"__name__": "up"})) == "up"
    assert str(Labels.from_dict({"__name__": "up", "path": 'C:\\"x"'})) == 'up{path="C:\\\\\\"x\\""}'
    assert str(Labels.from_dict({"job": "api"})) == '{job="api"}'
    assert str(Labels()) == "{}"


@pytest.mark.parametrize("match_type,value,candidate,expected", [
    (MatchType.EQUAL, "api", "api", True),
    (MatchType.EQUAL, "api", "apis", False),
    (MatchType.NOT_EQUAL, "api", "web", True),
    (MatchType.REGEX, "galeb-test-[0-9]+", "galeb-test-12", True),
    (MatchType.REGEX, "test", "galeb-test-1", False),
    (MatchType.REGEX, "a|b", "b", True),
    (MatchType.NOT_REGEX, "5..", "503", False),
    (MatchType.NOT_REGEX, "5..", "200", True),
])
def test_matcher(match_type, value, candidate, expected):
    assert Matcher(match_type, "label", value).matches(candidate) is expected


def test_matcher_on_missing_label():
    labels = Labels.from_dict({"__name__": "up"})

    assert Matcher(MatchType.EQUAL, "job", "").matches_labels(labels)
    assert not Matcher(MatchType.NOT_EQUAL, "job", "").matches_labels(labels)
