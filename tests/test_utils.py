"""
Tests for functions in gateway_operator.utils
"""

# Standard
from datetime import datetime, timedelta, timezone

# Third Party
import pytest

# Local
from gateway_operator import utils

## nested_set / nested_get #####################################################


def test_nested_set_get():
    """Test nested_set and nested_get"""

    # Happy Path
    d = {}
    utils.nested_set(d, "foo.bar", 1)
    assert utils.nested_get(d, "foo.bar") == 1
    assert "foo" in d
    assert "bar" in d["foo"]
    assert d["foo"]["bar"] == 1

    # Bad intermediate key
    with pytest.raises(TypeError):
        utils.nested_set({"foo": 1}, "foo.bar", 1)
    with pytest.raises(TypeError):
        utils.nested_get({"foo": 1}, "foo.bar")

    # Get intermediate missing
    assert utils.nested_get({}, "foo.bar") is None
    assert utils.nested_get({}, "foo.bar", "default") == "default"
    assert utils.nested_get({"foo": {}}, "foo.bar", "default") == "default"


def test_nested_get_none_values():
    """Make sure that explicit None values fall back to the default the same
    way missing ones do
    """
    assert utils.nested_get({"foo": None}, "foo.bar", "default") == "default"
    assert utils.nested_get({"foo": {"bar": None}}, "foo.bar", 5) == 5
    assert utils.nested_get({"foo": {"bar": 0}}, "foo.bar", 5) == 0


## Labels ######################################################################


def test_render_label_selector():
    """Make sure that label selectors are rendered sorted by key"""
    assert utils.render_label_selector({"b": "2", "a": "1"}) == "a=1,b=2"
    assert utils.render_label_selector({}) == ""
    assert utils.render_label_selector(None) == ""


## Time ########################################################################


def test_now_is_utc_seconds():
    """Make sure that now() is timezone aware and truncated to seconds"""
    current = utils.now()
    assert current.tzinfo is not None
    assert current.utcoffset() == timedelta(0)
    assert current.microsecond == 0


def test_format_parse_timestamp():
    """Make sure that timestamps are formatted in RFC3339 and parsed back"""
    timestamp = datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    formatted = utils.format_timestamp(timestamp)
    assert formatted == "2023-05-06T07:08:09Z"
    assert utils.parse_timestamp(formatted) == timestamp


def test_format_timestamp_converts_to_utc():
    """Make sure that non-UTC datetimes are converted before formatting"""
    timestamp = datetime(2023, 5, 6, 9, 8, 9, tzinfo=timezone(timedelta(hours=2)))
    assert utils.format_timestamp(timestamp) == "2023-05-06T07:08:09Z"


@pytest.mark.parametrize("value", [None, "", "not a timestamp"])
def test_parse_timestamp_invalid(value):
    """Make sure that missing or bad timestamps parse as None"""
    assert utils.parse_timestamp(value) is None


def test_parse_timestamp_naive_is_utc():
    """Make sure that a timestamp without a zone is read as UTC"""
    parsed = utils.parse_timestamp("2023-05-06T07:08:09")
    assert parsed == datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
