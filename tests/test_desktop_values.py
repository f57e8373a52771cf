from __future__ import annotations

import pytest

pytest.importorskip("tkinter")

from vmix_data_server.desktop import display_value, parse_value, value_type  # noqa: E402


@pytest.mark.parametrize(
    "text, vtype, expected",
    [
        ("Home", "string", "Home"),
        ("", "string", ""),
        ("42", "number", 42),
        ("-3", "number", -3),
        ("2.5", "number", 2.5),
        ("true", "boolean", True),
        ("Off", "boolean", False),
        ("anything", "null", None),
    ],
)
def test_parse_value(text: str, vtype: str, expected) -> None:
    value = parse_value(text, vtype)
    assert value == expected
    assert type(value) is type(expected)


@pytest.mark.parametrize("text, vtype", [("abc", "number"), ("maybe", "boolean")])
def test_parse_value_rejects_bad_input(text: str, vtype: str) -> None:
    with pytest.raises(ValueError):
        parse_value(text, vtype)


def test_value_type_and_display_round_trip() -> None:
    for value in ("x", 3, 1.5, True, None):
        assert parse_value(display_value(value), value_type(value)) == value
