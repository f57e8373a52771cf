"""
render.py

Turns canonical profile data into the wire formats vMix can poll:
json (default), xml and plain text. Stateless.
"""

from __future__ import annotations

import json
import math
import re
import xml.etree.ElementTree as ET
from typing import Optional

from .errors import ValidationError

FORMAT_JSON = "json"
FORMAT_XML = "xml"
FORMAT_TEXT = "text"

_TEXT_ALIASES = ("text", "plain", "plaintext")

CONTENT_TYPES = {
    FORMAT_JSON: "application/json; charset=utf-8",
    FORMAT_XML: "application/xml; charset=utf-8",
    FORMAT_TEXT: "text/plain; charset=utf-8",
}

XML_ROOT = "data"
XML_LIST_ITEM = "item"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_XML_BAD_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")
# Anything outside the XML 1.0 Char production.
_XML_INVALID_CHARS = re.compile("[^\x09\x0a\x0d\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


def is_scalar(value) -> bool:
    if value is None or isinstance(value, (str, bool, int)):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _validate_mapping(mapping: dict, where: str = "") -> None:
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise ValidationError("Object key must be a string")
        if not is_scalar(value):
            raise ValidationError(
                f"Object value for key '{key}'{where} must be a string, number, boolean, or null"
            )


def validate_data(data) -> None:
    """Data is a mapping or a list of mappings with string keys and scalar values."""
    if isinstance(data, dict):
        _validate_mapping(data)
        return
    if isinstance(data, list):
        for i, item in enumerate(data):
            if not isinstance(item, dict):
                raise ValidationError(f"Array item at index {i} must be an object")
            _validate_mapping(item, f" at index {i}")
        return
    raise ValidationError("Data must be an object or array")


def normalize_format(fmt: Optional[str]) -> str:
    f = (fmt or "").strip().lower()
    if f == FORMAT_XML:
        return FORMAT_XML
    if f in _TEXT_ALIASES:
        return FORMAT_TEXT
    return FORMAT_JSON


def content_type(fmt: Optional[str]) -> str:
    return CONTENT_TYPES[normalize_format(fmt)]


def _unwrap(data):
    if isinstance(data, list) and len(data) == 1:
        return data[0]
    return data


def scalar_text(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# -----------------------------
# Formats
# -----------------------------
def to_json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def xml_tag(key: str) -> str:
    tag = _XML_BAD_CHARS.sub("_", key) or "_"
    if tag[0].isdigit() or tag[0] in "-." or tag.lower().startswith("xml"):
        tag = "_" + tag
    return tag


def xml_text(value) -> str:
    return _XML_INVALID_CHARS.sub("", scalar_text(value))


def _xml_fill(parent: ET.Element, mapping: dict) -> None:
    for key, value in mapping.items():
        child = ET.SubElement(parent, xml_tag(key))
        if value is not None:
            child.text = xml_text(value)


def to_xml(data) -> str:
    data = _unwrap(data)
    root = ET.Element(XML_ROOT)
    if isinstance(data, list):
        for item in data:
            _xml_fill(ET.SubElement(root, XML_LIST_ITEM), item)
    else:
        _xml_fill(root, data)
    ET.indent(root, space="  ")
    return XML_DECLARATION + "\n" + ET.tostring(root, encoding="unicode")


def _text_lines(mapping: dict) -> str:
    return "\n".join(f"{k}: {scalar_text(v)}" for k, v in mapping.items())


def to_text(data) -> str:
    data = _unwrap(data)
    if isinstance(data, list):
        return "\n---\n".join(_text_lines(item) for item in data)
    return _text_lines(data)


_RENDERERS = {
    FORMAT_JSON: to_json,
    FORMAT_XML: to_xml,
    FORMAT_TEXT: to_text,
}


def format_data(data, fmt: Optional[str]) -> str:
    validate_data(data)
    return _RENDERERS[normalize_format(fmt)](data)


# -----------------------------
# include / exclude filters
# -----------------------------
def _split_keys(csv: Optional[str]) -> Optional[set]:
    if csv is None or csv == "":
        return None
    return {k for k in csv.split(",")}


def _filter_mapping(mapping: dict, include: Optional[set], exclude: Optional[set]) -> dict:
    out = {}
    for key, value in mapping.items():
        if include is not None and key not in include:
            continue
        if exclude is not None and key in exclude:
            continue
        out[key] = value
    return out


def filter_items(data, include: Optional[str] = None, exclude: Optional[str] = None):
    """Keep/drop keys by comma-separated lists. Keeps the single-element wrapping."""
    inc = _split_keys(include)
    exc = _split_keys(exclude)
    if inc is None and exc is None:
        return data
    inner = _unwrap(data)
    if not isinstance(inner, dict):
        return data
    filtered = _filter_mapping(inner, inc, exc)
    if isinstance(data, list):
        return [filtered]
    return filtered
