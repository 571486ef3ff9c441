"""Parsing of model replies into elements, paths and glyph maps."""

import json
import re
from dataclasses import dataclass
from typing import Union

from alchemy.domain.glyphs import is_single_glyph
from alchemy.domain.keys import MAX_ELEMENT_NAME_LENGTH, clean_element_name, is_sentinel

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


@dataclass(frozen=True)
class ParsedElement:
    name: str
    glyph: str


@dataclass(frozen=True)
class MalformedReply:
    reason: str


ElementReply = Union[ParsedElement, MalformedReply]


def extract_json(text: str, opener: str = "{", closer: str = "}"):
    """JSON value embedded in ``text``, with code fences and chatter stripped.

    Raises ``ValueError`` when nothing parses.
    """
    if not text or not text.strip():
        raise ValueError("empty reply")
    fenced = _CODE_FENCE.search(text)
    candidate = fenced.group(1).strip() if fenced else text.strip()
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    start = candidate.find(opener)
    end = candidate.rfind(closer)
    if start == -1 or end <= start:
        raise ValueError("no JSON object in reply")
    return json.loads(candidate[start : end + 1])


def _element_from(obj) -> ElementReply:
    if not isinstance(obj, dict):
        return MalformedReply("reply is not an object")
    name = obj.get("name", obj.get("element"))
    glyph = obj.get("glyph", obj.get("emoji"))
    if not isinstance(name, str) or not isinstance(glyph, str):
        return MalformedReply("name and glyph must be strings")
    name = clean_element_name(name)
    if not name:
        return MalformedReply("name is empty")
    if len(name) > MAX_ELEMENT_NAME_LENGTH:
        return MalformedReply("name is too long")
    if is_sentinel(name):
        return MalformedReply("name is reserved")
    if not is_single_glyph(glyph):
        return MalformedReply(f"glyph {glyph!r} is not exactly one glyph")
    return ParsedElement(name=name, glyph=glyph.strip())


def parse_element_reply(text: str) -> ElementReply:
    """``{name, glyph}`` from a model reply, or the reason it was rejected."""
    try:
        obj = extract_json(text)
    except ValueError as e:
        return MalformedReply(str(e))
    return _element_from(obj)


@dataclass(frozen=True)
class ParsedStep:
    input_a: str
    input_b: str
    result_name: str
    result_glyph: str


def parse_paths_reply(text: str) -> list[list[ParsedStep]]:
    """Paths from ``{"paths": [{"steps": [{a, b, result, glyph}]}]}``.

    Steps that fail validation drop their whole path. Raises ``ValueError``
    when the reply holds no usable path.
    """
    obj = extract_json(text)
    raw_paths = obj.get("paths") if isinstance(obj, dict) else obj
    if not isinstance(raw_paths, list):
        raise ValueError("reply has no paths list")

    paths = []
    for raw_path in raw_paths:
        raw_steps = raw_path.get("steps") if isinstance(raw_path, dict) else raw_path
        if not isinstance(raw_steps, list) or not raw_steps:
            continue
        steps = []
        for raw_step in raw_steps:
            if not isinstance(raw_step, dict):
                break
            a = raw_step.get("a", raw_step.get("element_a"))
            b = raw_step.get("b", raw_step.get("element_b"))
            result = _element_from(
                {
                    "name": raw_step.get("result", raw_step.get("result_name")),
                    "glyph": raw_step.get("glyph", raw_step.get("result_glyph")),
                }
            )
            if not isinstance(a, str) or not isinstance(b, str) or isinstance(result, MalformedReply):
                break
            a, b = clean_element_name(a), clean_element_name(b)
            if not a or not b:
                break
            steps.append(ParsedStep(a, b, result.name, result.glyph))
        else:
            paths.append(steps)
    if not paths:
        raise ValueError("reply has no valid path")
    return paths


def parse_glyph_map(text: str) -> dict[str, str]:
    """``{element: glyph}`` from a model reply; entries that are not one glyph are dropped."""
    obj = extract_json(text)
    if not isinstance(obj, dict):
        raise ValueError("reply is not an object")
    return {
        clean_element_name(name).lower(): glyph.strip()
        for name, glyph in obj.items()
        if isinstance(name, str) and isinstance(glyph, str) and is_single_glyph(glyph)
    }
