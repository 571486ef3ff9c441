"""Element identity and combination keys.

Element names are identified case-insensitively. The combination key of an
unordered pair is symmetric in its inputs, so ``normalize_key(a, b)`` and
``normalize_key(b, a)`` always agree.
"""

import re

MAX_ELEMENT_NAME_LENGTH = 100

ADMIN_SENTINEL = "_ADMIN"
DEFINED_SENTINEL = "_DEFINED"
ADMIN_KEY_PREFIX = "_admin_"

DEFAULT_GLYPH = "✨"

# Starter elements are the same every day and are the roots of every path.
STARTER_ELEMENTS = (
    ("Earth", "🌍"),
    ("Water", "💧"),
    ("Fire", "🔥"),
    ("Wind", "💨"),
)
STARTER_GLYPHS = {name.lower(): glyph for name, glyph in STARTER_ELEMENTS}

_WHITESPACE_RUN = re.compile(r"\s+")


def element_identity(name: str) -> str:
    """Lowercased identity of an element name with whitespace runs collapsed."""
    return " ".join(name.split()).lower()


def clean_element_name(name: str) -> str:
    """Display form of a name: trimmed, inner whitespace runs collapsed to one space."""
    return " ".join(name.split())


def normalize_element_name(name: str) -> str:
    """Key fragment for one element: lowercased, trimmed, inner whitespace as ``_``."""
    return _WHITESPACE_RUN.sub("_", name.strip().lower())


def normalize_key(a: str, b: str) -> str:
    """Order-independent combination key, e.g. ``fire+water``."""
    first, second = sorted((normalize_element_name(a), normalize_element_name(b)))
    return f"{first}+{second}"


def admin_key(name: str) -> str:
    """Reserved key of the placeholder row asserting that ``name`` exists."""
    return f"{ADMIN_KEY_PREFIX}{normalize_element_name(name)}"


def is_starter(name: str) -> bool:
    return element_identity(name) in STARTER_GLYPHS


def starter_glyph(name: str) -> str | None:
    return STARTER_GLYPHS.get(element_identity(name))


def is_sentinel(name: str) -> bool:
    return name.strip().upper() in (ADMIN_SENTINEL, DEFINED_SENTINEL)


def same_element(a: str, b: str) -> bool:
    return element_identity(a) == element_identity(b)
