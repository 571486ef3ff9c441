"""Glyph validation.

A glyph is one user-perceived character, usually an emoji. Emoji sequences
are several code points long (ZWJ families, skin tones, flags, keycaps,
variation selectors), so counting code points is not enough.
"""

import unicodedata

ZERO_WIDTH_JOINER = "\u200d"
KEYCAP = "\u20e3"


def _is_regional_indicator(char: str) -> bool:
    return 0x1F1E6 <= ord(char) <= 0x1F1FF


def _extends_cluster(char: str) -> bool:
    code = ord(char)
    if 0xFE00 <= code <= 0xFE0F:  # variation selectors
        return True
    if 0x1F3FB <= code <= 0x1F3FF:  # skin tone modifiers
        return True
    if 0xE0020 <= code <= 0xE007F:  # tag sequences (subdivision flags)
        return True
    if char == KEYCAP:
        return True
    return unicodedata.category(char) in ("Mn", "Me", "Mc")


def count_glyphs(text: str) -> int:
    """Approximate number of grapheme clusters in ``text``."""
    count = 0
    previous = ""
    pending_regional = False
    for char in text:
        if previous == ZERO_WIDTH_JOINER or char == ZERO_WIDTH_JOINER or _extends_cluster(char):
            previous = char
            continue
        if _is_regional_indicator(char):
            if pending_regional:
                pending_regional = False
                previous = char
                continue
            pending_regional = True
        else:
            pending_regional = False
        count += 1
        previous = char
    return count


def is_single_glyph(text: str | None) -> bool:
    if not text:
        return False
    stripped = text.strip()
    if not stripped or any(ch.isspace() for ch in stripped):
        return False
    return count_glyphs(stripped) == 1
