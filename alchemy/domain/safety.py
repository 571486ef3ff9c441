"""Content safety checks for element names.

The child-safety check is always active and cannot be configured off.
Profanity filtering is optional and is controlled by the caller.
"""

import random
import re

# Blocked regardless of context.
DIRECT_BLOCKLIST = (
    "cp",
    "csam",
    "pedo",
    "pedophile",
    "pedophilia",
    "lolicon",
    "shotacon",
    "jailbait",
    "childporn",
    "kiddieporn",
    "childlove",
    "childlover",
    "pizzagate",
    "cheese pizza",
)

# Only flagged when they appear together with a child-related term.
EXPLOITATION_TERMS = (
    "sex",
    "porn",
    "xxx",
    "nude",
    "naked",
    "erotic",
    "fetish",
    "rape",
    "molest",
    "abuse",
    "exploit",
    "trafficking",
    "grooming",
    "predator",
    "pedo",
    "loli",
    "shota",
    "hentai",
    "lewd",
    "nsfw",
    "intimate",
    "seduc",
    "touch",
)

CHILD_TERMS = (
    "child",
    "children",
    "kid",
    "kids",
    "minor",
    "minors",
    "underage",
    "teen",
    "teens",
    "teenage",
    "teenager",
    "preteen",
    "toddler",
    "infant",
    "baby",
    "babies",
    "youth",
    "juvenile",
    "boy",
    "girl",
    "schoolgirl",
    "schoolboy",
    "loli",
    "shota",
    "jailbait",
)

PROFANITY_TERMS = (
    "damn",
    "hell",
    "crap",
    "piss",
    "ass",
    "bastard",
    "bitch",
    "dick",
    "cock",
    "shit",
    "fuck",
    "cunt",
    "whore",
    "slut",
    "pussy",
    "penis",
    "vagina",
    "sex",
    "porn",
    "xxx",
    "rape",
    "nazi",
    "hitler",
    "kill",
    "die",
    "murder",
    "suicide",
    "drug",
    "weed",
    "cocaine",
    "heroin",
    "meth",
    "nigger",
    "nigga",
    "faggot",
    "retard",
    "spic",
    "chink",
    "kike",
    "tranny",
)

SAFE_SUBSTITUTES = (
    ("Mystery", "❓"),
    ("Void", "🕳️"),
    ("Null", "⬛"),
    ("Paradox", "🔄"),
    ("Antimatter", "✨"),
    ("Impossibility", "🚫"),
)

LEETSPEAK = str.maketrans(
    {
        "0": "o",
        "1": "i",
        "3": "e",
        "4": "a",
        "5": "s",
        "7": "t",
        "8": "b",
        "@": "a",
        "$": "s",
        "!": "i",
        "+": "t",
    }
)

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_SEPARATORS = re.compile(r"[\s_\-.]+")
_NON_LETTERS = re.compile(r"[^a-z]+")
_REPEATS = re.compile(r"(.)\1{2,}")

# Blocklist terms this short are matched as whole words only.
_SHORT_TERM_LENGTH = 2


def _folded(text: str) -> str:
    return _ZERO_WIDTH.sub("", text.casefold()).translate(LEETSPEAK)


def normalize_for_matching(text: str) -> str:
    """Casefold, strip separators and map leetspeak to letters."""
    if not text:
        return ""
    return _SEPARATORS.sub("", _folded(text))


def _words(text: str) -> list[str]:
    return _NON_LETTERS.sub(" ", _folded(text)).split()


def contains_child_exploitation(name: str | None) -> bool:
    """True when ``name`` references child exploitation and must be refused."""
    if not name or not isinstance(name, str):
        return False

    normalized = normalize_for_matching(name)
    original = name.lower()
    words = _words(name)

    for term in DIRECT_BLOCKLIST:
        if len(term) <= _SHORT_TERM_LENGTH:
            if term in words:
                return True
        elif normalize_for_matching(term) in normalized:
            return True

    has_child_term = any(
        normalize_for_matching(term) in normalized or term in original for term in CHILD_TERMS
    )
    if not has_child_term:
        return False
    return any(
        normalize_for_matching(term) in normalized or term in original
        for term in EXPLOITATION_TERMS
    )


def contains_profanity(name: str | None, terms: tuple[str, ...] = PROFANITY_TERMS) -> bool:
    """Whole-word or dominant-substring match against ``terms``.

    A substring only counts when it covers more than half of the normalized
    name, which keeps names like "Classic" clean.
    """
    if not name or not isinstance(name, str):
        return False

    normalized = _REPEATS.sub(r"\1\1", normalize_for_matching(name))
    words = _words(name)
    if not normalized:
        return False

    for term in terms:
        normalized_term = normalize_for_matching(term)
        if not normalized_term:
            continue
        if normalized == normalized_term or normalized_term in words:
            return True
        if normalized_term in normalized and len(normalized_term) / len(normalized) > 0.5:
            return True
    return False


def safe_substitute(rng: random.Random | None = None) -> tuple[str, str]:
    """A neutral ``(name, glyph)`` returned in place of a refused element."""
    chooser = rng or random
    return chooser.choice(SAFE_SUBSTITUTES)


def is_safe_substitute(name: str) -> bool:
    return any(name == substitute for substitute, _ in SAFE_SUBSTITUTES)
