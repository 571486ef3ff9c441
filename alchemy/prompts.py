from typing import Sequence

from alchemy.domain.keys import STARTER_ELEMENTS, MAX_ELEMENT_NAME_LENGTH


def _format_combinations(combinations: Sequence) -> str:
    return "\n".join(
        f"- {row.input_a} + {row.input_b} = {row.result_name} {row.result_glyph}" for row in combinations
    )


def _starters() -> str:
    return ", ".join(f"{name} {glyph}" for name, glyph in STARTER_ELEMENTS)


def combination_prompt(a: str, b: str, examples: Sequence = (), retry_reason: str | None = None) -> str:
    prompt = f"""You are the rules engine of an element combining game.
The player combines two elements and gets exactly one new element.

Combine: {a} + {b}

Rules:
- Answer with one concrete, family friendly element name of at most {MAX_ELEMENT_NAME_LENGTH} characters.
- The result must be different from both inputs and must not be one of the starters ({_starters()}).
- Pick exactly one emoji for the result.
- Prefer well known concepts over invented words.
"""
    if examples:
        prompt += f"\nExisting combinations, for consistency of style:\n{_format_combinations(examples)}\n"
    if retry_reason:
        prompt += f"\nYour previous answer was rejected ({retry_reason}). Follow the format exactly.\n"
    prompt += '\nRespond with ONLY a JSON object: {"name": "Steam", "glyph": "♨️"}'
    return prompt


def path_prompt(target: str, count: int, existing: Sequence = ()) -> str:
    prompt = f"""You are designing puzzles for an element combining game.
Players start with these elements: {_starters()}.
Each step combines two elements the player already has into one new element.

Create {count} different paths that end with the element: {target}

Rules:
- Every input of every step must be a starter or the result of an earlier step in the same path.
- The last step of each path must produce {target}.
- Starters can never be a result.
- Each result has exactly one emoji, and the same element always uses the same emoji.
- Keep each path between 4 and 15 steps and make the paths meaningfully different.
"""
    if existing:
        prompt += (
            "\nReuse these existing combinations where they fit. Never give an existing pair a different result:\n"
            f"{_format_combinations(existing)}\n"
        )
    prompt += (
        "\nRespond with ONLY a JSON object:\n"
        '{"paths": [{"steps": [{"a": "Water", "b": "Fire", "result": "Steam", "glyph": "♨️"}]}]}'
    )
    return prompt


def glyph_prompt(names: Sequence[str]) -> str:
    listing = "\n".join(f"{index}. {name}" for index, name in enumerate(names, start=1))
    return f"""You are choosing emojis for an element combining game.
Choose exactly one iconic, recognizable, family friendly emoji for each element.

ELEMENTS:
{listing}

Respond with ONLY a JSON object mapping each element name to its emoji:
{{"{names[0]}": "🎯"}}"""
