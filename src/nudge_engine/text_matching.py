"""Text matching utilities for memory de-duplication and content cues."""

import re

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str, case_sensitive: bool = False) -> str:
    """Collapse runs of whitespace and, unless case-sensitive, casefold."""
    text = _WHITESPACE.sub(" ", text.strip())
    return text if case_sensitive else text.casefold()


def is_near_duplicate(
    existing: str,
    candidate: str,
    prefix_length: int = 50,
    case_sensitive: bool = False,
) -> bool:
    """Check whether an existing memory already covers candidate content.

    The leading ``prefix_length`` characters of the candidate must appear
    somewhere in the existing content. This is a heuristic: short prefixes
    merge unrelated memories, long ones miss rephrasings.

    Args:
        existing: Content of a stored memory.
        candidate: Content about to be stored.
        prefix_length: Number of leading candidate characters to match.
        case_sensitive: Compare without casefolding when True.

    Returns:
        True if the candidate should reinforce the existing memory.
    """
    prefix = normalize_text(candidate, case_sensitive)[:prefix_length]
    if not prefix:
        return False
    return prefix in normalize_text(existing, case_sensitive)


def contains_any(text: str, keywords: list[str] | tuple[str, ...]) -> bool:
    """Return True if any keyword appears in text (case-insensitive)."""
    lowered = text.lower()
    return any(kw in lowered for kw in keywords)
