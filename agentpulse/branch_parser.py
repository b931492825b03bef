"""Branch name parsing into a structured task descriptor."""
from __future__ import annotations

import re

KNOWN_PREFIXES = frozenset({
    "feature",
    "fix",
    "bugfix",
    "chore",
    "hotfix",
    "release",
    "refactor",
    "docs",
    "test",
})

_TICKET_PATTERN = re.compile(r"\b([A-Z][A-Z-]*-\d+)\b")
_WORD_SPLIT_PATTERN = re.compile(r"[-_\s]+")


def _empty_context() -> dict[str, str]:
    return {"prefix": "", "ticket_id": "", "description": "", "display": ""}


def _title_case(value: str) -> str:
    words = [word for word in _WORD_SPLIT_PATTERN.split(value) if word]
    return " ".join(word[0].upper() + word[1:].lower() for word in words)


def parse_branch(branch: str | None) -> dict[str, str]:
    """Parse a git branch name into prefix, ticket id and readable description.

    ``feature/AUTH-123-login-flow`` becomes::

        {"prefix": "feature", "ticket_id": "AUTH-123",
         "description": "Login Flow", "display": "AUTH-123: Login Flow"}

    Branches without a recognised ``prefix/`` pass through unchanged as both
    description and display.
    """
    raw = (branch or "").strip()
    if not raw:
        return _empty_context()

    head, sep, rest = raw.partition("/")
    prefix = head.lower()
    if not sep or prefix not in KNOWN_PREFIXES:
        return {"prefix": "", "ticket_id": "", "description": raw, "display": raw}

    # Nested paths such as feature/team/AUTH-1-x keep only the last segment.
    slug = rest.rsplit("/", 1)[-1]

    ticket_id = ""
    match = _TICKET_PATTERN.search(slug)
    if match:
        ticket_id = match.group(1)
        slug = slug.replace(ticket_id, "", 1)
    slug = slug.strip("-")

    description = _title_case(slug)

    if ticket_id and description:
        display = f"{ticket_id}: {description}"
    elif ticket_id:
        display = ticket_id
    elif description:
        display = f"{prefix.capitalize()}: {description}"
    else:
        display = prefix.capitalize()

    return {
        "prefix": prefix,
        "ticket_id": ticket_id,
        "description": description,
        "display": display,
    }
