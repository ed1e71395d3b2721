"""
core/validator.py -- Cheap pre-checks that run before any store access.

validate_format() rejects malformed codes uniformly, whatever the backing
store holds, so a malformed code never costs a lookup. validate_ownership()
is the single place that decides whether an actor owns a resource.

Both return None when the check passes and a Failure otherwise.
"""

from __future__ import annotations

import re
from typing import Optional, Union

from core.errors import ErrorKind, Failure
from core.models import CODE_PATTERN

_CODE_RE = re.compile(CODE_PATTERN)


def validate_format(code: object) -> Optional[Failure]:
    if not isinstance(code, str) or not _CODE_RE.fullmatch(code):
        return Failure(ErrorKind.INVALID_FORMAT, "Signup code must be 8 uppercase letters or digits.")
    return None


def validate_ownership(owner_id: Union[int, str, None], actor_id: Union[int, str, None]) -> Optional[Failure]:
    """Return FORBIDDEN unless the resource owner is the acting identity.

    Ids are compared as strings so an int owner id from the store matches the
    string subject of a token. A missing owner or actor never matches.
    """
    if owner_id is None or actor_id is None or str(owner_id) != str(actor_id):
        return Failure(ErrorKind.FORBIDDEN)
    return None


def code_strength_issues(code: str) -> list[str]:
    """List the reasons a generated code is too guessable (empty list = strong).

    Runs of three ascending characters ("ABC", "123") and three repeats
    ("AAA") are rejected so issued codes do not look like keyboard patterns.
    """
    issues: list[str] = []
    if not any(c.isdigit() for c in code):
        issues.append("missing digits")
    if not any(c.isalpha() for c in code):
        issues.append("missing letters")
    for a, b, c in zip(code, code[1:], code[2:]):
        if ord(a) + 1 == ord(b) and ord(b) + 1 == ord(c):
            issues.append("sequential characters")
            break
    for a, b, c in zip(code, code[1:], code[2:]):
        if a == b == c:
            issues.append("repeated characters")
            break
    return issues
