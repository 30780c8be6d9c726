"""Turn sheet codes.

A code is the short identifier printed on every turn sheet and the only key
that pairs an inbound scan with the sheet it came from. Codes are random:
nothing about the instance, turn or account is encoded in them, the binding
lives in ``turn_sheets.code``.

Shape is ``XXXXXX-XXXXXX`` over ``[0-9A-Z]``. The last character of each half
is a checksum of the five characters before it (sum of character values
mod 36, with ``0-9`` worth 0-9 and ``A-Z`` worth 10-35).
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass

from ..errors import BadCode

ALPHABET = string.digits + string.ascii_uppercase
_VALUES = {char: index for index, char in enumerate(ALPHABET)}

HALF_LENGTH = 6
CODE_LENGTH = HALF_LENGTH * 2 + 1
CODE_PATTERN = r"[A-Z0-9]{6}-[A-Z0-9]{6}"

_CODE_RE = re.compile(rf"^{CODE_PATTERN}$")

# Longer labels first so "Turn Sheet Code:" is preferred over a bare "Code:".
CODE_LABELS = ("Turn Sheet Code:", "Turn Code:", "Sheet Code:", "Code:")

_RECOGNISE_RE = re.compile(
    r"(?i:\b(?:turn\s+sheet\s+code|turn\s+code|sheet\s+code|code)\s*:)"
    rf"\s*({CODE_PATTERN})(?![A-Z0-9])"
)


@dataclass(frozen=True)
class CodeHandle:
    """A code that passed shape and checksum validation."""

    value: str

    def __str__(self) -> str:
        return self.value


def _checksum(chars: str) -> str:
    return ALPHABET[sum(_VALUES[char] for char in chars) % len(ALPHABET)]


def _mint_half() -> str:
    body = "".join(secrets.choice(ALPHABET) for _ in range(HALF_LENGTH - 1))
    return body + _checksum(body)


def mint(
    instance_id: int | None = None,
    turn_number: int | None = None,
    account_id: int | None = None,
    sheet_type: str | None = None,
) -> str:
    """Issue a fresh code for a sheet.

    The arguments identify the sheet being minted for but are deliberately
    not encoded; uniqueness is enforced by the store's unique index and the
    caller re-mints on collision.
    """
    return f"{_mint_half()}-{_mint_half()}"


def parse(code: str) -> CodeHandle:
    """Validate character set, length and both checksums.

    Raises:
        BadCode: if the code is malformed or a checksum does not match.
    """
    if not isinstance(code, str) or not _CODE_RE.match(code):
        raise BadCode(f"malformed code {code!r}", code=code)
    for half in code.split("-"):
        if _checksum(half[:-1]) != half[-1]:
            raise BadCode(f"checksum mismatch in code {code!r}", code=code)
    return CodeHandle(code)


def is_valid(code: str) -> bool:
    try:
        parse(code)
    except BadCode:
        return False
    return True


def labelled_codes(text: str) -> list[str]:
    """Every labelled code in OCR text, in print order, valid or not.

    Labels match case-insensitively; the code body must be uppercase.
    """
    if not text:
        return []
    return [match.group(1) for match in _RECOGNISE_RE.finditer(text)]


def recognise(text: str) -> str | None:
    """Return the first labelled code found in OCR text, or None."""
    found = labelled_codes(text)
    return found[0] if found else None
