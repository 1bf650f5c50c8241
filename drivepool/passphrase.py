"""
Passphrase strength rules.

A passphrase is checked only when it is about to encrypt a new secret
(connecting an account or rotating the passphrase). Decryption never
validates strength, so an older, weaker passphrase keeps working.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from drivepool.exceptions import PassphraseTooWeakError

__all__ = ["PassphraseCheck", "PassphrasePolicy", "DEFAULT_POLICY"]

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?~` ]")


@dataclass
class PassphraseCheck:
    """Outcome of a strength check."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PassphrasePolicy:
    """
    Strength requirements for new passphrases.

    Attributes:
        min_length: Minimum number of characters.
        require_upper: At least one uppercase letter.
        require_lower: At least one lowercase letter.
        require_digit: At least one digit.
        require_special: At least one punctuation or space character.
    """

    min_length: int = 12
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    def check(self, passphrase: str) -> PassphraseCheck:
        """Return every rule the passphrase violates."""
        errors: list[str] = []

        if len(passphrase) < self.min_length:
            errors.append(f"Passphrase must be at least {self.min_length} characters long")
        if self.require_upper and not re.search(r"[A-Z]", passphrase):
            errors.append("Passphrase must contain at least one uppercase letter")
        if self.require_lower and not re.search(r"[a-z]", passphrase):
            errors.append("Passphrase must contain at least one lowercase letter")
        if self.require_digit and not re.search(r"\d", passphrase):
            errors.append("Passphrase must contain at least one number")
        if self.require_special and not _SPECIAL_CHARS.search(passphrase):
            errors.append("Passphrase must contain at least one special character")

        return PassphraseCheck(is_valid=not errors, errors=errors)

    def enforce(self, passphrase: str) -> None:
        """
        Raise if the passphrase is too weak.

        Raises:
            PassphraseTooWeakError: Listing every violated rule.
        """
        result = self.check(passphrase)
        if not result.is_valid:
            raise PassphraseTooWeakError(result.errors)


DEFAULT_POLICY = PassphrasePolicy()
