from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.config import Settings
from sessionguard.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

COMMON_PASSWORDS = (
    "password",
    "123456",
    "123456789",
    "qwerty",
    "abc123",
    "password123",
    "admin",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "password1",
    "123123",
    "1234",
    "qwertyuiop",
)

KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm", "1234567890")

_REPEATED_RUN = re.compile(r"(.)\1{2,}")


class StrengthLevel(str, Enum):
    WEAK = "weak"
    FAIR = "fair"
    GOOD = "good"
    STRONG = "strong"

    @classmethod
    def for_score(cls, score: int) -> "StrengthLevel":
        if score < 40:
            return cls.WEAK
        if score < 60:
            return cls.FAIR
        if score < 80:
            return cls.GOOD
        return cls.STRONG


@dataclass
class PasswordStrength:
    score: int
    level: StrengthLevel
    passed_checks: List[str] = field(default_factory=list)
    failed_checks: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def is_weak(self) -> bool:
        return self.level is StrengthLevel.WEAK


@dataclass
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digits: bool = True
    require_special: bool = True
    special_chars: str = SPECIAL_CHARS
    forbidden_passwords: Sequence[str] = COMMON_PASSWORDS
    history_check_count: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digits=settings.password_require_digits,
            require_special=settings.password_require_special,
            history_check_count=settings.password_history_count,
        )


class PasswordPolicyEngine:
    """argon2id hashing plus weighted strength scoring.

    Scoring adds 15 for length within bounds, 15 per required character
    class present, 10 for avoiding common passwords, 10 for not reusing a
    recent password (only when a history is given) and 10 for avoiding
    repeated, sequential or keyboard-row runs. Length, uniqueness and class
    mix earn up to 25 bonus points; the total is capped at 100.
    """

    def __init__(
        self,
        policy: Optional[PasswordPolicy] = None,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
    ) -> None:
        self.policy = policy or PasswordPolicy()
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicyEngine":
        return cls(
            PasswordPolicy.from_settings(settings),
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )

    # -- hashing -------------------------------------------------------------

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerificationError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False

    def verify_dummy(self, password: str) -> bool:
        """Spend one verification on a throwaway hash; always False.

        Keeps the unknown-user path as slow as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_urlsafe(16))
        self.verify(password, self._dummy_hash)
        return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    # -- scoring -------------------------------------------------------------

    def score(
        self, password: str, history: Optional[Sequence[str]] = None
    ) -> PasswordStrength:
        policy = self.policy
        result = PasswordStrength(score=0, level=StrengthLevel.WEAK)
        total = 0

        def record(check: str, passed: bool, points: int, suggestion: str) -> None:
            nonlocal total
            if passed:
                result.passed_checks.append(check)
                total += points
            else:
                result.failed_checks.append(check)
                result.suggestions.append(suggestion)

        if len(password) < policy.min_length:
            record("length", False, 15, f"Use at least {policy.min_length} characters")
        elif len(password) > policy.max_length:
            record("length", False, 15, f"Use at most {policy.max_length} characters")
        else:
            record("length", True, 15, "")

        if policy.require_uppercase:
            record(
                "uppercase",
                any("A" <= c <= "Z" for c in password),
                15,
                "Add an uppercase letter",
            )
        if policy.require_lowercase:
            record(
                "lowercase",
                any("a" <= c <= "z" for c in password),
                15,
                "Add a lowercase letter",
            )
        if policy.require_digits:
            record(
                "digits", any(c in string.digits for c in password), 15, "Add a digit"
            )
        if policy.require_special:
            record(
                "special",
                any(c in policy.special_chars for c in password),
                15,
                f"Add a special character ({policy.special_chars})",
            )

        record(
            "common_password",
            not self._is_common(password),
            10,
            "Avoid common passwords",
        )

        if history:
            record(
                "history",
                not self._reuses_history(password, history),
                10,
                f"Do not reuse any of your last {policy.history_check_count} passwords",
            )

        pattern_problem = self._pattern_problem(password)
        record(
            "pattern",
            pattern_problem is None,
            10,
            pattern_problem or "",
        )

        result.score = min(total + self._bonus(password), 100)
        result.level = StrengthLevel.for_score(result.score)
        return result

    def is_compliant(self, password: str) -> bool:
        return not self.score(password).failed_checks

    def _is_common(self, password: str) -> bool:
        lowered = password.lower()
        return any(
            forbidden in lowered or lowered in forbidden
            for forbidden in self.policy.forbidden_passwords
        )

    def _reuses_history(self, password: str, history: Sequence[str]) -> bool:
        count = self.policy.history_check_count
        if count <= 0:
            return False
        return any(self.verify(password, old) for old in list(history)[-count:])

    @staticmethod
    def _has_sequential_run(password: str) -> bool:
        codes = [ord(c) for c in password.lower()]
        for a, b, c in zip(codes, codes[1:], codes[2:]):
            if b == a + 1 and c == b + 1:
                return True
            if b == a - 1 and c == b - 1:
                return True
        return False

    @staticmethod
    def _has_keyboard_pattern(password: str) -> bool:
        lowered = password.lower()
        for row in KEYBOARD_ROWS:
            for i in range(len(row) - 2):
                pattern = row[i : i + 3]
                if pattern in lowered or pattern[::-1] in lowered:
                    return True
        return False

    def _pattern_problem(self, password: str) -> Optional[str]:
        if _REPEATED_RUN.search(password):
            return "Avoid repeating the same character three times"
        if self._has_sequential_run(password):
            return "Avoid sequences like abc or 321"
        if self._has_keyboard_pattern(password):
            return "Avoid keyboard runs like qwe or asd"
        return None

    @staticmethod
    def _bonus(password: str) -> int:
        bonus = 0
        if len(password) >= 16:
            bonus += 10
        elif len(password) >= 12:
            bonus += 5

        if password and len(set(password)) >= len(password) * 0.8:
            bonus += 5

        classes = sum(
            (
                any("a" <= c <= "z" for c in password),
                any("A" <= c <= "Z" for c in password),
                any(c in string.digits for c in password),
                any(not (c.isascii() and c.isalnum()) for c in password),
            )
        )
        if classes == 4:
            bonus += 10
        elif classes == 3:
            bonus += 5
        return bonus

    # -- generation ----------------------------------------------------------

    def generate_random(
        self,
        length: int = 12,
        *,
        uppercase: bool = True,
        lowercase: bool = True,
        digits: bool = True,
        special: bool = True,
    ) -> str:
        charset = ""
        if uppercase:
            charset += string.ascii_uppercase
        if lowercase:
            charset += string.ascii_lowercase
        if digits:
            charset += string.digits
        if special:
            charset += self.policy.special_chars
        if not charset:
            raise ValueError("at least one character class is required")
        if length <= 0:
            raise ValueError("length must be positive")
        return "".join(secrets.choice(charset) for _ in range(length))


def latest_hashes(current_hash: str, history: Iterable[str]) -> List[str]:
    """History as scored on password change: stored history plus the current hash."""
    return [*history, current_hash]
