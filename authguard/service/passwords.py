from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authguard.logging import get_logger
from authguard.service.errors import WeakPasswordError

logger = get_logger(__name__)

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>_\-+=\[\]\\/;'`~]")

_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_unverifiable")
        return False


@dataclass
class PasswordPolicy:
    min_length: int = 8
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    def problems(self, password: str) -> List[str]:
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters long")
        if self.require_upper and not re.search(r"[A-Z]", password):
            problems.append("must contain an uppercase letter")
        if self.require_lower and not re.search(r"[a-z]", password):
            problems.append("must contain a lowercase letter")
        if self.require_digit and not re.search(r"\d", password):
            problems.append("must contain a number")
        if self.require_special and not _SPECIAL_CHARS.search(password):
            problems.append("must contain a special character")
        return problems

    def validate(self, password: str) -> None:
        problems = self.problems(password or "")
        if problems:
            raise WeakPasswordError(
                "password does not meet requirements",
                detail={"problems": problems},
            )
