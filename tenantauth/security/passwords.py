"""
Credential hashing with scrypt or PBKDF2-HMAC-SHA256.

Encoded hashes are self-describing: ``algorithm:saltHex:derivedKeyHex``
where the algorithm tag carries its cost parameters, e.g.
``scrypt$16384$8$1`` or ``pbkdf2_sha256$600000``. Stored hashes produced
under older parameters keep verifying and are reported by
:meth:`CredentialHasher.needs_rehash`.
"""

import asyncio
import hmac
import logging
import os
import re
from typing import FrozenSet, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, Field

from tenantauth.config import Settings
from tenantauth.exceptions import WeakInputError

logger = logging.getLogger(__name__)

_SALT_LENGTH = 16
_KEY_LENGTH = 64

SCRYPT = "scrypt"
PBKDF2_SHA256 = "pbkdf2_sha256"

# Accepted cost ranges when parsing a stored hash. Anything outside is
# treated as corrupt rather than fed to the KDF.
_SCRYPT_N_RANGE = (2**10, 2**20)
_SCRYPT_R_RANGE = (1, 32)
_SCRYPT_P_RANGE = (1, 16)
_PBKDF2_ITERATIONS_RANGE = (100_000, 10_000_000)

COMMON_PASSWORDS: FrozenSet[str] = frozenset(
    {
        "password",
        "password1",
        "password123",
        "passw0rd",
        "123456",
        "12345678",
        "123456789",
        "qwerty",
        "qwerty123",
        "admin",
        "admin123",
        "letmein",
        "welcome",
        "welcome1",
        "iloveyou",
        "abc12345",
        "changeme",
    }
)


# ── Policy ─────────────────────────────────────────────


class PasswordPolicy(BaseModel):
    """Canonical password policy.

    Attributes:
        min_length: Minimum number of characters.
        max_length: Maximum number of characters.
        require_uppercase: At least one upper-case letter.
        require_lowercase: At least one lower-case letter.
        require_digit: At least one digit.
        require_symbol: At least one non-alphanumeric character.
        disallow_common: Reject passwords from the common-password list.
    """

    min_length: int = Field(default=8, ge=8)
    max_length: int = Field(default=128, le=1024)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_symbol: bool = False
    disallow_common: bool = True

    def validate_password(self, password: str) -> None:
        """Raise :class:`WeakInputError` naming the first rule ``password`` breaks."""
        if not isinstance(password, str) or len(password) < self.min_length:
            raise WeakInputError(
                f"Password must be at least {self.min_length} characters long",
                details={"rule": "min_length"},
            )
        if len(password) > self.max_length:
            raise WeakInputError(
                f"Password must be at most {self.max_length} characters long",
                details={"rule": "max_length"},
            )
        if self.require_uppercase and not re.search(r"[A-Z]", password):
            raise WeakInputError(
                "Password must contain an uppercase letter",
                details={"rule": "uppercase"},
            )
        if self.require_lowercase and not re.search(r"[a-z]", password):
            raise WeakInputError(
                "Password must contain a lowercase letter",
                details={"rule": "lowercase"},
            )
        if self.require_digit and not re.search(r"\d", password):
            raise WeakInputError(
                "Password must contain a number",
                details={"rule": "digit"},
            )
        if self.require_symbol and not re.search(r"[^A-Za-z0-9]", password):
            raise WeakInputError(
                "Password must contain a special character",
                details={"rule": "symbol"},
            )
        if self.disallow_common and password.lower() in COMMON_PASSWORDS:
            raise WeakInputError(
                "Password is too common",
                details={"rule": "common"},
            )


class HasherConfig(BaseModel):
    """Configuration for CredentialHasher.

    Attributes:
        algorithm: ``scrypt`` or ``pbkdf2_sha256`` for new hashes.
        scrypt_n: scrypt CPU/memory cost (power of two).
        scrypt_r: scrypt block size.
        scrypt_p: scrypt parallelism.
        pbkdf2_iterations: PBKDF2 iteration count.
    """

    algorithm: str = SCRYPT
    scrypt_n: int = Field(default=2**14, ge=_SCRYPT_N_RANGE[0], le=_SCRYPT_N_RANGE[1])
    scrypt_r: int = Field(default=8, ge=_SCRYPT_R_RANGE[0], le=_SCRYPT_R_RANGE[1])
    scrypt_p: int = Field(default=1, ge=_SCRYPT_P_RANGE[0], le=_SCRYPT_P_RANGE[1])
    pbkdf2_iterations: int = Field(
        default=600_000,
        ge=_PBKDF2_ITERATIONS_RANGE[0],
        le=_PBKDF2_ITERATIONS_RANGE[1],
    )

    @property
    def tag(self) -> str:
        if self.algorithm == SCRYPT:
            return f"{SCRYPT}${self.scrypt_n}${self.scrypt_r}${self.scrypt_p}"
        return f"{PBKDF2_SHA256}${self.pbkdf2_iterations}"


# ── Hasher ─────────────────────────────────────────────


class CredentialHasher:
    """One-way password hashing with constant-time verification.

    The public coroutines run the key derivation in a worker thread so
    that hashing never stalls the event loop.

    Args:
        config: KDF selection and cost parameters.
        policy: Password policy enforced by :meth:`hash`.
    """

    def __init__(
        self,
        config: Optional[HasherConfig] = None,
        policy: Optional[PasswordPolicy] = None,
    ) -> None:
        self._config = config or HasherConfig()
        if self._config.algorithm not in (SCRYPT, PBKDF2_SHA256):
            raise ValueError(f"Unsupported password hash algorithm: {self._config.algorithm}")
        self._policy = policy or PasswordPolicy()
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            HasherConfig(
                algorithm=settings.password_hash_algorithm,
                scrypt_n=settings.scrypt_n,
                scrypt_r=settings.scrypt_r,
                scrypt_p=settings.scrypt_p,
                pbkdf2_iterations=settings.pbkdf2_iterations,
            ),
            PasswordPolicy(min_length=settings.password_min_length),
        )

    @property
    def policy(self) -> PasswordPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def hash(self, password: str) -> str:
        """Hash a password after checking it against the policy.

        Args:
            password: Plaintext password.

        Returns:
            Encoded hash ``algorithm:saltHex:derivedKeyHex``.

        Raises:
            WeakInputError: If the password violates the policy.
        """
        self._policy.validate_password(password)
        return await asyncio.to_thread(self.hash_blocking, password)

    async def verify(self, password: str, encoded: str) -> bool:
        """Return True iff ``password`` re-derives to ``encoded``. Never raises."""
        return await asyncio.to_thread(self.verify_blocking, password, encoded)

    async def rehash(self, password: str) -> str:
        """Re-hash an already accepted password under the current parameters."""
        return await asyncio.to_thread(self.hash_blocking, password)

    async def dummy_verify(self, password: str) -> None:
        """Spend one derivation so unknown-user logins cost the same as bad passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self.hash_blocking, os.urandom(16).hex()
            )
        await self.verify(password, self._dummy_hash)

    def needs_rehash(self, encoded: str) -> bool:
        """True when ``encoded`` was not produced with the current algorithm and cost."""
        tag, _, _ = encoded.partition(":")
        return tag != self._config.tag

    # ------------------------------------------------------------------
    # Blocking primitives
    # ------------------------------------------------------------------

    def hash_blocking(self, password: str) -> str:
        salt = os.urandom(_SALT_LENGTH)
        tag = self._config.tag
        key = _derive(_parse_tag(tag), password, salt)
        return f"{tag}:{salt.hex()}:{key.hex()}"

    def verify_blocking(self, password: str, encoded: str) -> bool:
        try:
            tag, salt_hex, key_hex = encoded.split(":")
            params = _parse_tag(tag)
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(key_hex)
            if len(salt) < _SALT_LENGTH or len(expected) != _KEY_LENGTH:
                return False
            derived = _derive(params, password, salt)
        except Exception:
            logger.debug("Stored credential hash could not be parsed")
            return False
        return hmac.compare_digest(derived, expected)


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _in_range(value: int, bounds: Tuple[int, int]) -> bool:
    return bounds[0] <= value <= bounds[1]


def _parse_tag(tag: str) -> Tuple[str, Tuple[int, ...]]:
    """Split an algorithm tag into its name and validated cost parameters.

    Raises:
        ValueError: On an unknown algorithm or out-of-range parameter.
    """
    name, *raw = tag.split("$")
    params = tuple(int(p) for p in raw)
    if name == SCRYPT and len(params) == 3:
        n, r, p = params
        if (
            _in_range(n, _SCRYPT_N_RANGE)
            and n & (n - 1) == 0
            and _in_range(r, _SCRYPT_R_RANGE)
            and _in_range(p, _SCRYPT_P_RANGE)
        ):
            return name, params
    elif name == PBKDF2_SHA256 and len(params) == 1:
        if _in_range(params[0], _PBKDF2_ITERATIONS_RANGE):
            return name, params
    raise ValueError(f"Unsupported hash tag: {tag!r}")


def _derive(parsed: Tuple[str, Tuple[int, ...]], password: str, salt: bytes) -> bytes:
    name, params = parsed
    if name == SCRYPT:
        n, r, p = params
        kdf = Scrypt(salt=salt, length=_KEY_LENGTH, n=n, r=r, p=p)
    else:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=_KEY_LENGTH,
            salt=salt,
            iterations=params[0],
        )
    return kdf.derive(password.encode("utf-8"))
