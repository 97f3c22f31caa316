"""
Admin authentication with hashed credentials and expiring session tokens.

Supports:
- bcrypt (recommended)
- SHA256 with a random salt

Usage:
    # Generate a bcrypt hash for CROWDFLASH_ADMIN_PASSWORD_HASH
    crowdflash-auth hash "mypassword"

    # Verify a password
    crowdflash-auth verify "mypassword" "bcrypt:$2b$12$..."
"""

import argparse
import hashlib
import logging
import secrets
import sys
import time
from collections import OrderedDict
from typing import Callable, Optional

import bcrypt

logger = logging.getLogger(__name__)

HASH_PREFIXES = ("bcrypt:", "sha256:")


class InvalidCredentials(Exception):
    """Raised when a login presents the wrong email or password."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


def hash_password(password: str, method: str = "bcrypt") -> str:
    """
    Hash a password using the specified method.

    Args:
        password: The plaintext password
        method: 'bcrypt' or 'sha256'

    Returns:
        Hashed password with method prefix (e.g., 'bcrypt:$2b$12$...')
    """
    if method == "bcrypt":
        salt = bcrypt.gensalt(rounds=12)
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return f"bcrypt:{hashed.decode('utf-8')}"

    elif method == "sha256":
        salt = secrets.token_hex(16)
        hash_input = f"{salt}:{password}"
        hashed = hashlib.sha256(hash_input.encode("utf-8")).hexdigest()
        return f"sha256:{salt}:{hashed}"

    else:
        raise ValueError(f"Unknown hashing method: {method}")


def is_hashed(hash_str: str) -> bool:
    return bool(hash_str) and hash_str.startswith(HASH_PREFIXES)


def verify_password(password: str, hash_str: str) -> bool:
    """
    Verify a password against a stored hash.

    Args:
        password: The plaintext password to verify
        hash_str: The stored hash (with method prefix)

    Returns:
        True if password matches, False otherwise
    """
    if not hash_str:
        return False

    if hash_str.startswith("bcrypt:"):
        stored_hash = hash_str[7:].encode("utf-8")
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
        except (ValueError, TypeError):
            return False

    elif hash_str.startswith("sha256:"):
        parts = hash_str.split(":")
        if len(parts) != 3:
            return False
        _, salt, stored_hash = parts
        computed = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
        return secrets.compare_digest(computed, stored_hash)

    # Plaintext is never accepted
    return False


def generate_token() -> str:
    """Generate a cryptographically secure session token."""
    return secrets.token_urlsafe(32)


class AuthService:
    """Issues and verifies admin session tokens.

    There is a single admin identity. Tokens expire after ``token_ttl``
    seconds and at most ``max_tokens`` are live at once; issuing beyond
    that evicts the oldest.
    """

    def __init__(
        self,
        admin_email: str,
        admin_password_hash: str,
        token_ttl: float = 12 * 3600,
        max_tokens: int = 64,
        clock: Callable[[], float] = time.time,
    ):
        self.admin_email = admin_email
        self._password_hash = admin_password_hash
        self.token_ttl = token_ttl
        self.max_tokens = max_tokens
        self._clock = clock
        self._tokens: "OrderedDict[str, float]" = OrderedDict()  # token -> expires_at

    @classmethod
    def from_settings(cls, settings) -> "AuthService":
        return cls(
            admin_email=settings.admin_email,
            admin_password_hash=settings.admin_password_hash,
            token_ttl=settings.token_ttl_seconds,
            max_tokens=settings.max_tokens,
        )

    @property
    def login_enabled(self) -> bool:
        return is_hashed(self._password_hash)

    def issue_token(self, email: str, password: str) -> str:
        """Exchange the admin credentials for a new session token."""
        if (
            not self.login_enabled
            or not isinstance(email, str)
            or not isinstance(password, str)
            or not secrets.compare_digest(email.encode("utf-8"), self.admin_email.encode("utf-8"))
            or not verify_password(password, self._password_hash)
        ):
            raise InvalidCredentials()

        self._purge_expired()
        while len(self._tokens) >= self.max_tokens:
            self._tokens.popitem(last=False)

        token = generate_token()
        self._tokens[token] = self._clock() + self.token_ttl
        logger.info(f"Issued admin token ({len(self._tokens)} active)")
        return token

    def verify_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        expires_at = self._tokens.get(token)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            del self._tokens[token]
            return False
        return True

    def revoke(self, token: str) -> bool:
        return self._tokens.pop(token, None) is not None

    def active_token_count(self) -> int:
        self._purge_expired()
        return len(self._tokens)

    def _purge_expired(self):
        now = self._clock()
        for token in [t for t, exp in self._tokens.items() if now >= exp]:
            del self._tokens[token]


def main():
    """CLI entry point for auth utilities."""
    parser = argparse.ArgumentParser(
        prog="crowdflash-auth",
        description="Crowdflash admin credential utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s hash "mypassword"              # Generate bcrypt hash
  %(prog)s hash "mypassword" --sha256     # Generate SHA256 hash
  %(prog)s verify "pass" "bcrypt:$2b..."  # Verify password
  %(prog)s keygen                         # Generate a random token
        """,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    hash_parser = subparsers.add_parser("hash", help="Hash a password")
    hash_parser.add_argument("password", help="Password to hash")
    hash_parser.add_argument("--sha256", action="store_true", help="Use SHA256 instead of bcrypt")

    verify_parser = subparsers.add_parser("verify", help="Verify a password")
    verify_parser.add_argument("password", help="Password to verify")
    verify_parser.add_argument("hash", help="Hash to verify against")

    subparsers.add_parser("keygen", help="Generate a random token")

    args = parser.parse_args()

    if args.command == "hash":
        print(hash_password(args.password, "sha256" if args.sha256 else "bcrypt"))

    elif args.command == "verify":
        if verify_password(args.password, args.hash):
            print("Password matches")
        else:
            print("Password does NOT match")
            return 1

    elif args.command == "keygen":
        print(generate_token())

    return 0


if __name__ == "__main__":
    sys.exit(main())
