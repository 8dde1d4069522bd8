"""Secure value generation for bundle keys."""

import base64
import logging
import secrets
import string
from typing import Any, Dict, Mapping, Optional

from ..utils.errors import SecurityError
from .models import BundleSpec

logger = logging.getLogger(__name__)

SYMBOLS = "!@#$%^&*()-_=+[]{}|;:,.<>?"
AMBIGUOUS = "0O1lI"


class SecretGenerator:
    """Produces CSPRNG values for the keys a bundle declares under ``generate``."""

    KINDS = ("password", "api-key", "jwt-secret", "hex")

    def __init__(self):
        self.alphabet_alphanumeric = string.ascii_letters + string.digits
        self.alphabet_safe = self.alphabet_alphanumeric + SYMBOLS

    def generate_password(self, length: int = 32, include_symbols: bool = False, exclude_ambiguous: bool = True) -> str:
        """
        Generate a secure password.

        Symbols are off by default: generated passwords end up inside
        connection URLs rendered from templates.

        Args:
            length: Password length
            include_symbols: Whether to include special symbols
            exclude_ambiguous: Whether to exclude ambiguous characters (0, O, l, 1, I)

        Returns:
            str: Secure password
        """
        if length < 8:
            raise SecurityError("Password length must be at least 8 characters")

        alphabet = self.alphabet_safe if include_symbols else self.alphabet_alphanumeric
        required = [string.ascii_lowercase, string.ascii_uppercase, string.digits]
        if include_symbols:
            required.append(SYMBOLS)

        if exclude_ambiguous:
            alphabet = "".join(c for c in alphabet if c not in AMBIGUOUS)
            required = ["".join(c for c in chars if c not in AMBIGUOUS) for chars in required]

        # One character from each category, the rest from the full alphabet
        password = [secrets.choice(chars) for chars in required]
        password.extend(secrets.choice(alphabet) for _ in range(length - len(password)))
        secrets.SystemRandom().shuffle(password)
        return "".join(password)

    def generate_api_key(self, length: int = 64) -> str:
        """
        Generate a URL-safe API key of exactly ``length`` characters.

        Returns:
            str: Secure API key
        """
        if length < 32:
            raise SecurityError("API key length must be at least 32 characters")

        api_key = base64.urlsafe_b64encode(secrets.token_bytes(length)).decode("utf-8").rstrip("=")
        return api_key[:length]

    def generate_secret_key(self, length: int = 64) -> str:
        """Generate a hex secret suitable for signing JWTs."""
        if length < 64:
            raise SecurityError("Secret key length must be at least 64 characters")
        return secrets.token_hex(length // 2)

    def generate_hex(self, length: int = 32) -> str:
        return secrets.token_hex(max(length, 2) // 2)

    def generate(self, kind: str) -> str:
        """
        Generate one value of the given kind.

        Args:
            kind: One of ``password``, ``api-key``, ``jwt-secret`` or ``hex``

        Returns:
            str: Generated value

        Raises:
            SecurityError: If the kind is unknown
        """
        generators = {
            "password": self.generate_password,
            "api-key": self.generate_api_key,
            "jwt-secret": self.generate_secret_key,
            "hex": self.generate_hex,
        }
        if kind not in generators:
            raise SecurityError(
                f"Unknown generator kind: {kind}",
                suggestions=[f"Use one of: {', '.join(self.KINDS)}"],
            )
        return generators[kind]()

    def regenerate(self, generate: Mapping[str, str], only: Optional[Mapping[str, Any]] = None) -> Dict[str, bytes]:
        """
        Produce fresh values for every key in a ``generate`` map.

        Args:
            generate: Key name to generator kind
            only: Skip keys present here (explicit values win)

        Returns:
            Dict[str, bytes]: New values by key
        """
        values = {}
        for key, kind in generate.items():
            if only and key in only:
                continue
            values[key] = self.generate(kind).encode("utf-8")
        logger.debug("Generated new values for keys: %s", ", ".join(sorted(values)) or "<none>")
        return values

    def fill_missing(self, spec: BundleSpec) -> BundleSpec:
        """Return ``spec`` with generated values for declared keys it lacks."""
        missing = {key: kind for key, kind in spec.generate.items() if key not in spec.keys}
        if not missing:
            return spec
        keys = dict(spec.keys)
        keys.update(self.regenerate(missing))
        return BundleSpec(
            name=spec.name,
            type=spec.type,
            keys=keys,
            templates=dict(spec.templates),
            generate=dict(spec.generate),
            source=spec.source,
        )
