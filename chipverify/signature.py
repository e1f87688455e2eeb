"""
Signature verification for chip scans.

HMAC-class chips sign "<tag_id>|<counter>" with their pre-shared secret and
present the digest as hex. The verifier variant is chosen once at startup:

- ProductionSignatureVerifier: only chips holding a secret can pass
- DevelopmentSignatureVerifier: chips without a secret pass on an exact
  match against the operator's bypass value (DEV_CHIP_SIG). Never build
  this variant for real chips.
"""

import logging
from abc import ABC, abstractmethod

from .config import Settings
from .exceptions import ConfigurationError
from .models import Chip
from .security import decode_hex_signature
from .util import constant_time_compare, hmac_sha256

logger = logging.getLogger(__name__)

MESSAGE_SEPARATOR = "|"


def scan_message(tag_id: str, counter: str) -> str:
    """The message a chip signs: tag identifier and counter as presented."""
    return f"{tag_id}{MESSAGE_SEPARATOR}{counter}"


def verify_hmac(secret: str, message: str, signature_hex: str) -> bool:
    """
    Verify a hex-encoded HMAC-SHA256 tag.

    Args:
        secret: The chip's pre-shared key
        message: The signed message
        signature_hex: Caller-supplied signature, any case

    Returns:
        True if the signature matches, False otherwise (including malformed hex)
    """
    presented = decode_hex_signature(signature_hex)
    if presented is None:
        return False
    expected = hmac_sha256(secret, message)
    return constant_time_compare(expected, presented)


class SignatureVerifier(ABC):
    """Abstract interface for validating a chip's presented signature."""

    mode = "abstract"

    def verify(self, chip: Chip, tag_id: str, counter: str, signature: str) -> bool:
        if chip.secret:
            return verify_hmac(chip.secret, scan_message(tag_id, counter), signature)
        return self._verify_without_secret(chip, signature)

    @abstractmethod
    def _verify_without_secret(self, chip: Chip, signature: str) -> bool:
        pass


class ProductionSignatureVerifier(SignatureVerifier):
    """Chips without a pre-shared secret never verify."""

    mode = "production"

    def _verify_without_secret(self, chip: Chip, signature: str) -> bool:
        return False


class DevelopmentSignatureVerifier(SignatureVerifier):
    """
    Accepts secret-less unit/dev chips that present the configured bypass value.

    WARNING: Not suitable for production. Anyone who knows the bypass value
    can forge a scan for every chip without a secret.
    """

    mode = "development"

    def __init__(self, bypass_signature: str):
        if not bypass_signature:
            raise ConfigurationError("development verifier requires DEV_CHIP_SIG")
        self._bypass = bypass_signature

    def _verify_without_secret(self, chip: Chip, signature: str) -> bool:
        return constant_time_compare(signature, self._bypass)


def get_signature_verifier(settings: Settings) -> SignatureVerifier:
    """
    Factory function to create the configured verifier.

    Raises:
        ConfigurationError: If the development verifier is requested in prod
            or without a bypass value
    """
    if settings.verifier_mode == "development":
        if settings.is_production():
            raise ConfigurationError("development signature verifier cannot run with CHIPVERIFY_ENV=prod")
        logger.warning("development signature verifier enabled: secret-less chips accept DEV_CHIP_SIG")
        return DevelopmentSignatureVerifier(settings.dev_chip_sig)
    return ProductionSignatureVerifier()
