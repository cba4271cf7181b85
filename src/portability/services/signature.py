"""Owner identifier signing for external service notifications.

External services receive the owner identifier together with its
HMAC-SHA512 hex digest keyed by the shared token, and recompute the digest
to authenticate the call.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from portability.core.config import PortabilitySettings


@dataclass(frozen=True, slots=True)
class SignedIdentifier:
    """Owner identifier and its signature.

    Attributes:
        identifier: Value of the owner's finder attribute (e.g. an email).
        signature: Lowercase hex HMAC-SHA512 of identifier.
    """

    identifier: str
    signature: str

    def as_payload(self) -> dict[str, str]:
        """Return the notification body sent to external services."""
        return {"user": self.identifier, "hash": self.signature}


def compute_signature(identifier: str, token: str) -> str:
    """Return the hex HMAC-SHA512 of identifier keyed by token."""
    return hmac.new(
        token.encode("utf-8"),
        identifier.encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def sign(identifier: str, token: str) -> SignedIdentifier:
    """Sign an owner identifier.

    Args:
        identifier: Owner identifier.
        token: Shared secret of the receiving service.

    Returns:
        SignedIdentifier ready to be sent.
    """
    return SignedIdentifier(identifier=identifier, signature=compute_signature(identifier, token))


def verify(identifier: str, signature: str, token: str) -> bool:
    """Check a signature in constant time.

    Args:
        identifier: Owner identifier as received.
        signature: Hex digest as received.
        token: Shared secret.

    Returns:
        True if the signature matches.
    """
    expected = compute_signature(identifier, token)
    return hmac.compare_digest(expected, signature.lower())


def sign_for_owner(identifier: str, settings: PortabilitySettings) -> SignedIdentifier:
    """Sign with the shared portability token rather than a service token.

    Used when the owner's own client calls back into the export flow.
    """
    return sign(identifier, settings.token.get_secret_value())
