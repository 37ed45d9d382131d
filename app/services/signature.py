"""
Webhook Signature Verification
==============================

RevenueCat sends the authorization value configured in its dashboard with
every webhook call, either in ``Authorization`` (bare or ``Bearer``-prefixed)
or in ``X-RevenueCat-Signature``. The value is a shared secret, not an HMAC,
so verification is a constant-time comparison.
"""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


def extract_credential(
    authorization: Optional[str],
    signature_header: Optional[str] = None,
) -> str:
    """
    Pick the credential out of the request headers.

    ``Authorization`` wins over the dedicated signature header when both are
    present; a ``Bearer `` prefix is stripped.
    """
    authorization = (authorization or "").strip()
    if authorization:
        if authorization.lower().startswith(_BEARER_PREFIX):
            return authorization[len(_BEARER_PREFIX):].strip()
        return authorization
    return (signature_header or "").strip()


class SignatureVerifier:
    """Validates that a webhook call came from the configured provider."""

    def __init__(self, secret: str, is_production: bool):
        self.secret = secret or ""
        self.is_production = is_production

    def verify(self, credential: Optional[str]) -> bool:
        """
        Compare the received credential with the shared secret.

        Without a configured secret, non-production environments accept the
        call (with a warning) and production rejects it.
        """
        if not self.secret:
            if self.is_production:
                logger.error(
                    "REVENUECAT_WEBHOOK_SECRET not configured in production, "
                    "rejecting webhook"
                )
                return False
            logger.warning(
                "REVENUECAT_WEBHOOK_SECRET not configured, webhooks are NOT "
                "being verified"
            )
            return True

        if not credential:
            return False

        return hmac.compare_digest(
            credential.encode("utf-8"),
            self.secret.encode("utf-8"),
        )
