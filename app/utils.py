"""
Utility functions for the Webhook API.
"""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"


def verify_subscription(mode: Optional[str], token: Optional[str], expected_token: str) -> bool:
    """
    Check the provider's GET /webhook subscription handshake.

    Args:
        mode: hub.mode query parameter
        token: hub.verify_token query parameter
        expected_token: WEBHOOK_VERIFY_TOKEN

    Returns:
        True if mode is "subscribe" and the token matches, False otherwise
    """
    if mode != SUBSCRIBE_MODE or not token or not expected_token:
        logger.info(f"Webhook verification rejected: mode={mode!r}, token present={bool(token)}")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8"))
    logger.info(f"Webhook verification: {'valid' if is_valid else 'invalid'} token")
    return is_valid
