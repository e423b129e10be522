"""
OKX API credentials: loading from the environment, validation, and login signing.

Invalid or missing credentials are never an error; the monitor falls back to
demo mode with all three values cleared.
"""

import base64
import hashlib
import hmac
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

API_KEY_ENV = "OKX_API_KEY"
API_SECRET_ENV = "OKX_API_SECRET"
API_PASSPHRASE_ENV = "OKX_API_PASSPHRASE"

# Values shipped in the sample .env file
PLACEHOLDERS = ("your-actual-api-key", "your-actual-api-secret", "your-actual-passphrase")

API_KEY_PATTERN = re.compile(
    r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}$"
)
MIN_SECRET_LENGTH = 32

VERIFY_METHOD = "GET"
VERIFY_PATH = "/users/self/verify"


@dataclass(frozen=True)
class Credentials:
    api_key: str = ""
    secret_key: str = ""
    passphrase: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.secret_key and self.passphrase)

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}..." if self.api_key else "''"
        return f"Credentials(api_key={masked}, secret_key=***, passphrase=***)"


DEMO_CREDENTIALS = Credentials()


def validate_credentials(api_key: str, secret_key: str, passphrase: str) -> bool:
    """Check credentials look usable before attempting a private login."""
    for value, placeholder in zip((api_key, secret_key, passphrase), PLACEHOLDERS):
        if placeholder in (value or ""):
            return False

    if not API_KEY_PATTERN.match(api_key or ""):
        return False

    if len(secret_key or "") < MIN_SECRET_LENGTH:
        return False

    if not passphrase:
        return False

    return True


def load_credentials(env_file: Optional[str] = None) -> tuple:
    """
    Load credentials from the environment (and an optional .env file).

    Returns:
        Tuple of (credentials, valid). Invalid credentials come back cleared.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    api_key = os.getenv(API_KEY_ENV, "")
    secret_key = os.getenv(API_SECRET_ENV, "")
    passphrase = os.getenv(API_PASSPHRASE_ENV, "")

    if not validate_credentials(api_key, secret_key, passphrase):
        logger.info("Invalid or missing OKX credentials; running in demo mode")
        return DEMO_CREDENTIALS, False

    logger.info("Loaded OKX credentials for key %s...", api_key[:4])
    return Credentials(api_key, secret_key, passphrase), True


def sign(secret_key: str, timestamp: str, method: str = VERIFY_METHOD, path: str = VERIFY_PATH) -> str:
    """
    Sign a prehash string the way OKX expects.

    Args:
        secret_key: API secret
        timestamp: Unix timestamp in seconds, as a string
        method: HTTP verb included in the prehash
        path: Request path included in the prehash

    Returns:
        Base64-encoded HMAC-SHA256 digest
    """
    message = f"{timestamp}{method}{path}"
    digest = hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def build_login_request(credentials: Credentials, timestamp: Optional[str] = None) -> dict:
    """Create the websocket login frame for the private channel."""
    if not credentials.is_complete:
        raise ValueError("Credentials are incomplete; cannot build a login request.")

    if timestamp is None:
        timestamp = str(int(time.time()))

    return {
        "op": "login",
        "args": [
            {
                "apiKey": credentials.api_key,
                "passphrase": credentials.passphrase,
                "timestamp": timestamp,
                "sign": sign(credentials.secret_key, timestamp),
            }
        ],
    }
