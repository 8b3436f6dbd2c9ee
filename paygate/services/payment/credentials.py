"""
Credential Store
Encrypts provider credentials at rest.

Blobs are compact JWE tokens (alg=dir, enc=A256GCM). The context string is
carried in the authenticated protected header, so a blob only decrypts for
the organizer/provider row it was written for.
"""
import os
import json
import logging
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from jose import jwe
from jose.exceptions import JOSEError

from paygate.services.payment.errors import CredentialError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT = "payment-credentials"
KEY_LENGTH = 32


def credentials_context(organizer_id: str, provider_id: str) -> str:
    """Context bound into every credential blob"""
    return f"{DEFAULT_CONTEXT}-{organizer_id}-{provider_id}"


class CredentialStore:
    """Symmetric encryption of per-organizer provider credentials"""

    def __init__(self, secret_key: Optional[str] = None):
        secret_key = secret_key if secret_key is not None else os.getenv("PAYMENT_CREDENTIALS_KEY")
        if not secret_key:
            raise ValueError("PAYMENT_CREDENTIALS_KEY is required")

        key = secret_key.encode("utf-8")
        if len(key) != KEY_LENGTH:
            raise ValueError(f"PAYMENT_CREDENTIALS_KEY must be exactly {KEY_LENGTH} bytes long")

        self._key = key

    def encrypt(self, plain: Dict[str, Any], context: str = DEFAULT_CONTEXT) -> str:
        """Encrypt a credentials dict into an opaque string"""
        payload = json.dumps(plain, separators=(",", ":"), sort_keys=True)
        token = jwe.encrypt(
            payload,
            self._key,
            algorithm="dir",
            encryption="A256GCM",
            kid=context,
        )
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def decrypt(self, blob: str, context: str = DEFAULT_CONTEXT) -> Dict[str, Any]:
        """
        Decrypt a credential blob.

        Raises:
            CredentialError: Corrupted blob, wrong key or wrong context
        """
        if not blob or not isinstance(blob, str):
            raise CredentialError("Credential blob is empty")

        try:
            header = jwe.get_unverified_header(blob)
            payload = jwe.decrypt(blob, self._key)
        except (JOSEError, ValueError, TypeError, KeyError) as e:
            logger.error("[ERROR] Credential decryption failed (context=%s): %s", context, type(e).__name__)
            raise CredentialError("Unable to decrypt credentials") from e

        if payload is None or header.get("kid") != context:
            logger.error("[ERROR] Credential context mismatch (expected %s)", context)
            raise CredentialError("Unable to decrypt credentials")

        try:
            data = json.loads(payload)
        except ValueError as e:
            raise CredentialError("Decrypted credentials are not valid JSON") from e

        if not isinstance(data, dict):
            raise CredentialError("Decrypted credentials are not an object")

        return data
