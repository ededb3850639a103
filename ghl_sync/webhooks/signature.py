from __future__ import annotations

import hashlib
import hmac
from collections.abc import Sequence

from ghl_sync.errors import SignatureError
from ghl_sync.integrations.config import IntegrationConfig


SIGNATURE_HEADER = "X-GHL-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """HMAC-SHA256 check of the raw webhook body against the configured secrets.

    The primary secret is tried first; a fallback secret stays valid during rotation.
    """

    def __init__(self, secrets: Sequence[str]) -> None:
        self._secrets = tuple(secret for secret in secrets if secret)

    @classmethod
    def from_config(cls, config: IntegrationConfig) -> SignatureVerifier:
        return cls(config.webhook_secrets)

    @property
    def configured(self) -> bool:
        return bool(self._secrets)

    def verify(self, body: bytes, signature: str | None) -> None:
        if not signature:
            raise SignatureError("missing signature")
        if not self._secrets:
            raise SignatureError("webhook secret not configured")

        provided = signature.strip().lower()
        matched = False
        # all candidates are compared, no early exit
        for secret in self._secrets:
            if hmac.compare_digest(compute_signature(secret, body), provided):
                matched = True
        if not matched:
            raise SignatureError("signature mismatch")

    def is_valid(self, body: bytes, signature: str | None) -> bool:
        try:
            self.verify(body, signature)
        except SignatureError:
            return False
        return True
