"""Shared-secret authentication for gateway webhook deliveries."""

import hashlib
import hmac

from consultpay.common.config import WebhookSettings
from consultpay.common.errors import Unauthorized


class WebhookAuthenticator:
    """Checks `Authorization: sha256(username:password)` on each delivery."""

    def __init__(self, webhook_settings: WebhookSettings) -> None:
        self.settings = webhook_settings
        self._expected: str | None = None
        if webhook_settings.configured:
            credentials = f"{webhook_settings.username}:{webhook_settings.password}"
            self._expected = hashlib.sha256(credentials.encode("utf-8")).hexdigest()

    @property
    def configured(self) -> bool:
        return self._expected is not None

    def verify(self, authorization: str | None) -> None:
        """Raise `Unauthorized` unless the header carries the expected hash."""

        if self._expected is None or not authorization:
            raise Unauthorized("webhook credentials missing")
        provided = authorization.strip()
        if provided[:7].upper() == "SHA256 ":
            provided = provided[7:].strip()
        if not hmac.compare_digest(provided.lower().encode("utf-8"), self._expected.encode("ascii")):
            raise Unauthorized("webhook signature mismatch")
