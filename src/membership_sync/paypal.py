"""membership_sync.paypal

PayPal webhook signature verification.

Verification is two calls against the PayPal REST API:
  1. POST /v1/oauth2/token  (client credentials, HTTP basic auth)
  2. POST /v1/notifications/verify-webhook-signature
     with the Paypal-* transmission headers, the configured webhook id and
     the event exactly as received.

The verifier never raises: any transport or API failure is logged and
reported as "not verified".  Callers decide what to do with that; the
webhook service only logs it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

import requests

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paypal.com"
DEFAULT_TIMEOUT = 10

# verify-webhook-signature field -> transmission header
SIGNATURE_HEADERS = {
    "auth_algo": "Paypal-Auth-Algo",
    "cert_url": "Paypal-Cert-Url",
    "transmission_id": "Paypal-Transmission-Id",
    "transmission_sig": "Paypal-Transmission-Sig",
    "transmission_time": "Paypal-Transmission-Time",
}


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower(), "")
    return value


def build_verification_body(
    headers: Mapping[str, str],
    webhook_id: str,
    body: bytes,
) -> str:
    """Build the verify-webhook-signature request body.

    The received event is embedded verbatim; re-serializing it can change key
    order or number formatting and then fails verification.
    """
    fields = {key: _header(headers, name) for key, name in SIGNATURE_HEADERS.items()}
    fields["webhook_id"] = webhook_id
    prefix = json.dumps(fields)[:-1]
    event = body.decode("utf-8").strip() or "{}"
    return f'{prefix}, "webhook_event": {event}}}'


class PayPalVerifier:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> PayPalVerifier:
        return cls(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            settings.paypal_webhook_id,
            base_url=settings.paypal_base_url,
        )

    @property
    def enabled(self) -> bool:
        """Verification is attempted only when a webhook id is configured."""
        return bool(self.webhook_id)

    def get_access_token(self) -> str:
        """Fetch an OAuth access token.  Raises requests.RequestException or ValueError."""
        resp = self.session.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
        if not token:
            raise ValueError("token response carried no access_token")
        return token

    def verify(self, headers: Mapping[str, str], body: bytes) -> bool:
        """Return True only when PayPal reports verification_status SUCCESS."""
        if not self.enabled:
            return False
        try:
            token = self.get_access_token()
            resp = self.session.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                data=build_verification_body(headers, self.webhook_id, body),
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            status = resp.json().get("verification_status")
        except (requests.RequestException, ValueError, UnicodeDecodeError) as exc:
            log.warning("PayPal signature verification failed: %s", exc)
            return False

        if status != "SUCCESS":
            log.warning("PayPal signature verification status: %s", status)
            return False
        return True
