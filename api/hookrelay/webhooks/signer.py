"""Webhook payload signer using HMAC."""

import hashlib
import hmac
import time

SIGNATURE_ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
}


class WebhookSigner:
    """Signs webhook payloads for verification."""

    @staticmethod
    def sign(
        payload: str,
        secret: str,
        timestamp: int | None = None,
        method: str = "sha256",
    ) -> tuple[str, int]:
        """
        Generate an HMAC signature for a webhook payload.

        Args:
            payload: The JSON payload string to sign
            secret: The shared secret key
            timestamp: Unix timestamp (defaults to current time)
            method: Digest name, ``sha256`` or ``sha1``

        Returns:
            Tuple of (signature, timestamp)
        """
        if method not in SIGNATURE_ALGORITHMS:
            raise ValueError(f"Unsupported signature method: {method}")

        if timestamp is None:
            timestamp = int(time.time())

        # Signature is computed over: timestamp + "." + payload
        message = f"{timestamp}.{payload}"
        signature = hmac.new(
            secret.encode("utf-8"),
            message.encode("utf-8"),
            SIGNATURE_ALGORITHMS[method],
        ).hexdigest()

        return f"{method}={signature}", timestamp

    @staticmethod
    def verify(
        payload: str,
        secret: str,
        timestamp: int,
        signature: str,
    ) -> bool:
        """
        Verify a webhook signature.

        The digest is taken from the signature prefix (``sha256=`` or ``sha1=``).

        Returns:
            True if signature is valid, False otherwise
        """
        method, sep, _ = signature.partition("=")
        if not sep or method not in SIGNATURE_ALGORITHMS:
            return False
        expected_signature, _ = WebhookSigner.sign(payload, secret, timestamp, method)
        return hmac.compare_digest(expected_signature, signature)

    @staticmethod
    def get_headers(
        payload: str,
        secret: str | None,
        event_type: str,
        delivery_id: str,
        endpoint_id: str,
        method: str = "sha256",
        signature_header: str = "X-Webhook-Signature",
        timestamp_header: str = "X-Webhook-Timestamp",
    ) -> dict[str, str]:
        """
        Generate the webhook HTTP headers, signed when a secret is set.

        Returns:
            Dictionary of HTTP headers
        """
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-ID": endpoint_id,
            "X-Webhook-Delivery": delivery_id,
        }
        if secret:
            signature, timestamp = WebhookSigner.sign(payload, secret, method=method)
            headers[signature_header] = signature
            headers[timestamp_header] = str(timestamp)

        return headers
