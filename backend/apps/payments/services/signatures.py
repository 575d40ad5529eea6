"""
HMAC-SHA256 signatures used by the payment gateway.

Payment confirmations are signed over "<order_id>|<payment_id>" with the
key secret; webhook bodies are signed over the raw request body with the
webhook secret. Both are hex digests compared in constant time.
"""
import hashlib
import hmac
from typing import Union

from django.conf import settings


def _hex_hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def payment_signature(order_id: str, payment_id: str, secret: str = None) -> str:
    secret = secret if secret is not None else settings.PAYMENT_GATEWAY_KEY_SECRET
    return _hex_hmac(secret, f"{order_id}|{payment_id}".encode('utf-8'))


def webhook_signature(raw_body: Union[bytes, str], secret: str = None) -> str:
    secret = secret if secret is not None else settings.PAYMENT_GATEWAY_WEBHOOK_SECRET
    if isinstance(raw_body, str):
        raw_body = raw_body.encode('utf-8')
    return _hex_hmac(secret, raw_body)


def _matches(expected: str, signature) -> bool:
    # Submitted values may carry any characters; compare as bytes
    return hmac.compare_digest(expected.encode('ascii'),
                               str(signature).encode('utf-8'))


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    if not (order_id and payment_id and signature):
        return False
    return _matches(payment_signature(order_id, payment_id), signature)


def verify_webhook_signature(raw_body: Union[bytes, str], signature: str) -> bool:
    if not signature:
        return False
    return _matches(webhook_signature(raw_body), signature)
