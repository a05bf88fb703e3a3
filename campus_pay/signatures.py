"""
Webhook signature checks. Always computed over the raw request bytes, since a
parsed and re-serialised body is not guaranteed to be byte-identical.
"""
import hashlib
import hmac
from typing import Optional, Union


def compute_signature(raw_body: bytes, shared_secret: Union[str, bytes], digestmod=hashlib.sha512) -> str:
    if isinstance(shared_secret, str):
        shared_secret = shared_secret.encode("utf-8")
    return hmac.new(shared_secret, raw_body, digestmod).hexdigest()


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    shared_secret: Union[str, bytes, None],
    digestmod=hashlib.sha512,
) -> bool:
    """Return True when signature_header is the hex HMAC of raw_body under shared_secret.

    A missing header or secret is a plain mismatch; the result never says which part failed.
    """
    if not signature_header or not shared_secret:
        return False
    expected = compute_signature(raw_body, shared_secret, digestmod)
    return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().lower().encode("utf-8"))
