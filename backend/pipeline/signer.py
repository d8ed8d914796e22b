"""
Gateway Request Signing
=======================
Deterministic signature used for outbound payment requests and inbound
gateway notifications.

Algorithm (fixed by the gateway contract, reproduce bit-for-bit):

1. add the shared secret under the reserved key ``password``
2. drop ``signature`` and ``metadata``
3. sort the remaining keys
4. concatenate the values as plain strings (no keys, no separators)
5. SHA-256 over the UTF-8 bytes, lowercase hex

The secret is concatenated into the digest input rather than used as an HMAC
key. That is the gateway's scheme; do not swap it for HMAC.
"""

import hashlib
import hmac
import math
from typing import Any, Mapping, Optional

SECRET_FIELD = "password"
EXCLUDED_FIELDS = frozenset({"signature", "metadata"})


def coerce_value(value: Any) -> str:
    """Render a payload value the way the gateway stringifies it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return js_number(value)
    return str(value)


def js_number(value: float) -> str:
    """
    Format a float like JavaScript's ``String(number)``.

    Python's repr() yields the same shortest round-trip digits but switches
    to exponent notation at different thresholds (``1e-07`` vs ``1e-7``).
    """
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    mantissa, _, exp = repr(abs(value)).partition("e")
    int_part, _, frac_part = mantissa.partition(".")
    all_digits = int_part + frac_part
    stripped = all_digits.lstrip("0")
    # value == 0.DIGITS * 10**point
    point = len(int_part) + int(exp or 0) - (len(all_digits) - len(stripped))
    digits = stripped.rstrip("0")
    k = len(digits)

    if k <= point <= 21:
        return sign + digits + "0" * (point - k)
    if 0 < point <= 21:
        return sign + digits[:point] + "." + digits[point:]
    if -6 < point <= 0:
        return sign + "0." + "0" * (-point) + digits

    e = point - 1
    exponent = ("+" if e >= 0 else "-") + str(abs(e))
    if k == 1:
        return sign + digits + "e" + exponent
    return sign + digits[0] + "." + digits[1:] + "e" + exponent


def canonical_string(payload: Mapping[str, Any], secret: Optional[str]) -> str:
    working = dict(payload)
    working[SECRET_FIELD] = secret or ""
    for key in EXCLUDED_FIELDS:
        working.pop(key, None)
    return "".join(coerce_value(working[key]) for key in sorted(working))


def sign(payload: Mapping[str, Any], secret: Optional[str]) -> str:
    digest = hashlib.sha256(canonical_string(payload, secret).encode("utf-8"))
    return digest.hexdigest()


def verify(payload: Mapping[str, Any], provided_signature: Any, secret: Optional[str]) -> bool:
    """Constant-time check of ``provided_signature`` against the payload."""
    if not isinstance(provided_signature, str) or not provided_signature:
        return False
    unsigned = {k: v for k, v in payload.items() if k != "signature"}
    expected = sign(unsigned, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided_signature.encode("utf-8"))
