"""
Brazilian phone normalization and stateless verification challenges.

A challenge is ``base64(json_payload) + "." + base64(hmac_sha256(secret, payload_b64))``.
The payload carries the SHA-256 of the one-time code, so the server keeps no
verification state between sending the code and checking it.
"""

import base64
import binascii
import hashlib
import hmac
import json
import re
import secrets
import string
from dataclasses import asdict, dataclass
from typing import Optional

CODE_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Reduce a Brazilian phone to ``55 + DDD + 9 + 8 digits``.

    Accepts the number with or without country code and with or without the
    mobile ``9`` after the area code. Returns None when it cannot be read as
    a Brazilian number.
    """
    digits = _NON_DIGITS.sub("", raw or "")

    if digits.startswith("55") and len(digits) >= 12:
        local = digits[2:]
    elif len(digits) <= 11:
        local = digits
    else:
        return None

    if len(local) == 11:
        return "55" + local
    if len(local) == 10:
        return "55" + local[:2] + "9" + local[2:]
    return None


def generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def sha256_hex(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ChallengePayload:
    user_id: str
    code_hash: str
    expires_at: float
    phone: str


def _sign(payload_b64: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()


def create_challenge(payload: ChallengePayload, secret: str) -> str:
    payload_b64 = base64.b64encode(json.dumps(asdict(payload)).encode("utf-8")).decode("ascii")
    signature = base64.b64encode(_sign(payload_b64, secret)).decode("ascii")
    return f"{payload_b64}.{signature}"


def verify_challenge(challenge: str, secret: str) -> Optional[ChallengePayload]:
    """Return the payload of a correctly signed challenge, or None. Expiry is not checked here."""
    parts = challenge.split(".")
    if len(parts) != 2:
        return None
    payload_b64, signature_b64 = parts
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
            return None
        data = json.loads(base64.b64decode(payload_b64, validate=True))
        return ChallengePayload(
            user_id=str(data["user_id"]),
            code_hash=str(data["code_hash"]),
            expires_at=float(data["expires_at"]),
            phone=str(data["phone"]),
        )
    except (binascii.Error, UnicodeEncodeError, ValueError, KeyError, TypeError):
        return None
