from __future__ import annotations

import re
import secrets
import string
from datetime import datetime

_ALPHABET = string.ascii_uppercase + string.digits

CONTRACT_REFERENCE_RE = re.compile(r"^[A-Z0-9]+-\d{6}-[A-Z0-9]{6}$")
PAYMENT_REFERENCE_RE = re.compile(r"^PAY-\d+-[A-Z0-9]{8}$")


def _random_token(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_contract_reference(prefix: str, now: datetime) -> str:
    """PREFIX-YYYYMM-XXXXXX"""
    return f"{prefix.upper()}-{now:%Y%m}-{_random_token(6)}"


def generate_payment_reference(now: datetime) -> str:
    """PAY-<unix seconds>-XXXXXXXX"""
    return f"PAY-{int(now.timestamp())}-{_random_token(8)}"
