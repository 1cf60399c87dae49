"""
Encryption key material: generation and strength validation.
"""

import base64
import hashlib
import json
import platform
import re
import secrets
import time
from typing import Optional

from ..logging import logger
from ...models import EncryptionKey

MIN_KEY_LENGTH = 32
REQUIRED_PATTERNS = [
    re.compile(r"[A-Z]"),         # uppercase
    re.compile(r"[a-z]"),         # lowercase
    re.compile(r"[0-9]"),         # digit
    re.compile(r"[^A-Za-z0-9]"),  # symbol
]
KEY_SEPARATOR = "."


def generate_device_component(os_name: Optional[str] = None, arch: Optional[str] = None) -> str:
    """
    Hash platform details, a timestamp and a random salt into a base64 string.

    The timestamp and salt make the value unique per installation even on
    identical machines.
    """
    unique_info = {
        "os": os_name or platform.system() or "unknown",
        "arch": arch or platform.machine() or "unknown",
        "timestamp": time.time_ns(),
        "random": secrets.token_urlsafe(16),
    }
    digest = hashlib.sha256(json.dumps(unique_info, sort_keys=True).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_random_component(num_bytes: int = 32) -> str:
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def validate_key_strength(key: str) -> bool:
    """
    Check minimum length and presence of uppercase, lowercase, digit and
    symbol characters.
    """
    if len(key) < MIN_KEY_LENGTH:
        logger.warning("Encryption key is too short", extra={
            "vault": {"length": len(key), "required": MIN_KEY_LENGTH}
        })
        return False

    missing = [pattern.pattern for pattern in REQUIRED_PATTERNS if not pattern.search(key)]
    if missing:
        logger.warning("Encryption key is missing required character classes", extra={
            "vault": {"missing_patterns": len(missing)}
        })
        return False

    return True


def compose_key(device_component: str, random_component: str, version: str) -> str:
    return str(EncryptionKey(device_component, random_component, version))


def parse_key_version(key: str) -> Optional[str]:
    """Return the trailing ``v<n>`` tag of a composed key, if it has one."""
    _, _, version = key.rpartition(KEY_SEPARATOR)
    if re.fullmatch(r"v\d+", version):
        return version
    return None


def next_version(version: Optional[str]) -> str:
    if not version:
        return "v1"
    return f"v{int(version[1:]) + 1}"
