"""
PIN Authentication.

A single static shared secret guards every connection. The PIN itself is
never stored; config.json holds its SHA-256 hex digest and its length (written
by external tooling). Only the length is ever revealed to clients.

Note: verification is a direct digest comparison with no rate limiting.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles

logger = logging.getLogger(__name__)

__all__ = ["PinConfig", "PinProvider", "hash_pin", "verify_pin", "load_pin_config", "file_pin_provider"]


@dataclass(frozen=True)
class PinConfig:
    hash: str
    length: int


PinProvider = Callable[[], Awaitable[Optional[PinConfig]]]


def hash_pin(pin: str) -> str:
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()


def verify_pin(pin: str, pin_hash: str) -> bool:
    return hash_pin(pin) == pin_hash


async def load_pin_config(config_file: Path) -> Optional[PinConfig]:
    """
    Read the PIN settings from config.json.

    Returns:
        PinConfig if both pinHash and pinLength are set, else None
    """
    try:
        async with aiofiles.open(config_file, "r", encoding="utf-8") as fh:
            data = json.loads(await fh.read())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config {config_file}: {e}")
        return None

    if not isinstance(data, dict):
        return None

    pin_hash = data.get("pinHash")
    pin_length = data.get("pinLength")
    if not (pin_hash and pin_length):
        return None
    try:
        return PinConfig(hash=str(pin_hash), length=int(pin_length))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid pinLength in {config_file}: {pin_length!r}")
        return None


def file_pin_provider(config_file: Path) -> PinProvider:
    """Provider that re-reads config.json on every call, so PIN changes apply live."""
    async def provider() -> Optional[PinConfig]:
        return await load_pin_config(config_file)
    return provider
