"""Shared utility functions."""

import base64
import binascii
import hashlib
import logging
import re
import sys
from pathlib import Path
from uuid import uuid4

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("relaymgr")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("boto3", logging.INFO, True),
        ("botocore", logging.WARNING, True),
        ("urllib3", logging.WARNING, True),
        ("httpx", logging.WARNING, True),
        ("httpcore", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def redact(secret: str | None, keep: int = 4) -> str:
    """Shorten a credential so it can be logged.

    :param secret: Token, key or password
    :param keep: Number of leading characters to keep
    :return: Prefix followed by '...', or '' for empty input
    """
    if not secret:
        return ""
    return f"{secret[:keep]}..."


def hex_encode(value: str) -> str:
    return binascii.hexlify(value.encode("utf-8")).decode("ascii")


def hex_decode(value: str) -> str:
    """Decode a hex string to text.

    :raises ValueError: If value is not valid hex
    """
    try:
        return binascii.unhexlify(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid hex value '{value[:16]}'") from e


def make_valid_name(name: str, max_length: int = 63) -> str:
    """Strip characters cloud providers reject in resource names.

    :param name: Requested name
    :param max_length: Provider limit on name length
    :return: Name with only letters, digits and '-'
    """
    return re.sub(r"[^A-Za-z0-9-]", "", name)[:max_length]


def make_gcp_name(name: str) -> str:
    """GCE names must be lowercase, start with a letter and not end with '-'."""
    cleaned = make_valid_name(re.sub(r"\s+", "-", name.strip().lower()))
    if not cleaned or not cleaned[0].isalpha():
        cleaned = f"relay-{cleaned}"
    return cleaned[:63].rstrip("-")


def unique_resource_name(name: str) -> str:
    """Provider-safe name with a random suffix, e.g. 'my-relay-3f9a1c'."""
    base = make_gcp_name(name)[:50].rstrip("-")
    return f"{base}-{uuid4().hex[:6]}"


def get_local_ssh_key() -> tuple[str, str] | None:
    """:return: (key_content, md5_fingerprint), or None if no public key exists"""
    ssh_dir = Path.home() / ".ssh"
    key_names = ["id_ed25519.pub", "id_rsa.pub", "id_ecdsa.pub"]

    for name in key_names:
        key_path = ssh_dir / name
        if key_path.exists():
            content = key_path.read_text().strip()
            key_data = content.split()[1]
            decoded = base64.b64decode(key_data)
            fingerprint = hashlib.md5(decoded).hexdigest()
            fingerprint = ":".join(fingerprint[i : i + 2] for i in range(0, 32, 2))
            log(f"Using SSH key: '{key_path}'")
            return content, fingerprint

    warn(f"No SSH key found in ~/.ssh/ (tried: {', '.join(key_names)})")
    return None
