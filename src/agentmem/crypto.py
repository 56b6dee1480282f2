"""
agentmem crypto -- encryption at rest for memory content.

When enabled, the ``content`` column of every stored memory is encrypted with
Fernet (AES-128-CBC + HMAC-SHA256). Keywords, importance and the other ranking
columns stay in clear text so lexical recall and maintenance keep working
without decrypting anything.

Enabled by default. Disable: AGENTMEM_ENCRYPT=0

The key lives at $AGENTMEM_HOME/.key and is created on first use with 0600
permissions. Losing it means losing access to encrypted content.
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from agentmem.config import agentmem_home

logger = logging.getLogger("agentmem.crypto")

_PREFIX = "ENC:"

_fernet_instance = None
_checked = False


def _key_path() -> Path:
    return agentmem_home() / ".key"


def is_enabled() -> bool:
    """Encryption is on unless AGENTMEM_ENCRYPT is 0/false/no."""
    val = os.environ.get("AGENTMEM_ENCRYPT", "").strip().lower()
    return val not in ("0", "false", "no")


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance, _checked
    _fernet_instance = None
    _checked = False


def _get_or_create_key() -> bytes:
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A bare 32-byte secret is turned into a Fernet key
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    kp.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    # O_EXCL: no TOCTOU window between create and chmod
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet():
    """Lazy-load the Fernet instance; None when it cannot be initialized."""
    global _fernet_instance, _checked
    if _fernet_instance is not None:
        return _fernet_instance
    if _checked:
        return None
    _checked = True

    from cryptography.fernet import Fernet

    try:
        _fernet_instance = Fernet(_get_or_create_key())
        return _fernet_instance
    except (OSError, ValueError) as e:
        logger.error("Failed to initialize encryption: %s", e)
        return None


def encrypt(plaintext: str) -> str:
    """Encrypt a string for storage. Returns plaintext unchanged when disabled."""
    if not is_enabled():
        return plaintext

    f = _get_fernet()
    if f is None:
        return plaintext

    token = f.encrypt(plaintext.encode("utf-8"))
    return _PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt stored content. Values without the ENC: prefix pass through.

    Raises ValueError when an encrypted value cannot be decrypted (wrong or
    missing key, corrupted data).
    """
    if not data.startswith(_PREFIX):
        return data

    f = _get_fernet()
    if f is None:
        raise ValueError("Cannot decrypt memory content: encryption key unavailable")

    from cryptography.fernet import InvalidToken

    try:
        return f.decrypt(data[len(_PREFIX):].encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("Decryption failed: invalid token or wrong key") from e


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection, creating or fixing the file with 0600 permissions."""
    path_obj = Path(db_path)

    if not path_obj.exists():
        path_obj.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(str(path_obj), os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(str(path_obj), 0o600)

    return sqlite3.connect(str(path_obj), **kwargs)
