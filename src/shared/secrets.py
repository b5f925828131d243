"""
Credential lookup for the archiver.

Bot tokens are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) under the
``discord-archiver`` service and are read at run time.  Development
environments may set ``DISCORD_ARCHIVER_<KEY_NAME>`` instead.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("shared.secrets")

_SERVICE = "discord-archiver"
_ENV_PREFIX = "DISCORD_ARCHIVER_"
_LOOKUP_TIMEOUT_SECONDS = 10


def _env_key(key_name: str) -> str:
    return f"{_ENV_PREFIX}{key_name.upper().replace('-', '_')}"


def _keychain_lookup(key_name: str, service: str) -> str | None:
    """``secret-tool lookup service <service> key <key_name>``, or ``None``."""
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=_LOOKUP_TIMEOUT_SECONDS,
        )
    except FileNotFoundError:
        logger.warning("secret-tool not installed; trying environment for '%s'", key_name)
        return None
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out looking up '%s'", key_name)
        return None
    except OSError:
        logger.warning("secret-tool failed looking up '%s'", key_name, exc_info=True)
        return None
    return result.stdout.strip() or None


def find_secret(key_name: str, service: str = _SERVICE) -> str | None:
    """Return a credential from the keychain, else the environment.

    Args:
        key_name: The key identifier (e.g. ``"bot_token"``).
        service: The service label in the keychain.

    Returns:
        The secret, or ``None`` when neither source has it.  Callers
        decide whether that is fatal.
    """
    secret = _keychain_lookup(key_name, service)
    if secret:
        return secret

    env_key = _env_key(key_name)
    secret = os.environ.get(env_key)
    if secret:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return secret

    logger.info("Secret '%s' not in keychain (service=%s) or %s", key_name, service, env_key)
    return None
