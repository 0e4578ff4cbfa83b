"""
smartauth Configuration

Runtime settings come from environment variables; protocol constants that
are part of the wire format live here too so every module agrees on them.

SECURITY NOTICE:
- Never put private keys in environment variables consumed here
- The entry point address and chain id bind every signature; a mismatch
  between bundler and wallet tooling makes all signatures invalid
"""

from __future__ import annotations

import logging
import os

from smartauth.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _get_int_env(env_var: str, default: int, minimum: int = 0) -> int:
    """Read an integer setting, falling back to ``default`` when unset."""
    value = os.getenv(env_var, "").strip()
    if not value:
        return default
    try:
        parsed = int(value, 0)
    except ValueError as exc:
        raise ConfigurationError(
            f"{env_var} must be an integer, got {value!r}",
            details={"env_var": env_var},
        ) from exc
    if parsed < minimum:
        raise ConfigurationError(
            f"{env_var} must be >= {minimum}, got {parsed}",
            details={"env_var": env_var},
        )
    return parsed


def _get_address_env(env_var: str, default: str) -> str:
    """Read a 20-byte hex address setting."""
    value = os.getenv(env_var, "").strip() or default
    raw = value[2:] if value.lower().startswith("0x") else value
    if len(raw) != 40:
        raise ConfigurationError(
            f"{env_var} must be a 20-byte hex address, got {value!r}",
            details={"env_var": env_var},
        )
    try:
        bytes.fromhex(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{env_var} is not valid hex: {value!r}",
            details={"env_var": env_var},
        ) from exc
    return "0x" + raw.lower()


# ==================== Protocol constants ====================

SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

ERC1271_MAGIC_VALUE = 0x1626BA7E
ERC1271_INVALID = 0xFFFFFFFF

UINT48_MAX = (1 << 48) - 1
UINT64_MAX = (1 << 64) - 1
UINT192_MAX = (1 << 192) - 1

# Guardians sign keccak(CONTROL_MESSAGE ‖ account) to become guardians of one account
RECOVERY_CONTROL_MESSAGE = "ACCOUNT RECOVERY GUARDIAN SECURE MESSAGE"

# Canonical ERC-4337 v0.6 entry point address, used as the default dispatcher
DEFAULT_ENTRY_POINT = "0x5ff137d4b0fdcd49dca30c7cf57e578a026d2789"

# ==================== Runtime settings ====================

CHAIN_ID = _get_int_env("SMARTAUTH_CHAIN_ID", 1337, minimum=1)
ENTRY_POINT_ADDRESS = _get_address_env("SMARTAUTH_ENTRY_POINT", DEFAULT_ENTRY_POINT)
LOG_LEVEL = os.getenv("SMARTAUTH_LOG_LEVEL", "INFO").upper()
ENVIRONMENT = os.getenv("SMARTAUTH_ENVIRONMENT", "development")
LOG_FILE = os.getenv("SMARTAUTH_LOG_FILE", "").strip() or None

RPC_HOST = os.getenv("SMARTAUTH_RPC_HOST", "127.0.0.1")
RPC_PORT = _get_int_env("SMARTAUTH_RPC_PORT", 3000, minimum=1)

MEMPOOL_MAX_OPS = _get_int_env("SMARTAUTH_MEMPOOL_MAX_OPS", 4096, minimum=1)
# Ops whose validity window closes sooner than this many seconds are refused
MEMPOOL_MIN_VALIDITY_SECONDS = _get_int_env("SMARTAUTH_MEMPOOL_MIN_VALIDITY_SECONDS", 30)

if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
    logger.warning(
        "Unknown log level %s, falling back to INFO",
        LOG_LEVEL,
        extra={"event": "config.log_level_invalid", "value": LOG_LEVEL},
    )
    LOG_LEVEL = "INFO"
