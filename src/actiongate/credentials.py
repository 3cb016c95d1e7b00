"""
Credential cipher — AES-256-GCM encryption of credential values at rest.

Encrypted values are self-describing strings that can sit in any JSON
config in place of a plaintext secret::

    ${ACTIONGATE_ENCRYPTED:<iv>:<tag>:<ciphertext>}

Each component is standard base64. The IV is 16 fresh random bytes per
call, so encrypting the same value twice yields different strings.

:func:`decrypt` never raises. A malformed wrapper, the wrong key or a
single flipped bit all produce ``None``, which callers treat as "no
credential available".
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .policy import ProtectionPolicy
from .utils.safe_json import load_json_object

logger = logging.getLogger("actiongate.credentials")

ENCRYPTED_PREFIX = "${ACTIONGATE_ENCRYPTED:"
ENCRYPTED_SUFFIX = "}"

IV_LENGTH = 16
TAG_LENGTH = 16

# Vault references are resolved by an external backend, never here.
VAULT_REFERENCE_PREFIX = "op://"


def is_encrypted(value: object) -> bool:
    """Structural check for the encrypted sentinel. Does not decrypt."""
    return (
        isinstance(value, str)
        and value.startswith(ENCRYPTED_PREFIX)
        and value.endswith(ENCRYPTED_SUFFIX)
        and len(value) > len(ENCRYPTED_PREFIX) + len(ENCRYPTED_SUFFIX)
    )


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt *plaintext* with the protection *key*.

    Raises:
        ValueError: If *key* is not a valid AES-256 key.
    """
    if len(key) != 32:
        raise ValueError(f"AES-256 key must be 32 bytes, got {len(key)}")
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    payload = ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
    )
    return f"{ENCRYPTED_PREFIX}{payload}{ENCRYPTED_SUFFIX}"


def decrypt(value: str, key: bytes) -> Optional[str]:
    """Decrypt a sentinel-wrapped value, or return ``None``."""
    if not is_encrypted(value):
        return None
    payload = value[len(ENCRYPTED_PREFIX):-len(ENCRYPTED_SUFFIX)]
    parts = payload.split(":")
    if len(parts) != 3 or not all(parts[:2]):
        return None

    try:
        iv, tag, ciphertext = (
            base64.b64decode(part, validate=True) for part in parts
        )
    except (binascii.Error, ValueError):
        return None
    if len(tag) != TAG_LENGTH or not iv:
        return None

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError, TypeError, UnicodeDecodeError):
        return None


# =============================================================================
# CREDENTIAL RESOLUTION
# =============================================================================

@dataclass
class CredentialResolution:
    """Outcome of resolving one server's credential keys.

    Attributes:
        values: Credential key → usable plaintext value.
        from_env: Keys that were already present in the environment.
        undecryptable: Keys whose encrypted value could not be decrypted.
        unresolved: Keys with no value, or only an external vault reference.
    """
    values: dict[str, str] = field(default_factory=dict)
    from_env: list[str] = field(default_factory=list)
    undecryptable: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def load_vault_mappings(path: Union[str, Path]) -> dict[str, str]:
    """Load ``{"mappings": {KEY: value}}``; missing file means no mappings.

    Non-string values are dropped with a warning.

    Raises:
        ValueError: If the file exists but is not strict JSON.
    """
    p = Path(path)
    if not p.is_file():
        return {}
    data = load_json_object(p)
    raw = data.get("mappings", {})
    if not isinstance(raw, dict):
        raise ValueError(f"'mappings' in {p} must be an object")
    mappings: dict[str, str] = {}
    for name, value in raw.items():
        if isinstance(value, str) and value:
            mappings[name] = value
        else:
            logger.warning("Ignoring non-string vault mapping for %s", name)
    return mappings


def resolve_credential_value(value: str, key: Optional[bytes]) -> Optional[str]:
    """Turn a stored value into plaintext.

    Plaintext values pass through unchanged. Encrypted values need *key*;
    without it, or if decryption fails, the result is ``None``.
    """
    if not is_encrypted(value):
        return value
    if key is None:
        return None
    return decrypt(value, key)


def resolve_server_credentials(
    policy: ProtectionPolicy,
    mappings: Mapping[str, str],
    key: Optional[bytes],
    environ: Optional[Mapping[str, str]] = None,
) -> CredentialResolution:
    """Resolve every credential key *policy* declares.

    Values already present in *environ* win. Otherwise the mapping value is
    used, decrypting encrypted-at-rest values with *key*. Nothing here
    raises on a bad credential; failures are reported on the result.
    """
    env = os.environ if environ is None else environ
    result = CredentialResolution()

    for name in policy.credential_keys:
        if env.get(name):
            result.values[name] = env[name]
            result.from_env.append(name)
            continue

        stored = mappings.get(name)
        if not stored or stored.startswith(VAULT_REFERENCE_PREFIX):
            result.unresolved.append(name)
            continue

        plaintext = resolve_credential_value(stored, key)
        if plaintext is None:
            logger.warning(
                "Credential %s for server %s could not be decrypted",
                name, policy.server_id,
            )
            result.undecryptable.append(name)
            continue
        result.values[name] = plaintext

    return result
