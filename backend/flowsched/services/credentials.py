"""Credential resolution.

Provider API keys reach the scheduler in two ways: inline in a node's data
(``apiKey``) or as an administrator fallback per provider.  Inline keys are
stripped from the business payload when tasks are created and kept only as
a Fernet ciphertext plus their sha256 hash.  ``CredentialResolver.resolve``
is the single place a raw key is materialised, right before the outbound
call; everything else (admission scopes, queue items, logs) sees the hash.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from flowsched.db.models import NodeTask
from flowsched.registry import Provider, SchedulerConfig

logger = logging.getLogger("flowsched.credentials")

INLINE_KEY_FIELDS = ("apiKey", "api_key")


def hash_credential(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ResolvedCredential:
    """A credential ready for the outbound call.  Never printable."""

    __slots__ = ("_value", "hash", "source")

    def __init__(self, value: str, source: str):
        self._value = value
        self.hash = hash_credential(value)
        self.source = source  # "inline" | "fallback"

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._value}"}

    def __repr__(self) -> str:
        return f"ResolvedCredential(source={self.source!r}, hash={self.hash[:12]}...)"

    __str__ = __repr__


class CredentialResolver:
    def __init__(self, config: SchedulerConfig):
        self.config = config
        digest = hashlib.sha256(config.credential_encryption_key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def seal(self, raw: str) -> tuple[str, str]:
        """Encrypt *raw*; return ``(ciphertext, sha256)``."""
        return self._fernet.encrypt(raw.encode("utf-8")).decode("ascii"), hash_credential(raw)

    def extract_inline(self, data: dict[str, Any]) -> tuple[dict[str, Any], str | None, str | None]:
        """Split an inline key out of node *data*.

        Returns ``(clean_data, ciphertext, hash)``; the last two are None when
        the node carries no key.
        """
        clean = {k: v for k, v in data.items() if k not in INLINE_KEY_FIELDS}
        raw = next((data[f] for f in INLINE_KEY_FIELDS if isinstance(data.get(f), str) and data[f]), None)
        if raw is None:
            return clean, None, None
        ciphertext, digest = self.seal(raw)
        return clean, ciphertext, digest

    def resolve(self, provider: Provider, task: NodeTask | None = None) -> ResolvedCredential | None:
        """Inline key from the task if present, else the fallback for *provider*."""
        if task is not None and task.credential_ciphertext:
            try:
                raw = self._fernet.decrypt(task.credential_ciphertext.encode("ascii")).decode("utf-8")
            except InvalidToken:
                logger.error(
                    "Stored credential for task %s cannot be decrypted (key rotated?)", task.task_id
                )
            else:
                return ResolvedCredential(raw, "inline")

        fallback = self.config.fallback_api_keys.get(provider)
        if fallback:
            return ResolvedCredential(fallback, "fallback")
        return None
