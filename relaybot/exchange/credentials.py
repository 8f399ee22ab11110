from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol

# Header names that carry secrets or values derived from them
_SECRET_HEADERS = {
    "access-key",
    "access-sign",
    "access-passphrase",
    "x-bapi-api-key",
    "x-bapi-sign",
}


@dataclass(frozen=True)
class ExchangeCredentials:
    """Decrypted API credentials. repr never shows the secret parts."""

    api_key: str
    api_secret: str = field(repr=False)
    passphrase: str = field(default="", repr=False)

    @property
    def masked_key(self) -> str:
        return mask(self.api_key)

    def __bool__(self) -> bool:
        return bool(self.api_key and self.api_secret)


class CredentialStore(Protocol):
    def get_credentials(
        self, user_id: int, strategy_id: int
    ) -> Optional[ExchangeCredentials]: ...


def mask(value: str, keep: int = 4) -> str:
    if not value:
        return ""
    if len(value) <= keep:
        return "*" * len(value)
    return value[:keep] + "*" * 8


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy of request headers safe for the audit log."""
    out: Dict[str, str] = {}
    for k, v in headers.items():
        if k.lower() in _SECRET_HEADERS:
            out[k] = mask(str(v)) if k.lower().endswith("key") else "***"
        else:
            out[k] = v
    return out
