"""
Provider credential store.

Holds cloud-provider API credentials in memory, keyed by provider name.
Jobs snapshot credentials into their LabConfig at creation time and refresh
them from this store on retry and recreate.
"""

import logging
import os
import threading
from dataclasses import asdict, dataclass, fields, replace
from typing import Optional

from easylab.errors import ConfigurationMissingError, CredentialValidationError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "ovh"

# Environment variable -> OVHCredentials field
OVH_ENV_VARS = {
    "OVH_APPLICATION_KEY": "application_key",
    "OVH_APPLICATION_SECRET": "application_secret",
    "OVH_CONSUMER_KEY": "consumer_key",
    "OVH_SERVICE_NAME": "service_name",
    "OVH_ENDPOINT": "endpoint",
}


@dataclass(frozen=True)
class OVHCredentials:
    """OVH API credentials."""
    application_key: str = ""
    application_secret: str = ""
    consumer_key: str = ""
    service_name: str = ""
    endpoint: str = ""

    provider = DEFAULT_PROVIDER

    def missing_fields(self) -> list[str]:
        return [f.name for f in fields(self) if not getattr(self, f.name)]

    def validate(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise CredentialValidationError(
                f"all OVH credentials are required (missing: {', '.join(missing)})"
            )

    def to_env(self) -> dict[str, str]:
        """Environment variables understood by the OVH provider."""
        return {env: getattr(self, attr) for env, attr in OVH_ENV_VARS.items()}

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> Optional["OVHCredentials"]:
        """Read credentials from OVH_* variables; None unless all are set."""
        environ = os.environ if environ is None else environ
        values = {attr: environ.get(env, "") for env, attr in OVH_ENV_VARS.items()}
        if not all(values.values()):
            return None
        return cls(**values)


class CredentialStore:
    """Thread-safe in-memory credential store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._credentials: dict[str, OVHCredentials] = {}

    @classmethod
    def from_env(cls) -> "CredentialStore":
        """Create a store preloaded from OVH_* environment variables when complete."""
        store = cls()
        creds = OVHCredentials.from_env()
        if creds is not None:
            store.set(creds)
            logger.info("OVH credentials loaded from environment variables")
        return store

    def set(self, creds: OVHCredentials) -> None:
        """Store credentials after validating that every field is set."""
        if not isinstance(creds, OVHCredentials):
            raise CredentialValidationError("unsupported credentials type")
        creds.validate()
        with self._lock:
            self._credentials[creds.provider] = creds

    def get(self, provider: str = DEFAULT_PROVIDER) -> OVHCredentials:
        """Return a copy of the provider's credentials."""
        provider = provider or DEFAULT_PROVIDER
        with self._lock:
            creds = self._credentials.get(provider)
        if creds is None:
            raise ConfigurationMissingError(f"{provider} credentials not configured")
        return replace(creds)

    def has(self, provider: str = DEFAULT_PROVIDER) -> bool:
        with self._lock:
            return (provider or DEFAULT_PROVIDER) in self._credentials

    def clear(self, provider: str = DEFAULT_PROVIDER) -> None:
        with self._lock:
            self._credentials.pop(provider or DEFAULT_PROVIDER, None)
