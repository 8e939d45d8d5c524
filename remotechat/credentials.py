"""Credential pool with a shared rotation cursor."""

import logging
import threading
from typing import Iterable, Optional

from .errors import ConfigurationError
from .models import Credential

logger = logging.getLogger(__name__)


class CredentialPool:
    """Ordered, cyclic set of interchangeable credentials.

    Construction never fails on an empty pool; the first call to
    current()/advance() does, so the error surfaces at first use.
    """

    def __init__(self, secrets: Iterable[str]):
        seen = set()
        creds = []
        for secret in secrets:
            secret = (secret or "").strip()
            if secret and secret not in seen:
                seen.add(secret)
                creds.append(Credential(secret))
        self._credentials: tuple[Credential, ...] = tuple(creds)
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> tuple[Credential, ...]:
        return self._credentials

    def _require(self) -> None:
        if not self._credentials:
            raise ConfigurationError("No credentials configured", code="NO_CREDENTIALS")

    def current(self) -> Credential:
        self._require()
        with self._lock:
            return self._credentials[self._index]

    def advance(self, failed: Optional[Credential] = None) -> Credential:
        """Rotate to the next credential, wrapping to index 0.

        When `failed` is given, rotation only happens if the cursor still
        points at it; a concurrent caller may already have moved past it.
        """
        self._require()
        with self._lock:
            if failed is None or self._credentials[self._index] == failed:
                self._index = (self._index + 1) % len(self._credentials)
                logger.info(
                    f"Credential rotated to {self._index + 1}/{len(self._credentials)}"
                )
            return self._credentials[self._index]
