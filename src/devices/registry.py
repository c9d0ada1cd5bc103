"""Device registry: resolves a device token to an active mobile client.

Tokens are issued once at registration. Only their SHA-256 hash is stored.
"""

from __future__ import annotations

import hashlib
import logging
import secrets

from src.database.models import MobileClient
from src.database.repository import Repository

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when a token does not resolve to a known, active client."""


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class DeviceRegistry:
    def __init__(self, repo: Repository):
        self.repo = repo

    def authenticate(self, token: str | None) -> MobileClient:
        """Return the active client owning this token.

        Raises:
            AuthenticationError: If the token is missing, unknown, or
                belongs to a deactivated client.
        """
        if not token:
            raise AuthenticationError("Missing device token")
        client = self.repo.get_client_by_token_hash(hash_token(token))
        if client is None:
            raise AuthenticationError("Unknown device token")
        if not client.is_active:
            logger.warning("Rejected upload from inactive device %s", client.device_id)
            raise AuthenticationError("Device is inactive")
        return client

    def register(
        self, device_id: str, device_name: str | None = None
    ) -> tuple[MobileClient, str]:
        """Register a device, or re-activate it with a fresh token.

        Returns (client, token). The plaintext token is only available here.
        """
        if not device_id:
            raise ValueError("device_id is required")
        token = secrets.token_urlsafe(32)
        existing = self.repo.get_client_by_device_id(device_id)
        if existing is not None:
            self.repo.update_client_credentials(
                existing.id, hash_token(token), device_name,
            )
            logger.info("Re-registered device %s", device_id)
            return self.repo.get_client(existing.id), token

        client = MobileClient(
            device_id=device_id,
            token_hash=hash_token(token),
            device_name=device_name,
        )
        self.repo.insert_client(client)
        logger.info("Registered device %s as client %s", device_id, client.id)
        return client, token

    def deactivate(self, device_id: str) -> bool:
        return self.repo.set_client_active(device_id, False)

    def touch(self, client_id: str) -> None:
        self.repo.touch_client(client_id)
