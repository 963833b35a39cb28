"""
Credential vault for provider secrets.

Secrets are Fernet-encrypted before they reach the database and are only
decrypted inside :meth:`CredentialVault.scoped`, for the duration of a single
driver call. Plaintext is never persisted, cached or logged.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr

from provisioner.config import Settings
from provisioner.core.errors import ConfigurationError, CredentialError
from provisioner.db.repositories import CredentialRepository, new_id
from provisioner.domain.models import Credential, CredentialScope

logger = structlog.get_logger()


def build_cipher(settings: Settings) -> Fernet:
    """Create the Fernet cipher from ``PROVISIONER_VAULT_KEY``."""
    if not settings.vault_key:
        raise ConfigurationError("Credential vault key is not configured")
    try:
        return Fernet(settings.vault_key.encode())
    except (ValueError, TypeError) as exc:
        raise ConfigurationError("Credential vault key is not a valid Fernet key") from exc


class CredentialVault:
    def __init__(self, repository: CredentialRepository, cipher: Fernet) -> None:
        self._repository = repository
        self._cipher = cipher

    async def store(
        self,
        scope: CredentialScope,
        driver: str,
        secret: str | SecretStr,
        *,
        name: str | None = None,
        user_id: str | None = None,
        created_by: str | None = None,
    ) -> str:
        """Encrypt and persist a secret, returning the credential id."""
        if scope is CredentialScope.user and not user_id:
            raise ConfigurationError("Per-user credentials require a user_id", {"driver": driver})
        plaintext = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        credential = Credential(
            id=new_id(),
            name=name or f"{driver}-{scope.value}",
            driver=driver,
            scope=scope,
            user_id=user_id if scope is CredentialScope.user else None,
            created_by=created_by,
            encrypted_payload=self._cipher.encrypt(plaintext.encode()).decode(),
        )
        await self._repository.add(credential)
        logger.info(
            "credential_stored",
            credential_id=credential.id,
            driver=driver,
            scope=scope.value,
        )
        return credential.id

    async def reveal(self, credential_id: str) -> SecretStr:
        credential = await self._repository.get(credential_id)
        if credential is None:
            raise CredentialError("Credential not found", {"credential_id": credential_id})
        return self._decrypt(credential)

    async def resolve(self, driver: str, user_id: str | None) -> Credential | None:
        """Per-user credentials take precedence over system-wide ones."""
        if user_id:
            credential = await self._repository.find(driver, CredentialScope.user, user_id)
            if credential is not None:
                return credential
        return await self._repository.find(driver, CredentialScope.system)

    @asynccontextmanager
    async def scoped(
        self, driver: str, user_id: str | None, *, required: bool = True
    ) -> AsyncIterator[SecretStr | None]:
        """Yield the decrypted secret for exactly one driver call."""
        credential = await self.resolve(driver, user_id)
        if credential is None:
            if required:
                raise CredentialError("No credential available for driver", {"driver": driver})
            yield None
            return
        secret: SecretStr | None = self._decrypt(credential)
        try:
            yield secret
        finally:
            secret = None

    def _decrypt(self, credential: Credential) -> SecretStr:
        try:
            return SecretStr(self._cipher.decrypt(credential.encrypted_payload.encode()).decode())
        except InvalidToken as exc:
            logger.error(
                "credential_decrypt_failed",
                credential_id=credential.id,
                driver=credential.driver,
            )
            raise CredentialError(
                "Credential could not be decrypted",
                {"credential_id": credential.id, "driver": credential.driver},
            ) from exc
