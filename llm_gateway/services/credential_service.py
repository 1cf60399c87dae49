from typing import Dict, List, Optional

from pydantic import ValidationError

from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.exceptions import DecryptionError
from ..core.logging import logger
from ..core.storage import KeyValueStore
from ..core.vault import CredentialVault
from ..models import CredentialCheck, CredentialSummary, EncryptedCredential, ProviderConfig

CREDENTIAL_KEY_PREFIX = "credentials:"
ACTIVE_PROVIDER_KEY = "active_provider"


class CredentialService:
    """
    Stores provider credentials encrypted at rest.

    Api key and base URL are encrypted with the vault; the model name is kept
    in clear next to them. Decrypted values only ever leave this class as a
    transient ProviderConfig.
    """

    def __init__(self, store: KeyValueStore, vault: CredentialVault):
        self.store = store
        self.vault = vault

    @staticmethod
    def _storage_key(provider_id: str) -> str:
        return f"{CREDENTIAL_KEY_PREFIX}{provider_id}"

    def active_provider_id(self) -> Optional[str]:
        return self.store.get(ACTIVE_PROVIDER_KEY)

    def set_active_provider(self, provider_id: str) -> None:
        self.store.set(ACTIVE_PROVIDER_KEY, provider_id)
        logger.info(f"Active provider set to '{provider_id}'", provider_id=provider_id)

    def provider_ids(self) -> List[str]:
        return [key[len(CREDENTIAL_KEY_PREFIX):] for key in self.store.keys(CREDENTIAL_KEY_PREFIX)]

    async def save(
        self,
        provider_id: str,
        api_key: str,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        activate: bool = True,
    ) -> EncryptedCredential:
        if not provider_id or not api_key:
            raise ErrorHandler.handle_invalid_config(
                "provider_id and api_key are required",
                ErrorContext(provider_id=provider_id or None)
            )

        record = EncryptedCredential(
            provider_id=provider_id,
            encrypted_api_key=await self.vault.encrypt(api_key),
            encrypted_base_url=await self.vault.encrypt(base_url) if base_url else None,
            key_version=self.vault.key_version,
            model=model or None,
        )
        self.store.set(self._storage_key(provider_id), record.model_dump())
        if activate:
            self.set_active_provider(provider_id)

        logger.info(f"Stored credentials for provider '{provider_id}'", extra={
            "provider_id": provider_id,
            "key_version": record.key_version,
            "base_url_set": base_url is not None,
            "model_name": model
        })
        return record

    def _read_record(self, provider_id: str) -> Optional[EncryptedCredential]:
        raw = self.store.get(self._storage_key(provider_id))
        if raw is None:
            return None
        try:
            return EncryptedCredential.model_validate(raw)
        except ValidationError as e:
            raise ErrorHandler.handle_decryption_error(
                "stored credential record is malformed",
                ErrorContext(provider_id=provider_id),
                e
            ) from e

    async def _decrypt_record(self, record: EncryptedCredential) -> Dict[str, Optional[str]]:
        context = ErrorContext(provider_id=record.provider_id)
        if record.key_version != self.vault.key_version:
            raise ErrorHandler.handle_decryption_error(
                f"credentials were encrypted with key {record.key_version}, "
                f"current key is {self.vault.key_version}",
                context
            )
        return {
            "api_key": await self.vault.decrypt(record.encrypted_api_key),
            "base_url": await self.vault.decrypt(record.encrypted_base_url) if record.encrypted_base_url else None,
        }

    async def load(self, provider_id: Optional[str] = None) -> Optional[ProviderConfig]:
        """
        Decrypt stored credentials; None when nothing is stored.

        The returned config may have an empty ``base_url`` or ``model``;
        defaults are filled in by the gateway, which knows the adapter.
        """
        provider_id = provider_id or self.active_provider_id()
        if not provider_id:
            return None

        record = self._read_record(provider_id)
        if record is None:
            return None

        secrets = await self._decrypt_record(record)
        return ProviderConfig(
            provider_id=provider_id,
            api_key=secrets["api_key"] or "",
            base_url=secrets["base_url"] or "",
            model=record.model or "",
        )

    async def check(self, provider_id: Optional[str] = None) -> CredentialCheck:
        provider_id = provider_id or self.active_provider_id()
        if not provider_id:
            return CredentialCheck(is_configured=False)

        try:
            config = await self.load(provider_id)
        except DecryptionError:
            logger.warning(f"Stored credentials for '{provider_id}' cannot be decrypted, re-entry required",
                           provider_id=provider_id)
            return CredentialCheck(is_configured=False, reentry_required=True)

        if config is None:
            return CredentialCheck(is_configured=False)

        return CredentialCheck(
            is_configured=bool(config.api_key),
            config=CredentialSummary(
                provider_id=config.provider_id,
                base_url=config.base_url or None,
                api_key_present=bool(config.api_key),
                model=config.model or None,
            ),
        )

    async def delete(self, provider_id: str) -> bool:
        key = self._storage_key(provider_id)
        if self.store.get(key) is None:
            return False
        self.store.delete(key)
        if self.active_provider_id() == provider_id:
            self.store.delete(ACTIVE_PROVIDER_KEY)
        logger.info(f"Deleted credentials for provider '{provider_id}'", provider_id=provider_id)
        return True

    async def rotate_key(self) -> str:
        """
        Replace the vault key and re-encrypt every stored credential under it.

        Records that can no longer be decrypted are left untouched and will
        report ``reentry_required``. Returns the new key version.
        """
        plaintexts = {}
        for provider_id in self.provider_ids():
            try:
                record = self._read_record(provider_id)
                plaintexts[provider_id] = (record, await self._decrypt_record(record))
            except DecryptionError:
                logger.warning(f"Skipping credentials for '{provider_id}' during key rotation, re-entry required",
                               provider_id=provider_id)

        await self.vault.reset_key()

        for provider_id, (record, secrets) in plaintexts.items():
            await self.save(
                provider_id,
                secrets["api_key"],
                base_url=secrets["base_url"],
                model=record.model,
                activate=False,
            )

        logger.info("Encryption key rotated", extra={
            "key_version": self.vault.key_version,
            "reencrypted": len(plaintexts)
        })
        return self.vault.key_version
