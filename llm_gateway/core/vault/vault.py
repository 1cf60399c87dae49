import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..error_handling import ErrorHandler, ErrorContext
from ..logging import logger
from ..storage import KeyValueStore
from .key_material import (
    compose_key,
    generate_device_component,
    generate_random_component,
    next_version,
    parse_key_version,
    validate_key_strength,
)


class CredentialVault:
    """
    Encrypts and decrypts secret strings with a per-installation key.

    The key string is generated once, persisted in the key-value store and
    never leaves the process. Its SHA-256 digest is the AES-256-GCM key.
    Ciphertexts are ``base64(nonce || ciphertext || tag)``.
    """

    KEY_STORAGE_NAME = "llm_encryption_key"
    NONCE_SIZE = 12
    TAG_SIZE = 16
    MAX_GENERATION_ATTEMPTS = 5

    def __init__(self, store: KeyValueStore, key_storage_name: Optional[str] = None):
        self.store = store
        self.key_storage_name = key_storage_name or self.KEY_STORAGE_NAME
        self._encryption_key: Optional[str] = None
        self._key_version: Optional[str] = None
        self._cipher: Optional[AESGCM] = None

    @property
    def is_initialized(self) -> bool:
        return self._cipher is not None

    @property
    def key_version(self) -> Optional[str]:
        return self._key_version

    async def initialize(self) -> None:
        """
        Load the stored key or generate a new one.

        A stored key that fails the strength check is replaced by a freshly
        generated key with the next version tag. Credentials encrypted under
        the old key can no longer be decrypted and have to be re-entered.
        """
        logger.info("Initializing credential vault")
        stored = self.store.get(self.key_storage_name)

        if stored:
            if validate_key_strength(stored):
                self._install_key(stored)
                logger.info("Loaded stored encryption key", extra={
                    "vault": {"key_version": self._key_version}
                })
            else:
                logger.warning("Stored encryption key does not meet strength requirements, regenerating")
                await self._replace_key(next_version(parse_key_version(stored) or "v1"))
        else:
            logger.info("No stored encryption key found, generating a new one")
            await self._replace_key("v1")

    async def reset_key(self) -> None:
        """Generate and persist a new key with the next version tag."""
        logger.info("Resetting encryption key", extra={
            "vault": {"previous_version": self._key_version}
        })
        await self._replace_key(next_version(self._key_version))

    def get_key(self) -> str:
        if self._encryption_key is None:
            raise ErrorHandler.handle_internal_error("encryption key is not initialized", ErrorContext())
        return self._encryption_key

    async def encrypt(self, plaintext: str) -> str:
        if self._cipher is None:
            raise ErrorHandler.handle_internal_error(
                "credential vault is not initialized", ErrorContext(key_version=self._key_version)
            )

        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext = self._cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    async def decrypt(self, ciphertext: str) -> str:
        context = ErrorContext(key_version=self._key_version)
        if self._cipher is None:
            raise ErrorHandler.handle_decryption_error("credential vault is not initialized", context)

        try:
            combined = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise ErrorHandler.handle_decryption_error("ciphertext is not valid base64", context, e) from e

        if len(combined) < self.NONCE_SIZE + self.TAG_SIZE:
            raise ErrorHandler.handle_decryption_error("ciphertext is too short", context)

        nonce, payload = combined[:self.NONCE_SIZE], combined[self.NONCE_SIZE:]
        try:
            plaintext = self._cipher.decrypt(nonce, payload, None)
        except InvalidTag as e:
            raise ErrorHandler.handle_decryption_error("authentication failed", context, e) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ErrorHandler.handle_decryption_error("plaintext is not valid UTF-8", context, e) from e

    async def _replace_key(self, version: str) -> None:
        new_key = self._generate_key(version)
        self.store.set(self.key_storage_name, new_key)
        self._install_key(new_key)
        logger.info("Generated and stored new encryption key", extra={
            "vault": {"key_version": version}
        })

    def _generate_key(self, version: str) -> str:
        for attempt in range(1, self.MAX_GENERATION_ATTEMPTS + 1):
            candidate = compose_key(generate_device_component(), generate_random_component(), version)
            if validate_key_strength(candidate):
                return candidate
            logger.debug(f"Generated key failed strength check (attempt {attempt})")

        raise ErrorHandler.handle_key_generation_error(
            f"no key passed the strength check after {self.MAX_GENERATION_ATTEMPTS} attempts",
            ErrorContext()
        )

    def _install_key(self, key: str) -> None:
        self._encryption_key = key
        self._key_version = parse_key_version(key) or "v1"
        self._cipher = AESGCM(hashlib.sha256(key.encode("utf-8")).digest())
