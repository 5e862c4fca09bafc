"""
Key lifecycle manager.

Resolves the KEK a rule names and the DEK a field is encrypted with,
creating either lazily on the write path.

Hierarchy: KMS master key -> KEK (registry record) -> EDEK (registry record) -> field data

Concurrent writers are reconciled by the registry alone: a 409 on
registration means another writer got there first, and the record is
fetched once instead. No client-side locking is done here.
"""

from __future__ import annotations

import base64
import logging
from typing import Mapping, Optional

from .clock import MILLIS_IN_DAY, Clock
from .crypto import Cryptor
from .errors import ConfigError, InvalidKeyStateError, KeyNotFoundError, RestError
from .kms import Aead, get_aead
from .registry import Dek, DekId, DekRegistryClient, Kek, KekId

logger = logging.getLogger(__name__)


class KeyManager:
    """
    Resolves KEKs and DEKs for one rule invocation.

    Records fetched here live only as long as the manager; raw DEK bytes are
    cached on the Dek object it returns.
    """

    def __init__(
        self,
        client: DekRegistryClient,
        kms_config: Mapping[str, str],
        clock: Clock,
        kek_name: str,
        cryptor: Cryptor,
        dek_expiry_days: int = 0,
    ) -> None:
        """
        Args:
            client: Registry client for KEK/DEK records
            kms_config: Configuration handed to KMS drivers
            clock: Clock used for DEK expiry
            kek_name: Name of the KEK this manager resolves
            cryptor: Primitive selector for the DEK algorithm
            dek_expiry_days: Days before a DEK is rotated, 0 disables rotation
        """
        self._client = client
        self._kms_config = kms_config
        self._clock = clock
        self._kek_name = kek_name
        self._cryptor = cryptor
        self._dek_expiry_days = dek_expiry_days
        self._kek: Optional[Kek] = None

    @property
    def kek(self) -> Optional[Kek]:
        return self._kek

    @property
    def cryptor(self) -> Cryptor:
        return self._cryptor

    def is_dek_rotated(self) -> bool:
        return self._dek_expiry_days > 0

    # =========================================================================
    # KEK
    # =========================================================================

    def get_or_create_kek(
        self,
        kms_type: Optional[str],
        kms_key_id: Optional[str],
        read_mode: bool,
    ) -> Kek:
        """
        Look up the KEK, registering it on the write path if absent.

        Args:
            kms_type: KMS type from the rule, required to create the KEK
            kms_key_id: KMS key ID from the rule, required to create the KEK
            read_mode: True when consuming; soft-deleted KEKs are visible and
                nothing is created

        Raises:
            KeyNotFoundError: If no KEK exists on read, or none after a conflict
            ConfigError: If the KEK must be created but KMS settings are missing
            InvalidKeyStateError: If the registered KEK's KMS settings differ
                from the rule's
        """
        kek_id = KekId(name=self._kek_name, deleted=read_mode)
        kek = self._retrieve_kek(kek_id)
        if kek is None:
            if read_mode:
                raise KeyNotFoundError(f"no kek found for {self._kek_name} during consume")
            if not kms_type:
                raise ConfigError(f"no kms type found for {self._kek_name} during produce")
            if not kms_key_id:
                raise ConfigError(f"no kms key id found for {self._kek_name} during produce")
            kek = self._store_kek(kek_id, kms_type, kms_key_id, shared=False)
            if kek is None:
                # Conflict, another writer registered it
                kek = self._retrieve_kek(kek_id)
            if kek is None:
                raise KeyNotFoundError(f"no kek found for {self._kek_name} during produce")
        if kms_type and kms_type != kek.kms_type:
            raise InvalidKeyStateError(
                f"found {self._kek_name} with kms type {kek.kms_type} "
                f"which differs from rule kms type {kms_type}"
            )
        if kms_key_id and kms_key_id != kek.kms_key_id:
            raise InvalidKeyStateError(
                f"found {self._kek_name} with kms key id {kek.kms_key_id} "
                f"which differs from rule kms key id {kms_key_id}"
            )
        self._kek = kek
        return kek

    def _retrieve_kek(self, kek_id: KekId) -> Optional[Kek]:
        try:
            return self._client.get_kek(kek_id.name, kek_id.deleted)
        except RestError as e:
            if e.is_not_found():
                logger.debug("KEK %s not found", kek_id.name)
                return None
            raise

    def _store_kek(
        self, kek_id: KekId, kms_type: str, kms_key_id: str, shared: bool
    ) -> Optional[Kek]:
        try:
            kek = self._client.register_kek(kek_id.name, kms_type, kms_key_id, None, "", shared)
        except RestError as e:
            if e.is_conflict():
                logger.debug("KEK %s already registered", kek_id.name)
                return None
            raise
        logger.info("Registered KEK %s (kms type %s)", kek_id.name, kms_type)
        return kek

    # =========================================================================
    # DEK
    # =========================================================================

    def is_expired(self, dek: Optional[Dek], read_mode: bool) -> bool:
        """A DEK expires only on write, with rotation on, after expiry days."""
        if read_mode or self._dek_expiry_days <= 0 or dek is None:
            return False
        age_days = (self._clock.now_unix_millis() - dek.ts) // MILLIS_IN_DAY
        return age_days >= self._dek_expiry_days

    def get_or_create_dek(self, subject: str, version: Optional[int], read_mode: bool) -> Dek:
        """
        Look up the DEK for subject, creating or rotating it on the write path.

        Args:
            subject: Subject the DEK is scoped to
            version: DEK version, LATEST_VERSION for the newest, None for 1
            read_mode: True when consuming; nothing is created or rotated

        Returns:
            Dek with raw key material available via key_material_bytes()

        Raises:
            KeyNotFoundError: If no DEK exists on read, or creation fails with
                no prior DEK to fall back on
        """
        kek = self._require_kek()
        dek_id = DekId(
            kek_name=self._kek_name,
            subject=subject,
            version=1 if version is None else version,
            algorithm=self._cryptor.dek_format,
            deleted=read_mode,
        )
        aead: Optional[Aead] = None
        dek = self._retrieve_dek(dek_id)
        expired = self.is_expired(dek, read_mode)
        if dek is None or expired:
            if read_mode:
                raise KeyNotFoundError(f"no dek found for {self._kek_name} during consume")
            encrypted_dek: Optional[bytes] = None
            if not kek.shared:
                aead = get_aead(self._kms_config, kek.kms_type, kek.kms_key_id)
                raw_dek = self._cryptor.generate_key()
                encrypted_dek = aead.encrypt(raw_dek, b"")
            new_version = dek.version + 1 if dek is not None else 1
            try:
                dek = self._create_dek(dek_id, new_version, encrypted_dek)
            except Exception:
                if dek is None:
                    raise
                logger.warning(
                    "Failed to create dek for %s, subject %s, version %d, using existing dek",
                    self._kek_name,
                    subject,
                    new_version,
                    exc_info=True,
                )

        if dek.key_material_bytes() is None:
            if aead is None:
                aead = get_aead(self._kms_config, kek.kms_type, kek.kms_key_id)
            encrypted = dek.encrypted_key_material_bytes()
            if encrypted is None:
                raise KeyNotFoundError(
                    f"dek for {self._kek_name}, subject {subject}, version {dek.version} "
                    "has no key material"
                )
            dek.set_key_material(aead.decrypt(encrypted, b""))
        return dek

    def _require_kek(self) -> Kek:
        if self._kek is None:
            raise KeyNotFoundError(f"kek {self._kek_name} has not been resolved")
        return self._kek

    def _create_dek(
        self, dek_id: DekId, new_version: int, encrypted_dek: Optional[bytes]
    ) -> Dek:
        new_dek_id = DekId(
            kek_name=dek_id.kek_name,
            subject=dek_id.subject,
            version=new_version,
            algorithm=dek_id.algorithm,
            deleted=dek_id.deleted,
        )
        # encrypted_dek is None when the KEK is shared
        dek = self._store_dek(new_dek_id, encrypted_dek)
        if dek is None:
            # Conflict: fetch with the requested version, which is 1 or latest
            dek = self._retrieve_dek(dek_id)
        if dek is None:
            raise KeyNotFoundError(f"no dek found for {dek_id.kek_name} during produce")
        return dek

    def _retrieve_dek(self, dek_id: DekId) -> Optional[Dek]:
        try:
            return self._client.get_dek(
                dek_id.kek_name, dek_id.subject, dek_id.algorithm, dek_id.version, dek_id.deleted
            )
        except RestError as e:
            if e.is_not_found():
                logger.debug(
                    "DEK %s/%s version %d not found", dek_id.kek_name, dek_id.subject, dek_id.version
                )
                return None
            raise

    def _store_dek(self, dek_id: DekId, encrypted_dek: Optional[bytes]) -> Optional[Dek]:
        encrypted_dek_str = (
            base64.standard_b64encode(encrypted_dek).decode("ascii")
            if encrypted_dek is not None
            else None
        )
        try:
            dek = self._client.register_dek(
                dek_id.kek_name, dek_id.subject, dek_id.algorithm, dek_id.version, encrypted_dek_str
            )
        except RestError as e:
            if e.is_conflict():
                logger.debug(
                    "DEK %s/%s version %d already registered",
                    dek_id.kek_name,
                    dek_id.subject,
                    dek_id.version,
                )
                return None
            raise
        logger.info(
            "Registered DEK %s/%s version %d", dek_id.kek_name, dek_id.subject, dek_id.version
        )
        return dek
