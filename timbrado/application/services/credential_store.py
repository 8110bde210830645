# timbrado/application/services/credential_store.py
import logging
from typing import Callable, Optional
from datetime import datetime

from timbrado.application.services.keyed_lock import KeyedReadWriteLock
from timbrado.domain.errors import (
    AuthorityRejection,
    CredentialAlreadyRegisteredError,
    CredentialExpiredError,
    CredentialMismatchError,
    CredentialNotFoundError,
    TransportError,
)
from timbrado.domain.models.credential import Credential, CredentialRegistration, utc_now
from timbrado.domain.ports.credential_repository import CredentialRepository
from timbrado.domain.ports.pac_gateway import PACGateway
from timbrado.infrastructure.crypto.csd import ensure_keys_match, load_private_key, read_certificate

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Custodia de los CSD por RFC. Valida el par certificado/llave al
    registrarlo y la vigencia al entregarlo.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        pac_gateway: Optional[PACGateway] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.pac_gateway = pac_gateway
        self.clock = clock
        self._locks = KeyedReadWriteLock()

    def register(
        self,
        tax_id: str,
        certificate_bytes: bytes,
        encrypted_key_bytes: bytes,
        passphrase: str,
        replace: bool = False,
    ) -> CredentialRegistration:
        tax_id = tax_id.strip().upper()

        info = read_certificate(certificate_bytes)
        private_key = load_private_key(encrypted_key_bytes, passphrase)
        ensure_keys_match(info.certificate_der, private_key)

        if info.tax_id != tax_id:
            raise CredentialMismatchError(f"El certificado pertenece a {info.tax_id}, no a {tax_id}")
        if self.clock() > info.not_after:
            raise CredentialExpiredError(
                f"El certificado {info.certificate_number} expiró el {info.not_after.isoformat()}"
            )

        with self._locks.write(tax_id):
            existing = self.repository.find(tax_id)
            if existing is not None and not replace:
                raise CredentialAlreadyRegisteredError(
                    f"{tax_id} ya tiene el CSD {existing.certificate_number}; usa replace=True para sustituirlo"
                )
            self.repository.save(Credential(
                tax_id=tax_id,
                certificate_der=info.certificate_der,
                encrypted_key=encrypted_key_bytes,
                passphrase=passphrase,
                certificate_number=info.certificate_number,
                not_before=info.not_before,
                not_after=info.not_after,
                registered_at=self.clock(),
            ))

        logger.info(f"CSD {info.certificate_number} registrado para {tax_id} (reemplazo={existing is not None})")
        return CredentialRegistration(
            tax_id=tax_id,
            certificate_number=info.certificate_number,
            not_before=info.not_before,
            not_after=info.not_after,
            replaced=existing is not None,
        )

    def register_from_files(self, tax_id: str, cer_path: str, key_path: str, passphrase: str, replace: bool = False) -> CredentialRegistration:
        with open(cer_path, "rb") as cer_file, open(key_path, "rb") as key_file:
            return self.register(tax_id, cer_file.read(), key_file.read(), passphrase, replace=replace)

    def get(self, tax_id: str) -> Credential:
        tax_id = tax_id.strip().upper()
        with self._locks.read(tax_id):
            credential = self.repository.find(tax_id)
        if credential is None:
            raise CredentialNotFoundError(f"No hay CSD registrado para {tax_id}")
        if self.clock() > credential.not_after:
            raise CredentialExpiredError(
                f"El CSD {credential.certificate_number} de {tax_id} expiró el {credential.not_after.isoformat()}"
            )
        return credential

    def verify_remote(self, tax_id: str) -> bool:
        """Consulta al PAC si el RFC está dado de alta y activo. Es solo informativo."""
        if self.pac_gateway is None:
            return False
        try:
            status = self.pac_gateway.registration_status(tax_id.strip().upper())
        except (TransportError, AuthorityRejection) as e:
            logger.warning(f"No se pudo verificar {tax_id} en el PAC: {e}")
            return False
        return status.active
