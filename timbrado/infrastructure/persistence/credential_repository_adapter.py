# timbrado/infrastructure/persistence/credential_repository_adapter.py
from typing import Optional

from sqlalchemy.orm import sessionmaker

from timbrado.domain.models.credential import Credential
from timbrado.domain.ports.credential_repository import CredentialRepository
from timbrado.infrastructure.persistence.database import SessionLocal
from timbrado.infrastructure.persistence.models import CredentialRecord
from timbrado.infrastructure.persistence.stamping_repository_adapter import as_utc


class SQLAlchemyCredentialRepository(CredentialRepository):
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def find(self, tax_id: str) -> Optional[Credential]:
        with self.session_factory() as db:
            record = db.get(CredentialRecord, tax_id.upper())
            if record is None:
                return None
            return Credential(
                tax_id=record.tax_id,
                certificate_der=record.certificate_der,
                encrypted_key=record.encrypted_key,
                passphrase=record.passphrase,
                certificate_number=record.certificate_number,
                not_before=as_utc(record.not_before),
                not_after=as_utc(record.not_after),
                registered_at=as_utc(record.registered_at),
            )

    def save(self, credential: Credential) -> None:
        with self.session_factory() as db, db.begin():
            record = db.get(CredentialRecord, credential.tax_id)
            if record is None:
                record = CredentialRecord(tax_id=credential.tax_id)
                db.add(record)
            record.certificate_der = credential.certificate_der
            record.encrypted_key = credential.encrypted_key
            record.passphrase = credential.passphrase.get_secret_value()
            record.certificate_number = credential.certificate_number
            record.not_before = credential.not_before
            record.not_after = credential.not_after
            record.registered_at = credential.registered_at
