# timbrado/infrastructure/persistence/models.py
from sqlalchemy import Column, DateTime, Integer, LargeBinary, String, Text

from timbrado.infrastructure.persistence.database import Base


class StampingProcessRecord(Base):
    __tablename__ = "stamping_processes"

    idempotency_key = Column(String(36), primary_key=True)
    document_id = Column(String(64), nullable=False)
    emitter_tax_id = Column(String(13), nullable=False, index=True)
    fingerprint = Column(String(64), nullable=False)
    state = Column(String(32), nullable=False)
    error_kind = Column(String(32))
    code = Column(String(32))
    message = Column(Text)
    signed_xml = Column(Text)
    certificate_number = Column(String(20))
    updated_at = Column(DateTime(timezone=True))


class StampingAttemptRecord(Base):
    __tablename__ = "stamping_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(36), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True))
    outcome = Column(String(20), nullable=False)
    code = Column(String(32))
    message = Column(Text)


class FiscalStampRecord(Base):
    __tablename__ = "fiscal_stamps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Un solo timbre por documento, aun con varios procesos escribiendo
    idempotency_key = Column(String(36), nullable=False, unique=True)
    uuid = Column(String(36), nullable=False, unique=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    authority_signature = Column(Text, nullable=False)
    authority_certificate_number = Column(String(20), nullable=False)
    stamped_xml = Column(Text, nullable=False)
    tfd_original_string = Column(Text)
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_ack = Column(Text)


class CredentialRecord(Base):
    __tablename__ = "credentials"

    tax_id = Column(String(13), primary_key=True)
    certificate_der = Column(LargeBinary, nullable=False)
    encrypted_key = Column(LargeBinary, nullable=False)
    passphrase = Column(String(255), nullable=False)
    certificate_number = Column(String(20), nullable=False)
    not_before = Column(DateTime(timezone=True), nullable=False)
    not_after = Column(DateTime(timezone=True), nullable=False)
    registered_at = Column(DateTime(timezone=True))
