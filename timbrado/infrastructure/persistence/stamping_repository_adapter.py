# timbrado/infrastructure/persistence/stamping_repository_adapter.py
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from timbrado.domain.models.stamping import (
    AttemptOutcome,
    ErrorKind,
    FiscalStamp,
    StampingAttempt,
    StampingProcess,
    StampingState,
)
from timbrado.domain.ports.stamping_repository import StampingRepository
from timbrado.infrastructure.persistence.database import SessionLocal
from timbrado.infrastructure.persistence.models import (
    FiscalStampRecord,
    StampingAttemptRecord,
    StampingProcessRecord,
)

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite devuelve fechas sin zona; se asumen UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_process(record: StampingProcessRecord) -> StampingProcess:
    return StampingProcess(
        idempotency_key=record.idempotency_key,
        document_id=record.document_id,
        emitter_tax_id=record.emitter_tax_id,
        fingerprint=record.fingerprint,
        state=StampingState(record.state),
        error_kind=ErrorKind(record.error_kind) if record.error_kind else None,
        code=record.code,
        message=record.message,
        signed_xml=record.signed_xml,
        certificate_number=record.certificate_number,
        updated_at=as_utc(record.updated_at),
    )


def _to_attempt(record: StampingAttemptRecord) -> StampingAttempt:
    return StampingAttempt(
        id=record.id,
        idempotency_key=record.idempotency_key,
        attempt_number=record.attempt_number,
        started_at=as_utc(record.started_at),
        finished_at=as_utc(record.finished_at),
        outcome=AttemptOutcome(record.outcome),
        code=record.code,
        message=record.message,
    )


def _to_stamp(record: FiscalStampRecord) -> FiscalStamp:
    return FiscalStamp(
        uuid=record.uuid,
        issued_at=as_utc(record.issued_at),
        authority_signature=record.authority_signature,
        authority_certificate_number=record.authority_certificate_number,
        stamped_xml=record.stamped_xml,
        tfd_original_string=record.tfd_original_string,
        cancelled_at=as_utc(record.cancelled_at),
        cancellation_ack=record.cancellation_ack,
    )


class SQLAlchemyStampingRepository(StampingRepository):
    """Cada operación abre su propia sesión y confirma antes de regresar."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def get_process(self, idempotency_key: str) -> Optional[StampingProcess]:
        with self.session_factory() as db:
            record = db.get(StampingProcessRecord, idempotency_key)
            return _to_process(record) if record else None

    def save_process(self, process: StampingProcess) -> StampingProcess:
        updated_at = datetime.now(timezone.utc)
        with self.session_factory() as db, db.begin():
            record = db.get(StampingProcessRecord, process.idempotency_key)
            if record is None:
                record = StampingProcessRecord(idempotency_key=process.idempotency_key)
                db.add(record)
            record.document_id = process.document_id
            record.emitter_tax_id = process.emitter_tax_id
            record.fingerprint = process.fingerprint
            record.state = process.state.value
            record.error_kind = process.error_kind.value if process.error_kind else None
            record.code = process.code
            record.message = process.message
            record.signed_xml = process.signed_xml
            record.certificate_number = process.certificate_number
            record.updated_at = updated_at
        return process.model_copy(update={"updated_at": updated_at})

    def start_attempt(self, attempt: StampingAttempt) -> StampingAttempt:
        with self.session_factory() as db, db.begin():
            record = StampingAttemptRecord(
                idempotency_key=attempt.idempotency_key,
                attempt_number=attempt.attempt_number,
                started_at=attempt.started_at,
                outcome=attempt.outcome.value,
            )
            db.add(record)
            db.flush()
            attempt_id = record.id
        return attempt.model_copy(update={"id": attempt_id})

    def finish_attempt(self, attempt: StampingAttempt) -> None:
        with self.session_factory() as db, db.begin():
            record = db.get(StampingAttemptRecord, attempt.id)
            if record is None:
                raise ValueError(f"No existe el intento {attempt.id}")
            record.finished_at = attempt.finished_at
            record.outcome = attempt.outcome.value
            record.code = attempt.code
            record.message = attempt.message

    def list_attempts(self, idempotency_key: str) -> List[StampingAttempt]:
        with self.session_factory() as db:
            records = (
                db.query(StampingAttemptRecord)
                .filter(StampingAttemptRecord.idempotency_key == idempotency_key)
                .order_by(StampingAttemptRecord.id)
                .all()
            )
            return [_to_attempt(record) for record in records]

    def save_stamp(self, idempotency_key: str, stamp: FiscalStamp) -> FiscalStamp:
        try:
            with self.session_factory() as db, db.begin():
                db.add(FiscalStampRecord(
                    idempotency_key=idempotency_key,
                    uuid=stamp.uuid,
                    issued_at=stamp.issued_at,
                    authority_signature=stamp.authority_signature,
                    authority_certificate_number=stamp.authority_certificate_number,
                    stamped_xml=stamp.stamped_xml,
                    tfd_original_string=stamp.tfd_original_string,
                ))
        except IntegrityError:
            existing = self.find_stamp(idempotency_key)
            if existing is None:
                raise
            logger.warning(f"[{idempotency_key}] Ya existía un timbre ({existing.uuid}); se conserva el existente")
            return existing
        return stamp

    def find_stamp(self, idempotency_key: str) -> Optional[FiscalStamp]:
        with self.session_factory() as db:
            record = (
                db.query(FiscalStampRecord)
                .filter(FiscalStampRecord.idempotency_key == idempotency_key)
                .first()
            )
            return _to_stamp(record) if record else None

    def mark_stamp_cancelled(self, idempotency_key: str, stamp: FiscalStamp) -> None:
        with self.session_factory() as db, db.begin():
            record = (
                db.query(FiscalStampRecord)
                .filter(FiscalStampRecord.idempotency_key == idempotency_key)
                .first()
            )
            if record is None:
                raise ValueError(f"No hay timbre para {idempotency_key}")
            record.cancelled_at = stamp.cancelled_at
            record.cancellation_ack = stamp.cancellation_ack
