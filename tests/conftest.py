# tests/conftest.py
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from sqlalchemy.orm import sessionmaker

import config
from timbrado.application.services.canonicalizer import Canonicalizer
from timbrado.application.services.credential_store import CredentialStore
from timbrado.application.services.signer import Signer
from timbrado.domain.models.fiscal_document import (
    ConceptLine,
    DocumentTaxes,
    Emitter,
    FiscalDocument,
    Receiver,
    TaxLine,
)
from timbrado.domain.models.results import (
    Cancelled,
    DocumentStatus,
    RegistrationResult,
    RegistrationStatus,
    Stamped,
    UploadResult,
)
from timbrado.domain.models.stamping import FiscalStamp
from timbrado.domain.ports.pac_gateway import PACGateway
from timbrado.infrastructure.persistence.credential_repository_adapter import SQLAlchemyCredentialRepository
from timbrado.infrastructure.persistence.database import build_engine, init_db
from timbrado.infrastructure.persistence.stamping_repository_adapter import SQLAlchemyStampingRepository
from timbrado.infrastructure.xml.transform_registry import TransformRegistry

EMITTER_TAX_ID = "AAA010101AAA"
CERTIFICATE_NUMBER = "30001000000500003416"
PASSPHRASE = "12345678a"
STAMP_UUID = "5FB2822E-396D-4725-8521-CDC4BDD20CCF"


def _build_csd(tax_id: str, not_before: datetime, not_after: datetime, key=None):
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "EMISOR DE PRUEBA SA DE CV"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, f"{tax_id} / XAXX010101000"),
    ])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(int.from_bytes(CERTIFICATE_NUMBER.encode("ascii"), "big"))
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    encrypted_key = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(PASSPHRASE.encode("ascii")),
    )
    return {
        "cer": certificate.public_bytes(serialization.Encoding.DER),
        "key": encrypted_key,
        "password": PASSPHRASE,
        "private_key": key,
    }


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def csd(rsa_key):
    now = datetime.now(timezone.utc)
    return _build_csd(EMITTER_TAX_ID, now - timedelta(days=1), now + timedelta(days=365), key=rsa_key)


@pytest.fixture(scope="session")
def expired_csd(rsa_key):
    now = datetime.now(timezone.utc)
    return _build_csd(EMITTER_TAX_ID, now - timedelta(days=400), now - timedelta(days=10), key=rsa_key)


@pytest.fixture(scope="session")
def foreign_csd():
    """CSD válido de otro RFC y con otra llave."""
    now = datetime.now(timezone.utc)
    return _build_csd("BBB020202BBB", now - timedelta(days=1), now + timedelta(days=365))


def make_document(document_id: str = "FAC-1001", **changes) -> FiscalDocument:
    fields = dict(
        document_id=document_id,
        emitter=Emitter(tax_id=EMITTER_TAX_ID, name="EMISOR DE PRUEBA", tax_regime="601"),
        receiver=Receiver(
            tax_id="ICV060329BY0",
            name="INMOBILIARIA CVA",
            postal_code="33826",
            tax_regime="601",
            cfdi_use="G03",
        ),
        issued_at=datetime(2024, 1, 15, 10, 30, 0),
        place_of_issue="21000",
        series="A",
        folio="1001",
        payment_form="03",
        payment_method="PUE",
        subtotal=Decimal("1000.00"),
        total=Decimal("1160.00"),
        concepts=[
            ConceptLine(
                product_code="84111506",
                quantity=Decimal("1"),
                unit_code="E48",
                description="Servicio de facturación",
                unit_value=Decimal("1000"),
                amount=Decimal("1000"),
                transfers=[TaxLine(base=Decimal("1000"), rate=Decimal("0.16"), amount=Decimal("160"))],
            )
        ],
        taxes=DocumentTaxes(
            total_transferred=Decimal("160"),
            transfers=[TaxLine(base=Decimal("1000"), rate=Decimal("0.16"), amount=Decimal("160"))],
        ),
    )
    fields.update(changes)
    return FiscalDocument(**fields)


@pytest.fixture
def document():
    return make_document()


def make_stamp(uuid: str = STAMP_UUID) -> FiscalStamp:
    return FiscalStamp(
        uuid=uuid,
        issued_at=datetime(2024, 1, 15, 10, 31, 0, tzinfo=timezone.utc),
        authority_signature="U0VMTE9TQVQ=",
        authority_certificate_number="00001000000505142236",
        stamped_xml=(
            '<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" Version="4.0" Total="1160.00">'
            '<cfdi:Receptor Rfc="ICV060329BY0"/></cfdi:Comprobante>'
        ),
    )


@pytest.fixture
def transform_registry():
    return TransformRegistry(config.CFDI_TRANSFORMS_DIR)


@pytest.fixture
def canonicalizer(transform_registry):
    return Canonicalizer(transform_registry)


@pytest.fixture
def signer(canonicalizer):
    return Signer(canonicalizer)


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'timbrado.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def stamping_repository(session_factory):
    return SQLAlchemyStampingRepository(session_factory)


@pytest.fixture
def credential_repository(session_factory):
    return SQLAlchemyCredentialRepository(session_factory)


@pytest.fixture
def credential_store(credential_repository, csd):
    store = CredentialStore(credential_repository)
    store.register(EMITTER_TAX_ID, csd["cer"], csd["key"], csd["password"])
    return store


class FakePAC(PACGateway):
    """PAC en memoria: responde con los resultados programados y cuenta las llamadas."""

    def __init__(self, stamp_results: Optional[List] = None, query_result=None, query_error: Optional[Exception] = None):
        self.stamp_results = list(stamp_results or [])
        self.query_result = query_result
        self.query_error = query_error
        self.cancel_result = None
        self.cancel_error: Optional[Exception] = None
        self.registration_result = RegistrationResult(tax_id=EMITTER_TAX_ID, success=True)
        self.upload_result = UploadResult(tax_id=EMITTER_TAX_ID, success=True)
        self.registration_error: Optional[Exception] = None
        self.stamp_calls = 0
        self.query_calls = 0
        self.cancel_calls = 0
        self.uploads = []
        self.status_calls = []
        self._lock = threading.Lock()
        self.on_stamp = None

    def stamp(self, signed, idempotency_key, cancel_event=None):
        with self._lock:
            self.stamp_calls += 1
        if self.on_stamp is not None:
            self.on_stamp()
        if self.stamp_results:
            return self.stamp_results.pop(0)
        return Stamped(stamp=make_stamp())

    def query_stamp(self, signed_xml, idempotency_key):
        self.query_calls += 1
        if self.query_error is not None:
            raise self.query_error
        return self.query_result

    def cancel(self, uuid, tax_id, reason, substitution_uuid=None):
        self.cancel_calls += 1
        if self.cancel_error is not None:
            raise self.cancel_error
        return self.cancel_result or Cancelled(uuid=uuid, acknowledgement="<Acuse/>")

    def register_tax_id(self, tax_id):
        if self.registration_error is not None:
            raise self.registration_error
        return self.registration_result

    def registration_status(self, tax_id):
        if self.registration_error is not None:
            raise self.registration_error
        return RegistrationStatus(tax_id=tax_id, found=True, status="A")

    def upload_credential(self, tax_id, certificate_b64, key_b64, passphrase):
        self.uploads.append((tax_id, certificate_b64, key_b64, passphrase))
        return self.upload_result

    def document_status(self, uuid, emitter_tax_id, receiver_tax_id, total):
        self.status_calls.append((uuid, emitter_tax_id, receiver_tax_id, total))
        return DocumentStatus(uuid=uuid, status="Vigente", cancellable="Cancelable sin aceptación")


@pytest.fixture
def fake_pac():
    return FakePAC()
