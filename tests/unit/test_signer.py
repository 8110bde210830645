# tests/unit/test_signer.py
"""
Pruebas del sellado: firma verificable, determinismo y errores de
preparación que nunca llegan al PAC.
"""
import base64
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree
from pydantic import SecretStr

from tests.conftest import CERTIFICATE_NUMBER, EMITTER_TAX_ID, make_document
from timbrado.application.services.signer import Signer
from timbrado.domain.errors import (
    CanonicalizationError,
    CredentialExpiredError,
    CredentialMismatchError,
    SigningError,
)
from timbrado.infrastructure.crypto.csd import certificate_number, load_certificate
from timbrado.infrastructure.xml.namespaces import strip_namespaces


class TestSign:
    def test_signature_verifies_against_the_certificate(self, signer, credential_store, csd):
        signed = signer.sign(make_document(), credential_store.get(EMITTER_TAX_ID))

        public_key = load_certificate(csd["cer"]).public_key()
        public_key.verify(
            base64.b64decode(signed.signature),
            signed.canonical.text.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        assert signer.verify(signed) is True

    def test_signed_xml_carries_seal_and_certificate(self, signer, credential_store, csd):
        signed = signer.sign(make_document(), credential_store.get(EMITTER_TAX_ID))

        root = etree.fromstring(strip_namespaces(signed.xml))
        assert root.get("Sello") == signed.signature
        assert root.get("NoCertificado") == CERTIFICATE_NUMBER
        assert base64.b64decode(root.get("Certificado")) == csd["cer"]
        assert f"|{CERTIFICATE_NUMBER}|" in signed.canonical.text

    def test_same_document_same_signature(self, signer, credential_store):
        credential = credential_store.get(EMITTER_TAX_ID)
        document = make_document()
        assert signer.sign(document, credential).signature == signer.sign(document, credential).signature

    def test_fingerprint_matches_the_document(self, signer, credential_store):
        document = make_document()
        signed = signer.sign(document, credential_store.get(EMITTER_TAX_ID))
        assert signed.fingerprint == document.fingerprint()

    def test_tampered_xml_does_not_verify(self, signer, credential_store):
        signed = signer.sign(make_document(), credential_store.get(EMITTER_TAX_ID))
        tampered = signed.model_copy(update={"xml": signed.xml.replace(b'Total="1160.00"', b'Total="1.00"')})
        assert signer.verify(tampered) is False

    def test_credential_of_another_emitter_is_rejected(self, signer, credential_store):
        document = make_document(emitter=make_document().emitter.model_copy(update={"tax_id": "BBB020202BBB"}))
        with pytest.raises(CredentialMismatchError):
            signer.sign(document, credential_store.get(EMITTER_TAX_ID))

    def test_expired_credential_is_rejected(self, canonicalizer, credential_store):
        later = Signer(canonicalizer, clock=lambda: datetime.now(timezone.utc) + timedelta(days=400))
        with pytest.raises(CredentialExpiredError):
            later.sign(make_document(), credential_store.get(EMITTER_TAX_ID))

    def test_wrong_passphrase_is_a_signing_error(self, signer, credential_store):
        credential = credential_store.get(EMITTER_TAX_ID).model_copy(update={"passphrase": SecretStr("otra-clave")})
        with pytest.raises(SigningError):
            signer.sign(make_document(), credential)

    def test_incomplete_document_fails_before_signing(self, signer, credential_store):
        with pytest.raises(CanonicalizationError):
            signer.sign(make_document(subtotal=None), credential_store.get(EMITTER_TAX_ID))


class TestCertificateNumber:
    def test_ascii_serial_is_decoded(self, csd):
        assert certificate_number(load_certificate(csd["cer"])) == CERTIFICATE_NUMBER
