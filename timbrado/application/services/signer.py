# timbrado/application/services/signer.py
import base64
import logging
from datetime import datetime
from typing import Callable

from timbrado.application.services.canonicalizer import Canonicalizer
from timbrado.domain.errors import CredentialError, SignatureVerificationError, SigningError
from timbrado.domain.models.credential import Credential, utc_now
from timbrado.domain.models.fiscal_document import FiscalDocument
from timbrado.domain.models.stamping import SignedDocument
from timbrado.infrastructure.crypto.csd import load_private_key, sign_bytes, verify_bytes
from timbrado.infrastructure.xml.cfdi_builder import build_cfdi_xml

logger = logging.getLogger(__name__)


class Signer:
    def __init__(self, canonicalizer: Canonicalizer, clock: Callable[[], datetime] = utc_now):
        self.canonicalizer = canonicalizer
        self.clock = clock

    def sign(self, document: FiscalDocument, credential: Credential) -> SignedDocument:
        """
        Sella el comprobante con el CSD del emisor: arma el XML con
        NoCertificado y Certificado, genera la cadena original, la firma y
        verifica el sello antes de devolverlo.
        """
        credential.ensure_usable_for(document.emitter.tax_id, self.clock())

        try:
            private_key = load_private_key(credential.encrypted_key, credential.passphrase.get_secret_value())
        except CredentialError as e:
            raise SigningError(f"No se pudo abrir la llave del CSD {credential.certificate_number}: {e}") from e

        certificate_b64 = base64.b64encode(credential.certificate_der).decode("ascii")
        unsigned_xml = build_cfdi_xml(document, credential.certificate_number, certificate_b64)
        canonical = self.canonicalizer.canonicalize(unsigned_xml, document.version)
        digest = self.canonicalizer.registry.spec_for(canonical.transform_version).digest

        signature = sign_bytes(private_key, canonical.encoded, digest)
        if not verify_bytes(credential.certificate_der, canonical.encoded, signature, digest):
            raise SignatureVerificationError(
                f"[{document.document_id}] El sello generado no verifica con el certificado {credential.certificate_number}"
            )

        signed_xml = build_cfdi_xml(document, credential.certificate_number, certificate_b64, seal=signature)
        logger.info(f"[{document.document_id}] Comprobante sellado con el CSD {credential.certificate_number}")
        return SignedDocument(
            document=document,
            fingerprint=document.fingerprint(),
            canonical=canonical,
            signature=signature,
            certificate_number=credential.certificate_number,
            certificate_b64=certificate_b64,
            xml=signed_xml,
        )

    def verify(self, signed: SignedDocument) -> bool:
        """Recalcula la cadena original del XML sellado y valida el sello."""
        canonical = self.canonicalizer.canonicalize(signed.xml, signed.canonical.transform_version)
        if canonical.text != signed.canonical.text:
            return False
        digest = self.canonicalizer.registry.spec_for(canonical.transform_version).digest
        return verify_bytes(base64.b64decode(signed.certificate_b64), canonical.encoded, signed.signature, digest)
