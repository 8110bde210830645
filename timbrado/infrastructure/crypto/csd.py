# timbrado/infrastructure/crypto/csd.py
"""
Lectura de Certificados de Sello Digital (CSD) del SAT y operaciones de
firma: certificado X.509 (.cer, DER) y llave privada PKCS#8 cifrada (.key, DER).
"""
import base64
import re
from datetime import datetime
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict

from timbrado.domain.errors import CredentialFormatError, CredentialMismatchError, SigningError

X500_UNIQUE_IDENTIFIER = x509.ObjectIdentifier("2.5.4.45")
RFC_PATTERN = re.compile(r"^([A-Z&Ñ]{3,4}[0-9]{6}[A-Z0-9]{3})")

DIGESTS = {
    "sha256": hashes.SHA256,
    "sha1": hashes.SHA1,
}


class CertificateInfo(BaseModel):
    tax_id: Optional[str] = None
    name: str = ""
    certificate_number: str
    not_before: datetime
    not_after: datetime
    certificate_der: bytes
    certificate_b64: str

    model_config = ConfigDict(frozen=True)


def load_certificate(data: bytes) -> x509.Certificate:
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CredentialFormatError(f"El archivo .cer no es un certificado válido: {e}") from e


def certificate_number(certificate: x509.Certificate) -> str:
    """
    Número de certificado (NoCertificado) de 20 dígitos. El SAT codifica
    el número como dígitos ASCII dentro del serial X.509.
    """
    serial = certificate.serial_number
    raw = serial.to_bytes((serial.bit_length() + 7) // 8 or 1, "big")
    try:
        decoded = raw.decode("ascii")
        if decoded.isdigit():
            return decoded
    except UnicodeDecodeError:
        pass
    serial_hex = format(serial, "x").lstrip("0")
    return serial_hex[-20:].rjust(20, "0")


def _attribute_text(attribute: x509.NameAttribute) -> str:
    value = attribute.value
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    return value.strip()


def tax_id_from_subject(certificate: x509.Certificate) -> Optional[str]:
    """RFC del titular: x500UniqueIdentifier ("RFC / RFC representante") o serialNumber."""
    for oid in (X500_UNIQUE_IDENTIFIER, NameOID.SERIAL_NUMBER):
        for attribute in certificate.subject.get_attributes_for_oid(oid):
            value = _attribute_text(attribute).upper()
            if not value:
                continue
            match = RFC_PATTERN.match(value)
            return match.group(1) if match else value[:13].strip()
    return None


def read_certificate(data: bytes) -> CertificateInfo:
    certificate = load_certificate(data)
    der = certificate.public_bytes(serialization.Encoding.DER)
    names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return CertificateInfo(
        tax_id=tax_id_from_subject(certificate),
        name=_attribute_text(names[0]) if names else "",
        certificate_number=certificate_number(certificate),
        not_before=certificate.not_valid_before_utc,
        not_after=certificate.not_valid_after_utc,
        certificate_der=der,
        certificate_b64=base64.b64encode(der).decode("ascii"),
    )


def load_private_key(data: bytes, passphrase: str) -> rsa.RSAPrivateKey:
    """
    Descifra la llave .key con su contraseña. Distingue un archivo que no es
    llave (CredentialFormatError) de una contraseña incorrecta
    (CredentialMismatchError).
    """
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_private_key(data, password=password)
        else:
            key = serialization.load_der_private_key(data, password=password)
    except (ValueError, TypeError) as e:
        # Una llave DER siempre inicia con una SEQUENCE (0x30)
        if not data or (data[:1] != b"\x30" and not data.lstrip().startswith(b"-----BEGIN")):
            raise CredentialFormatError("El archivo .key no es una llave privada válida") from e
        raise CredentialMismatchError("La contraseña no descifra la llave privada") from e
    except UnsupportedAlgorithm as e:
        raise CredentialFormatError(f"Algoritmo de cifrado de la llave no soportado: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise CredentialFormatError("La llave del CSD debe ser RSA")
    return key


def keys_match(certificate_der: bytes, private_key: rsa.RSAPrivateKey) -> bool:
    public_key = load_certificate(certificate_der).public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    return public_key.public_numbers() == private_key.public_key().public_numbers()


def ensure_keys_match(certificate_der: bytes, private_key: rsa.RSAPrivateKey) -> None:
    if not keys_match(certificate_der, private_key):
        raise CredentialMismatchError("La llave privada no corresponde al certificado")


def sign_bytes(private_key: rsa.RSAPrivateKey, data: bytes, digest: str = "sha256") -> str:
    """Firma RSA PKCS#1 v1.5 en Base64, el formato del atributo Sello."""
    algorithm = DIGESTS.get(digest)
    if algorithm is None:
        raise SigningError(f"Algoritmo de digestión no soportado: {digest}")
    try:
        signature = private_key.sign(data, padding.PKCS1v15(), algorithm())
    except (ValueError, TypeError) as e:
        raise SigningError(f"No se pudo generar el sello: {e}") from e
    return base64.b64encode(signature).decode("ascii")


def verify_bytes(certificate_der: bytes, data: bytes, signature_b64: str, digest: str = "sha256") -> bool:
    algorithm = DIGESTS.get(digest)
    if algorithm is None:
        return False
    public_key = load_certificate(certificate_der).public_key()
    try:
        public_key.verify(base64.b64decode(signature_b64), data, padding.PKCS1v15(), algorithm())
    except (InvalidSignature, ValueError):
        return False
    return True
