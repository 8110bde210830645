# timbrado/application/services/canonicalizer.py
import logging
from typing import Optional, Union

from lxml import etree

from timbrado.domain.errors import CanonicalizationError
from timbrado.domain.models.fiscal_document import FiscalDocument
from timbrado.domain.models.stamping import CanonicalString
from timbrado.infrastructure.xml.cfdi_builder import build_cfdi_xml
from timbrado.infrastructure.xml.namespaces import strip_namespaces
from timbrado.infrastructure.xml.transform_registry import TransformRegistry

logger = logging.getLogger(__name__)


def finalize_original_string(text: str) -> str:
    """Recorta la salida de la XSLT y garantiza el sobre `||...||`."""
    text = text.strip()
    if not text.startswith("||"):
        text = ("|" if text.startswith("|") else "||") + text
    if not text.endswith("||"):
        text = text + ("|" if text.endswith("|") else "||")
    return text


class Canonicalizer:
    """
    Genera la cadena original de un comprobante con la XSLT de su versión.
    No tiene efectos secundarios; puede usarse desde varios hilos.
    """

    def __init__(self, registry: TransformRegistry):
        self.registry = registry

    def canonicalize(self, document: Union[FiscalDocument, bytes], transform_version: Optional[str] = None) -> CanonicalString:
        if isinstance(document, FiscalDocument):
            version = transform_version or document.version
            xml = build_cfdi_xml(document)
        else:
            version = transform_version
            xml = document
        if not version:
            raise CanonicalizationError("Se requiere la versión de la XSLT para canonicalizar XML sin modelo")

        spec = self.registry.spec_for(version)
        transform = self.registry.get(version)

        try:
            root = etree.fromstring(strip_namespaces(xml))
        except etree.XMLSyntaxError as e:
            raise CanonicalizationError(f"El XML del comprobante no es válido: {e}") from e

        document_version = root.get("Version")
        if document_version and document_version != version:
            raise CanonicalizationError(
                f"El comprobante es versión {document_version} y se pidió la XSLT {version}", field="Version"
            )

        for xpath in spec.required_fields:
            if not _has_value(root.xpath(xpath)):
                raise CanonicalizationError(f"Falta el campo requerido {xpath}", field=xpath)

        try:
            result = transform(etree.ElementTree(root))
        except etree.XSLTApplyError as e:
            raise CanonicalizationError(f"La XSLT {version} falló al aplicarse: {e}") from e

        return CanonicalString(text=finalize_original_string(str(result)), transform_version=version)


def _has_value(matches) -> bool:
    for match in matches:
        if isinstance(match, str):
            if match.strip():
                return True
        else:
            return True
    return False
