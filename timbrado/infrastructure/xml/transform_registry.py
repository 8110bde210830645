# timbrado/infrastructure/xml/transform_registry.py
import logging
import os
import threading
from typing import Dict, Iterable, Optional, Tuple

from lxml import etree
from pydantic import BaseModel, ConfigDict, Field

from timbrado.domain.errors import CanonicalizationError

logger = logging.getLogger(__name__)

# Campos sin los cuales la cadena original 4.0 no tiene sentido,
# expresados como XPath sobre el XML ya sin namespaces.
CFDI_40_REQUIRED_FIELDS = (
    "/Comprobante/@Version",
    "/Comprobante/@Fecha",
    "/Comprobante/@SubTotal",
    "/Comprobante/@Moneda",
    "/Comprobante/@Total",
    "/Comprobante/@TipoDeComprobante",
    "/Comprobante/@Exportacion",
    "/Comprobante/@LugarExpedicion",
    "/Comprobante/Emisor/@Rfc",
    "/Comprobante/Emisor/@Nombre",
    "/Comprobante/Emisor/@RegimenFiscal",
    "/Comprobante/Receptor/@Rfc",
    "/Comprobante/Receptor/@Nombre",
    "/Comprobante/Receptor/@DomicilioFiscalReceptor",
    "/Comprobante/Receptor/@RegimenFiscalReceptor",
    "/Comprobante/Receptor/@UsoCFDI",
    "/Comprobante/Conceptos/Concepto",
)


class TransformSpec(BaseModel):
    """Hoja XSLT de una versión de CFDI y lo que exige del documento."""
    version: str
    filename: str
    digest: str = "sha256"
    required_fields: Tuple[str, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)


DEFAULT_TRANSFORMS = (
    TransformSpec(version="4.0", filename="cadenaoriginal_4_0.xslt", required_fields=CFDI_40_REQUIRED_FIELDS),
)


class TransformRegistry:
    """
    Registro de las XSLT de cadena original por versión. Cada hoja se compila
    una sola vez y se reutiliza; `reload()` descarta lo compilado. Con
    `hot_reload=True` (desarrollo) la hoja se vuelve a leer en cada llamada.
    """

    def __init__(self, transforms_dir: str, specs: Iterable[TransformSpec] = DEFAULT_TRANSFORMS, hot_reload: bool = False):
        self.transforms_dir = transforms_dir
        self.hot_reload = hot_reload
        self._specs: Dict[str, TransformSpec] = {spec.version: spec for spec in specs}
        self._compiled: Dict[str, etree.XSLT] = {}
        self._lock = threading.Lock()

    def versions(self) -> Tuple[str, ...]:
        return tuple(sorted(self._specs))

    def spec_for(self, version: str) -> TransformSpec:
        spec = self._specs.get(version)
        if spec is None:
            raise CanonicalizationError(f"No hay XSLT registrada para la versión de CFDI {version}")
        return spec

    def get(self, version: str) -> etree.XSLT:
        spec = self.spec_for(version)
        if self.hot_reload:
            return self._compile(spec)
        with self._lock:
            transform = self._compiled.get(version)
            if transform is None:
                transform = self._compile(spec)
                self._compiled[version] = transform
            return transform

    def reload(self, version: Optional[str] = None) -> None:
        with self._lock:
            if version is None:
                self._compiled.clear()
            else:
                self._compiled.pop(version, None)
        logger.info(f"XSLT descartadas para recarga: {version or 'todas'}")

    def _compile(self, spec: TransformSpec) -> etree.XSLT:
        path = os.path.join(self.transforms_dir, spec.filename)
        if not os.path.isfile(path):
            raise CanonicalizationError(f"No se encontró la XSLT de la versión {spec.version}: {path}")
        try:
            logger.info(f"Compilando XSLT {spec.filename} (versión {spec.version})")
            return etree.XSLT(etree.parse(path))
        except (etree.XMLSyntaxError, etree.XSLTParseError) as e:
            raise CanonicalizationError(f"La XSLT de la versión {spec.version} no pudo cargarse: {e}") from e
