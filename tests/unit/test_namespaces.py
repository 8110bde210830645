# tests/unit/test_namespaces.py
"""
Pruebas de la limpieza de namespaces previa a la XSLT.
"""
from lxml import etree

from timbrado.infrastructure.xml.namespaces import strip_namespaces

CFDI_XML = (
    b'<?xml version="1.0" encoding="UTF-8"?>'
    b'<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" '
    b'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
    b'xmlns:pago20="http://www.sat.gob.mx/Pagos20" '
    b'xsi:schemaLocation="http://www.sat.gob.mx/cfd/4 cfdv40.xsd" Version="4.0" Total="0">'
    b'<cfdi:Emisor Rfc="AAA010101AAA"/>'
    b'<cfdi:Complemento><pago20:Pagos Version="2.0"><pago20:Pago Monto="10.00"/></pago20:Pagos></cfdi:Complemento>'
    b'</cfdi:Comprobante>'
)


class TestStripNamespaces:
    def test_removes_prefixes_and_declarations(self):
        root = etree.fromstring(strip_namespaces(CFDI_XML))

        assert root.tag == "Comprobante"
        assert root.nsmap == {}
        assert [child.tag for child in root] == ["Emisor", "Complemento"]
        assert root.find("Complemento/Pagos/Pago").get("Monto") == "10.00"

    def test_drops_xsi_attributes_but_keeps_the_rest(self):
        root = etree.fromstring(strip_namespaces(CFDI_XML))

        assert root.get("Version") == "4.0"
        assert root.get("Total") == "0"
        assert "schemaLocation" not in root.attrib

    def test_is_idempotent(self):
        once = strip_namespaces(CFDI_XML)
        assert strip_namespaces(once) == once

    def test_preserves_text_and_order(self):
        xml = b'<a:raiz xmlns:a="urn:a"><a:uno>x</a:uno><a:dos>y</a:dos></a:raiz>'
        root = etree.fromstring(strip_namespaces(xml))
        assert [(child.tag, child.text) for child in root] == [("uno", "x"), ("dos", "y")]
