# tests/unit/test_error_catalog.py
from timbrado.domain.error_catalog import CANCELLATION_REASONS, GENERIC_ACTION, describe, extract_code, lookup


class TestExtractCode:
    def test_bracketed_code(self):
        assert extract_code("[CFDI40161] El RFC del receptor no existe") == "CFDI40161"

    def test_leading_numeric_code(self):
        assert extract_code("705 - Usuario no autorizado") == "705"

    def test_known_title_inside_the_message(self):
        assert extract_code("Error: Sello invalido en el comprobante") == "302"

    def test_nothing_to_extract(self):
        assert extract_code("algo salió mal") is None
        assert extract_code("") is None


class TestDescribe:
    def test_known_code(self):
        diagnostic = describe("CFDI40138")
        assert diagnostic.title == "Regimen fiscal incompatible"
        assert diagnostic.field == "UsoCFDI"

    def test_code_found_in_the_message(self):
        assert describe(None, "[720] CSD no registrados").code == "720"

    def test_unknown_code_gets_a_generic_diagnostic(self):
        diagnostic = describe("999", "Falla desconocida")
        assert diagnostic.code == "999"
        assert diagnostic.description == "Falla desconocida"
        assert diagnostic.action == GENERIC_ACTION

    def test_lookup_of_unknown_code(self):
        assert lookup("NOPE") is None
        assert lookup(None) is None


def test_cancellation_reasons_catalog():
    assert sorted(CANCELLATION_REASONS) == ["01", "02", "03", "04"]
