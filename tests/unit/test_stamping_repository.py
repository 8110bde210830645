# tests/unit/test_stamping_repository.py
"""
Pruebas del repositorio SQLAlchemy de timbres sobre SQLite temporal.
"""
from datetime import timedelta

from tests.conftest import STAMP_UUID, make_stamp


class TestFiscalStamps:
    def test_dates_come_back_in_utc(self, stamping_repository):
        stamping_repository.save_stamp("llave-1", make_stamp())

        stored = stamping_repository.find_stamp("llave-1")

        assert stored.uuid == STAMP_UUID
        assert stored.issued_at.utcoffset() == timedelta(0)
        assert stored.issued_at == make_stamp().issued_at

    def test_unknown_key(self, stamping_repository):
        assert stamping_repository.find_stamp("sin-timbre") is None
