# tests/unit/test_keyed_lock.py
"""
Pruebas de los candados por llave que usan el orquestador y el almacén de CSD.
"""
import threading

from timbrado.application.services.keyed_lock import KeyedLock, KeyedReadWriteLock


class TestKeyedLock:
    def test_unused_keys_are_released(self):
        locks = KeyedLock()
        with locks.hold("FAC-1"):
            assert "FAC-1" in locks._locks
        assert locks._locks == {}


class TestKeyedReadWriteLock:
    def test_unused_keys_are_released(self):
        locks = KeyedReadWriteLock()
        with locks.read("AAA010101AAA"):
            with locks.read("AAA010101AAA"):
                assert len(locks) == 1
        with locks.write("BBB020202BBB"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_readers_of_the_same_key_do_not_block_each_other(self):
        locks = KeyedReadWriteLock()
        inside = threading.Event()
        errors = []

        def second_reader():
            with locks.read("AAA010101AAA"):
                inside.set()

        with locks.read("AAA010101AAA"):
            thread = threading.Thread(target=second_reader)
            thread.start()
            if not inside.wait(2):
                errors.append("la segunda lectura quedó bloqueada")
            thread.join()

        assert errors == []

    def test_a_write_excludes_readers_of_the_same_key(self):
        locks = KeyedReadWriteLock()
        entered = threading.Event()

        def reader():
            with locks.read("AAA010101AAA"):
                entered.set()

        with locks.write("AAA010101AAA"):
            thread = threading.Thread(target=reader)
            thread.start()
            assert entered.wait(0.2) is False
        thread.join(2)

        assert entered.is_set()
        assert len(locks) == 0
