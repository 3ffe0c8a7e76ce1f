import os
import tempfile
import unittest

from app import db


class TechnicianDbTests(unittest.TestCase):
    def setUp(self):
        fd, path = tempfile.mkstemp(prefix="tech_", suffix=".db")
        os.close(fd)
        self.temp_db_path = path
        self.old_db_path = db.DB_PATH
        db.DB_PATH = self.temp_db_path
        db.init_db()

    def tearDown(self):
        db.DB_PATH = self.old_db_path
        try:
            os.remove(self.temp_db_path)
        except OSError:
            pass

    def test_create_and_list_active_technicians(self):
        created = db.create_technician("  Tecnico@Empresa.com ")
        self.assertGreater(created["id"], 0)
        self.assertEqual(created["email"], "Tecnico@Empresa.com")
        self.assertTrue(created["activo"])
        self.assertTrue(created["fecha"])

        rows = db.technicians()
        self.assertEqual([r["id"] for r in rows], [created["id"]])
        self.assertEqual(db.technician(created["id"])["email"], "Tecnico@Empresa.com")

    def test_lookup_by_email_is_case_insensitive_and_ignores_inactive(self):
        created = db.create_technician("Tecnico@Empresa.com")
        self.assertIsNotNone(db.technician_by_email("tecnico@empresa.com"))
        self.assertIsNone(db.technician_by_email(None))
        self.assertIsNone(db.technician_by_email(""))

        db.update_technician(created["id"], activo=False)
        self.assertIsNone(db.technician_by_email("tecnico@empresa.com"))
        self.assertIsNone(db.technician(created["id"]))
        self.assertEqual(db.technicians(), [])

    def test_update_returns_row_even_when_deactivated(self):
        created = db.create_technician("a@b.com")
        updated = db.update_technician(created["id"], email="c@d.com", activo=False)
        self.assertEqual(updated["email"], "c@d.com")
        self.assertFalse(updated["activo"])

        unchanged = db.update_technician(created["id"])
        self.assertEqual(unchanged["email"], "c@d.com")

    def test_update_requires_id(self):
        with self.assertRaises(ValueError):
            db.update_technician(None, email="x@y.com")

    def test_delete_returns_affected_rows(self):
        created = db.create_technician("a@b.com")
        self.assertEqual(db.delete_technician(created["id"]), 1)
        self.assertEqual(db.delete_technician(created["id"]), 0)

    def test_health(self):
        self.assertTrue(db.db_health())


class ChatLogDbTests(unittest.TestCase):
    def setUp(self):
        fd, path = tempfile.mkstemp(prefix="logs_", suffix=".db")
        os.close(fd)
        self.temp_db_path = path
        self.old_db_path = db.DB_PATH
        db.DB_PATH = self.temp_db_path
        db.init_db()

    def tearDown(self):
        db.DB_PATH = self.old_db_path
        try:
            os.remove(self.temp_db_path)
        except OSError:
            pass

    def test_json_messages_are_decoded(self):
        created = db.create_log('{"command": "/ticket"}')
        self.assertEqual(created["txt"], {"command": "/ticket"})

        rows = db.logs()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["txt"], {"command": "/ticket"})

    def test_plain_text_is_kept(self):
        db.create_log("texto livre")
        self.assertEqual(db.logs()[0]["txt"], "texto livre")


if __name__ == "__main__":
    unittest.main()
