import os
import unittest
from unittest.mock import patch

from app.config import Settings


class SettingsTests(unittest.TestCase):
    def test_defaults_and_parsing(self):
        env = {
            "API_ENDPOINT": "https://rt.example.com/",
            "AAD_APP_TENANT_ID": "tenant-1",
            "AAD_APP_SCOPES": "User.Read, ChannelMessage.Read.All ,",
            "ALLOW_ALL": "true",
            "PORT": "8080",
        }
        with patch.dict(os.environ, env, clear=True):
            s = Settings()
        self.assertEqual(s.api_endpoint, "https://rt.example.com")
        self.assertEqual(s.authority, "https://login.microsoftonline.com/tenant-1")
        self.assertEqual(s.scopes, ["User.Read", "ChannelMessage.Read.All"])
        self.assertTrue(s.allow_all)
        self.assertEqual(s.port, 8080)
        self.assertEqual(s.db_path, "ticketbot.db")
        self.assertEqual(s.bot_type, "MultiTenant")

    def test_safe_dict_masks_secrets(self):
        env = {"BOT_PASSWORD": "p", "JWT_SECRET": "s", "API_USERNAME": "svc"}
        with patch.dict(os.environ, env, clear=True):
            masked = Settings().safe_dict()
        self.assertEqual(masked["bot_password"], "****")
        self.assertEqual(masked["jwt_secret"], "****")
        self.assertEqual(masked["api_username"], "svc")
        self.assertEqual(masked["api_password"], "")


if __name__ == "__main__":
    unittest.main()
