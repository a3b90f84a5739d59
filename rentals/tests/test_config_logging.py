import json
import logging
import os
import unittest
from unittest.mock import patch

from rentals.config import Settings, normalize_currency
from rentals.errors import ConfigurationError
from rentals.logging import ContextFilter, JsonFormatter, setup_logging


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.base_currency, "USD")
        self.assertEqual(settings.local_currency, "ARS")
        self.assertEqual(settings.notify_look_ahead_days, 7)
        self.assertEqual(settings.notify_look_behind_days, 15)
        self.assertIsNone(settings.cron_secret)

    def test_reads_environment(self) -> None:
        env = {
            "DATABASE_URL": "postgresql+psycopg://localhost/rentals",
            "BASE_CURRENCY": "eur",
            "NOTIFY_LOOK_AHEAD_DAYS": "10",
            "CRON_SECRET": "s3cret",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, "postgresql+psycopg://localhost/rentals")
        self.assertEqual(settings.base_currency, "EUR")
        self.assertEqual(settings.notify_look_ahead_days, 10)
        self.assertEqual(settings.cron_secret, "s3cret")

    def test_invalid_currency_falls_back_to_default(self) -> None:
        with patch.dict(os.environ, {"LOCAL_CURRENCY": "pesos"}, clear=True):
            self.assertEqual(Settings.from_env().local_currency, "ARS")

    def test_invalid_window_is_a_configuration_error(self) -> None:
        with patch.dict(os.environ, {"NOTIFY_LOOK_BEHIND_DAYS": "two weeks"}, clear=True):
            with self.assertRaises(ConfigurationError):
                Settings.from_env()
        with patch.dict(os.environ, {"NOTIFY_LOOK_BEHIND_DAYS": "-1"}, clear=True):
            with self.assertRaises(ConfigurationError):
                Settings.from_env()

    def test_normalize_currency(self) -> None:
        self.assertEqual(normalize_currency(" ars "), "ARS")
        with self.assertRaises(ValueError):
            normalize_currency("AR$")


class LoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self.saved_handlers = root.handlers[:]
        self.saved_level = root.level

    def tearDown(self) -> None:
        root = logging.getLogger()
        root.handlers[:] = self.saved_handlers
        root.setLevel(self.saved_level)

    def test_json_formatter_includes_contract_id(self) -> None:
        record = logging.LogRecord(
            "rentals.service", logging.WARNING, __file__, 1, "rent frozen at %s", ("100",), None
        )
        record.contract_id = 7

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["level"], "WARNING")
        self.assertEqual(payload["logger"], "rentals.service")
        self.assertEqual(payload["message"], "rent frozen at 100")
        self.assertEqual(payload["contract_id"], 7)

    def test_context_filter_renders_a_prefix(self) -> None:
        record = logging.LogRecord(
            "rentals.notifier", logging.INFO, __file__, 1, "notified", (), None
        )
        record.contract_id = 7
        record.boundary_date = "2024-04-01"
        plain = logging.LogRecord("sqlalchemy.engine", logging.INFO, __file__, 1, "select", (), None)

        self.assertTrue(ContextFilter().filter(record))
        ContextFilter().filter(plain)

        self.assertEqual(record.context, "[contract_id=7 boundary_date=2024-04-01] ")
        self.assertEqual(plain.context, "")

    def test_setup_logging_installs_one_stdout_handler(self) -> None:
        setup_logging("debug", "json")

        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0].formatter, JsonFormatter)
        self.assertEqual(root.level, logging.DEBUG)
        self.assertEqual(logging.getLogger("sqlalchemy").level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
