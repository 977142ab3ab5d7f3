"""Tests for configuration loading."""
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from quorum.config import Config, _deep_merge, load_config


class TestConfig(unittest.TestCase):
    def test_deep_merge(self):
        merged = _deep_merge({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"c": 3}, "e": 4})
        self.assertEqual(merged, {"a": {"b": 1, "c": 3}, "d": 1, "e": 4})

    def test_defaults_load(self):
        with patch.dict(os.environ, {}, clear=False):
            config = Config(load_config(Path("/nonexistent/quorum.yaml")))
        self.assertIn("gemini-flash", config.provider_ids)
        self.assertEqual(config.mapper, "gemini-pro")

    def test_user_override_and_env(self):
        with tempfile.TemporaryDirectory() as tmp:
            user = Path(tmp) / "config.yaml"
            user.write_text("workflow:\n  max_retries: 5\nserver:\n  port: 9000\n")
            env = {"QUORUM_PORT": "9100", "QUORUM_DATA_DIR": tmp, "QUORUM_MAPPER": "llama"}
            with patch.dict(os.environ, env):
                config = Config(load_config(user))
        self.assertEqual(config.max_retries, 5)
        self.assertEqual(config.server["port"], 9100)
        self.assertEqual(config.data_dir, Path(tmp))
        self.assertEqual(config.mapper, "llama")

    def test_bad_int_env_is_ignored(self):
        with patch.dict(os.environ, {"QUORUM_PROVIDER_TIMEOUT": "soon"}):
            config = Config(load_config(Path("/nonexistent/quorum.yaml")))
        self.assertEqual(config.provider_timeout_seconds, 120.0)

    def test_provider_limits(self):
        config = Config({"providers": [{"id": "a", "max_input_chars": 10}, {"id": "b"}]})
        self.assertEqual(config.provider_limits(), {"a": 10})


if __name__ == "__main__":
    unittest.main()
