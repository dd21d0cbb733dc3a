#!/usr/bin/env python3
"""
Configuration Tests for kasmos
Tests config directory resolution, validation and logging setup.
"""

import logging
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).parent))

from kasmos.core.errors import ValidationError
from kasmos.utils import log
from kasmos.utils.config_loader import CONFIG_DIR_ENV, ConfigLoader, KasmosConfig, get_config_dir


class TestConfigDir(unittest.TestCase):
    """Test configuration directory resolution and legacy migration"""

    def setUp(self):
        self.home = Path(tempfile.mkdtemp())
        self.home_patch = patch("pathlib.Path.home", return_value=self.home)
        self.home_patch.start()
        self.env_patch = patch.dict(os.environ)
        self.env_patch.start()
        os.environ.pop(CONFIG_DIR_ENV, None)

    def tearDown(self):
        self.env_patch.stop()
        self.home_patch.stop()
        shutil.rmtree(self.home)

    def test_environment_override(self):
        os.environ[CONFIG_DIR_ENV] = str(self.home / "custom")
        self.assertEqual(get_config_dir(), self.home / "custom")

    def test_default_location(self):
        self.assertEqual(get_config_dir(), self.home / ".config" / "kasmos")

    def test_legacy_directory_migrated(self):
        legacy = self.home / ".klique"
        legacy.mkdir()
        (legacy / "instances.json").write_text("{}")

        config_dir = get_config_dir()

        self.assertEqual(config_dir, self.home / ".config" / "kasmos")
        self.assertTrue((config_dir / "instances.json").exists())
        self.assertFalse(legacy.exists())

    def test_existing_directory_wins_over_legacy(self):
        (self.home / ".config" / "kasmos").mkdir(parents=True)
        (self.home / ".hivemind").mkdir()

        self.assertEqual(get_config_dir(), self.home / ".config" / "kasmos")
        self.assertTrue((self.home / ".hivemind").exists())

    def test_failed_migration_uses_legacy(self):
        legacy = self.home / ".hivemind"
        legacy.mkdir()

        with patch.object(Path, "rename", side_effect=OSError("cross-device link")):
            self.assertEqual(get_config_dir(), legacy)


class TestKasmosConfig(unittest.TestCase):
    """Test loading and validation of config.yaml"""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def write_config(self, data):
        with open(self.test_dir / "config.yaml", 'w') as f:
            yaml.safe_dump(data, f)

    def test_defaults_without_file(self):
        config = KasmosConfig.load(self.test_dir)

        self.assertEqual(config.default_program, "claude")
        self.assertFalse(config.auto_yes)
        self.assertEqual(config.metadata_tick_ms, 500)
        self.assertEqual(config.state_file, self.test_dir / "instances.json")

    def test_values_from_yaml(self):
        self.write_config({
            "default_program": "aider",
            "auto_yes": True,
            "branch_prefix": "dev/",
            "worker_pool_size": 8,
            "logging": {"level": "DEBUG"},
        })

        config = KasmosConfig.load(self.test_dir)

        self.assertEqual(config.default_program, "aider")
        self.assertTrue(config.auto_yes)
        self.assertEqual(config.branch_prefix, "dev/")
        self.assertEqual(config.worker_pool_size, 8)
        self.assertEqual(config.log_level, "DEBUG")
        self.assertEqual(config.log_file, "")

    def test_out_of_range_rejected(self):
        self.write_config({"metadata_tick_ms": 5})

        with self.assertRaises(ValidationError) as ctx:
            KasmosConfig.load(self.test_dir)
        self.assertIn("metadata_tick_ms", str(ctx.exception))

    def test_wrong_type_rejected(self):
        self.write_config({"auto_yes": "sometimes"})
        with self.assertRaises(ValidationError):
            KasmosConfig.load(self.test_dir)

    def test_bool_is_not_an_int(self):
        self.write_config({"worker_pool_size": True})
        with self.assertRaises(ValidationError):
            KasmosConfig.load(self.test_dir)

    def test_resource_backend(self):
        self.write_config({"resource_backend": "psutil"})
        self.assertEqual(KasmosConfig.load(self.test_dir).resource_backend, "psutil")

        self.write_config({"resource_backend": "procfs"})
        with self.assertRaises(ValidationError):
            KasmosConfig.load(self.test_dir)

    def test_unknown_log_level_rejected(self):
        self.write_config({"logging": {"level": "LOUD"}})
        with self.assertRaises(ValidationError):
            KasmosConfig.load(self.test_dir)

    def test_environment_substitution(self):
        self.write_config({"default_program": "${KASMOS_TEST_AGENT} --model fast"})

        with patch.dict(os.environ, {"KASMOS_TEST_AGENT": "codex"}):
            config = KasmosConfig.load(self.test_dir)

        self.assertEqual(config.default_program, "codex --model fast")

    def test_json_config(self):
        (self.test_dir / "config.json").write_text('{"branch_prefix": "j/"}')

        self.assertEqual(KasmosConfig.load(self.test_dir).branch_prefix, "j/")

    def test_non_mapping_rejected(self):
        (self.test_dir / "config.yaml").write_text("- just\n- a list\n")
        loader = ConfigLoader(self.test_dir)

        self.assertIsNone(loader.load_config("config", "kasmos"))
        self.assertEqual(loader.last_errors, ["config must contain a mapping"])

    def test_dumps_round_trips_through_from_dict(self):
        config = KasmosConfig(default_program="gemini", log_level="WARNING")
        data = yaml.safe_load(config.dumps())
        self.assertEqual(KasmosConfig.from_dict(data), config)


class TestLogging(unittest.TestCase):
    """Test log file initialization"""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.root = logging.getLogger()
        self.saved_handlers = self.root.handlers[:]
        self.saved_level = self.root.level

    def tearDown(self):
        for handler in self.root.handlers:
            handler.close()
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)
        shutil.rmtree(self.test_dir)

    def test_records_go_to_file(self):
        path = log.initialize("DEBUG", str(self.test_dir / "logs" / "kasmos.log"))

        logging.getLogger("kasmos.test").info("hello from the test")
        for handler in self.root.handlers:
            handler.flush()

        self.assertIn("hello from the test", path.read_text())
        self.assertEqual(self.root.level, logging.DEBUG)

    def test_default_log_file(self):
        with patch("kasmos.utils.log.tempfile.gettempdir", return_value=str(self.test_dir)):
            path = log.initialize("info")
        self.assertEqual(path, self.test_dir / "kasmos.log")
        self.assertEqual(self.root.level, logging.INFO)


if __name__ == '__main__':
    unittest.main()
