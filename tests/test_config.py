#!/usr/bin/env python3
"""
Unit tests for configuration loading.

- Defaults and derived paths
- Environment variables, JSON files and their precedence
"""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from orbitdrop.config import CHUNK_SIZE, HIGH_WATER_MARK, LOW_WATER_MARK, Config, load_config


class TestConfig(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_path = Path(tmp.name)

    def test_defaults(self):
        config = Config()
        self.assertEqual(CHUNK_SIZE, 16384)
        self.assertEqual(HIGH_WATER_MARK, 2097152)
        self.assertEqual(config.low_water_mark, LOW_WATER_MARK)
        self.assertEqual(config.negotiation_timeout, 30.0)
        self.assertEqual(config.received_dir, Path('./orbit_data') / 'received')
        self.assertEqual(config.history_path, Path('./orbit_data') / 'history.db')

    def test_download_dir_override(self):
        config = Config(data_dir=self.tmp_path, download_dir=self.tmp_path / "inbox")
        self.assertEqual(config.received_dir, self.tmp_path / "inbox")

    def test_watermarks_must_be_ordered(self):
        with self.assertRaises(ValueError):
            Config(high_water_mark=1024, low_water_mark=1024)

    def test_from_env(self):
        env = {
            'ORBIT_PORT': '9100',
            'ORBIT_DATA_DIR': str(self.tmp_path),
            'ORBIT_NEGOTIATION_TIMEOUT': '12.5',
        }
        with patch.dict(os.environ, env):
            config = Config.from_env()

        self.assertEqual(config.port, 9100)
        self.assertEqual(config.data_dir, self.tmp_path)
        self.assertEqual(config.negotiation_timeout, 12.5)

    def test_file_then_env(self):
        path = self.tmp_path / "config.json"
        path.write_text(json.dumps({'port': 9200, 'broadcast_port': 9300, 'history_limit': 10}))

        with patch.dict(os.environ, {'ORBIT_PORT': '9400'}):
            config = load_config(path)

        self.assertEqual(config.port, 9400)
        self.assertEqual(config.broadcast_port, 9300)
        self.assertEqual(config.history_limit, 10)

    def test_save_and_reload(self):
        path = self.tmp_path / "config.json"
        Config(port=9500, data_dir=self.tmp_path / "data").save(path)

        config = Config.from_file(path)
        self.assertEqual(config.port, 9500)
        self.assertEqual(config.data_dir, self.tmp_path / "data")

    def test_missing_file_gives_defaults(self):
        self.assertEqual(Config.from_file(self.tmp_path / "absent.json").port, 0)


if __name__ == '__main__':
    unittest.main()
