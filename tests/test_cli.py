#!/usr/bin/env python3
"""
Unit tests for command-line wiring.

- Log level from configuration and the -v override
- Negotiation timeout for copy/paste sessions
"""

import logging
import os
import unittest
from unittest.mock import patch

from click.testing import CliRunner

from orbitdrop.cli import MANUAL_NEGOTIATION_TIMEOUT, cli, run_session, setup_logging
from orbitdrop.config import Config


class TestLogging(unittest.TestCase):

    def test_configured_level(self):
        with patch('orbitdrop.cli.logging.basicConfig') as basic_config:
            setup_logging(False, 'warning')
        self.assertEqual(basic_config.call_args.kwargs['level'], 'WARNING')

    def test_verbose_overrides_level(self):
        with patch('orbitdrop.cli.logging.basicConfig') as basic_config:
            setup_logging(True, 'ERROR')
        self.assertEqual(basic_config.call_args.kwargs['level'], logging.DEBUG)

    def test_cli_reads_level_from_environment(self):
        runner = CliRunner()
        with runner.isolated_filesystem(), \
                patch.dict(os.environ, {'ORBIT_LOG_LEVEL': 'WARNING'}), \
                patch('orbitdrop.cli.setup_logging') as setup:
            result = runner.invoke(cli, ['--data-dir', 'data', 'history'])

        self.assertEqual(result.exit_code, 0, result.output)
        setup.assert_called_once_with(False, 'WARNING')


class TestSessionTimeouts(unittest.TestCase):

    def run_session(self, config, manual):
        # Only the setup before the event loop starts is of interest here
        with patch('orbitdrop.cli.asyncio.run', side_effect=lambda coro: coro.close()):
            run_session(config, None, None, (), manual, None, 120.0)

    def test_manual_session_extends_negotiation_timeout(self):
        config = Config()
        self.run_session(config, manual=True)
        self.assertEqual(config.negotiation_timeout, MANUAL_NEGOTIATION_TIMEOUT)

    def test_longer_configured_timeout_is_kept(self):
        config = Config(negotiation_timeout=600.0)
        self.run_session(config, manual=True)
        self.assertEqual(config.negotiation_timeout, 600.0)

    def test_broadcast_session_keeps_timeout(self):
        config = Config()
        self.run_session(config, manual=False)
        self.assertEqual(config.negotiation_timeout, 30.0)


if __name__ == '__main__':
    unittest.main()
