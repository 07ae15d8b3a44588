#!/usr/bin/env python3
"""
Unit Tests for Logging Configuration
===================================

Test Coverage:
- Level resolution from numbers, names and invalid values
- SUBCORR_LOG_LEVEL override
- Colored level names without side effects on the record

Usage:
    python -m pytest tests/utilities/test_logging_config.py
"""

import io
import logging
import unittest
from unittest.mock import patch

from subcorr.utilities.logging_config import (
    LOG_LEVEL_ENV,
    ColoredFormatter,
    color_supported,
    resolve_level,
    setup_logging,
)


class TestResolveLevel(unittest.TestCase):
    def test_numbers_and_names(self):
        self.assertEqual(resolve_level(10), logging.DEBUG)
        self.assertEqual(resolve_level("30"), logging.WARNING)
        self.assertEqual(resolve_level(" error "), logging.ERROR)

    def test_invalid_falls_back_to_info(self):
        with patch("sys.stderr", new_callable=io.StringIO) as stderr:
            self.assertEqual(resolve_level("chatty"), logging.INFO)
        self.assertIn("chatty", stderr.getvalue())


class TestSetupLogging(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self.saved = (root.level, list(root.handlers))

    def tearDown(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        level, handlers = self.saved
        root.setLevel(level)
        for handler in handlers:
            root.addHandler(handler)

    def test_environment_override(self):
        with patch.dict("os.environ", {LOG_LEVEL_ENV: "DEBUG"}):
            setup_logging(logging.INFO, use_color=False)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_single_handler_after_repeated_calls(self):
        setup_logging("WARNING", use_color=False)
        setup_logging("WARNING", use_color=False)
        self.assertEqual(len(logging.getLogger().handlers), 1)


def test_colored_formatter_restores_level_name():
    formatter = ColoredFormatter("[%(levelname)s] %(message)s", use_color=True)
    record = logging.LogRecord("x", logging.WARNING, __file__, 1, "careful", None, None)
    text = formatter.format(record)
    assert "\033[33mWARNING\033[0m" in text
    assert record.levelname == "WARNING"


def test_plain_formatter():
    formatter = ColoredFormatter("[%(levelname)s] %(message)s", use_color=False)
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)
    assert formatter.format(record) == "[INFO] hello"


def test_no_color_environment():
    with patch.dict("os.environ", {"NO_COLOR": "1"}):
        assert not color_supported(io.StringIO())
