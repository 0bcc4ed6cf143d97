"""
Tests for logging setup.
"""

import logging

from hotel_pricing.utils.logger import setup_logging


class TestSetupLogging:
    """Test the root logger configuration."""

    def setup_method(self):
        """Detach existing root handlers."""
        self.root = logging.getLogger()
        self.saved_handlers = self.root.handlers[:]
        self.saved_level = self.root.level
        self.root.handlers = []

    def teardown_method(self):
        """Restore root handlers."""
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)

    def test_configures_single_handler(self):
        """Test that one stream handler is installed at the given level."""
        setup_logging("debug")

        assert len(self.root.handlers) == 1
        assert self.root.level == logging.DEBUG
        assert logging.getLogger("urllib3").level == logging.WARNING

    def test_repeated_calls_are_idempotent(self):
        """Test that calling twice does not duplicate handlers."""
        setup_logging()
        setup_logging("DEBUG")

        assert len(self.root.handlers) == 1
        assert self.root.level == logging.INFO
