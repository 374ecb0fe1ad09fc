"""Tests for logging setup and the Postmark alert handler."""

import logging
from unittest.mock import Mock, patch

import requests

from src.logger import NOISY_LOGGERS, PostmarkHandler, setup_logging


class TestPostmarkHandler:
    """Tests for PostmarkHandler.emit()."""

    def make_record(self):
        return logging.LogRecord("src.cover_art.pipeline", logging.ERROR, __file__, 1,
                                 "Generation failed for 'Mix': boom", None, None)

    def test_posts_email(self):
        handler = PostmarkHandler("token", "from@example.com", ["a@example.com", "b@example.com"], "Alert")

        with patch("src.logger.requests.post") as post:
            post.return_value = Mock(raise_for_status=Mock())
            handler.emit(self.make_record())

        kwargs = post.call_args.kwargs
        assert kwargs["json"]["To"] == "a@example.com,b@example.com"
        assert kwargs["json"]["Subject"] == "Alert: src.cover_art.pipeline"
        assert "boom" in kwargs["json"]["TextBody"]
        assert kwargs["headers"]["X-Postmark-Server-Token"] == "token"

    def test_delivery_failure_is_handled(self):
        handler = PostmarkHandler("token", "from@example.com", ["a@example.com"], "Alert")
        handler.handleError = Mock()

        with patch("src.logger.requests.post", side_effect=requests.ConnectionError("down")):
            handler.emit(self.make_record())

        handler.handleError.assert_called_once()


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_level_override_and_quiet_third_parties(self):
        root = logging.getLogger()
        previous = root.level
        try:
            setup_logging("DEBUG")

            assert root.level == logging.DEBUG
            for name in NOISY_LOGGERS:
                assert logging.getLogger(name).level == logging.WARNING
        finally:
            root.setLevel(previous)
