import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional

import requests
import colorlog

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ('httpx', 'httpcore', 'openai', 'botocore', 'boto3', 'urllib3', 'PIL')


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the centralised logging settings.

    Args:
        level: Overrides DISC_LOG_LEVEL when given (e.g. from the --log-level flag).
    """
    log_level = (level or os.getenv('DISC_LOG_LEVEL', 'INFO')).upper()
    log_file = os.getenv('DISC_LOG_FILE')
    max_bytes = int(os.getenv('LOG_FILE_MAX_BYTES', '10485760'))  # 10 MB
    backup_count = int(os.getenv('LOG_FILE_BACKUP_COUNT', '5'))
    postmark_api_token = os.getenv('POSTMARK_API_TOKEN')
    postmark_sender_email = os.getenv('POSTMARK_SENDER_EMAIL')
    postmark_receiver_emails = os.getenv('POSTMARK_RECEIVER_EMAILS')
    postmark_alert_subject = os.getenv('POSTMARK_ALERT_SUBJECT', 'Cover art pipeline failure')

    logger = logging.getLogger()
    logger.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logger.level))

    if logger.hasHandlers():
        return

    console_handler = logging.StreamHandler()
    console_formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        log_colors={
            'DEBUG': 'bold_blue',
            'INFO': 'bold_green',
            'WARNING': 'bold_yellow',
            'ERROR': 'bold_red',
            'CRITICAL': 'bold_purple'
        }
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s - (%(filename)s:%(lineno)d)'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    if postmark_api_token and postmark_sender_email and postmark_receiver_emails:
        postmark_handler = PostmarkHandler(
            api_token=postmark_api_token,
            sender_email=postmark_sender_email,
            receiver_emails=[e.strip() for e in postmark_receiver_emails.split(',') if e.strip()],
            subject=postmark_alert_subject
        )
        postmark_handler.setLevel(logging.ERROR)
        logger.addHandler(postmark_handler)


class PostmarkHandler(logging.Handler):
    """Sends ERROR records (failed generations, failed jobs) as Postmark emails."""

    def __init__(self, api_token: str, sender_email: str, receiver_emails: List[str], subject: str) -> None:
        """
        Initialize the handler.

        Args:
            api_token: Postmark server token.
            sender_email: Sender email address.
            receiver_emails: Receiver email addresses.
            subject: Subject line for the alert emails.
        """
        super().__init__()
        self.api_token = api_token
        self.sender_email = sender_email
        self.receiver_emails = receiver_emails
        self.subject = subject

    def emit(self, record: logging.LogRecord) -> None:
        log_entry = self.format(record)
        payload = {
            'From': self.sender_email,
            'To': ','.join(self.receiver_emails),
            'Subject': f"{self.subject}: {record.name}",
            'TextBody': log_entry
        }
        headers = {
            'X-Postmark-Server-Token': self.api_token,
            'Content-Type': 'application/json'
        }
        try:
            response = requests.post(
                'https://api.postmarkapp.com/email', json=payload, headers=headers, timeout=10
            )
            response.raise_for_status()
        except requests.RequestException:
            self.handleError(record)
