"""Logging setup and the run/exit-code wrapper shared by every job."""
import json
import logging
import os
import time
from typing import Callable, List, Mapping, Optional

import requests

from clients.airtable_client import AirtableClient
from clients.http_retry import HttpStatusError
from clients.mtek_client import MarianaTekClient
from config import ApiConfig, ConfigError, get_env
from processor.models import JobResult, RecordSkipped

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Per-record failures: counted and logged, the run continues.
RECORD_ERRORS = (RecordSkipped, HttpStatusError, requests.RequestException)

JobExecutor = Callable[[Mapping[str, str], List[str]], JobResult]


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any extra= fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def make_airtable(api: ApiConfig, base_id: Optional[str] = None) -> AirtableClient:
    return AirtableClient(
        api.airtable_token,
        base_id or api.airtable_base_id,
        timeout=api.request_timeout,
    )


def make_mtek(api: ApiConfig) -> MarianaTekClient:
    if not api.mtek_token:
        raise ConfigError("Missing env var: MTEK_API_TOKEN")
    return MarianaTekClient(
        api.mtek_token,
        api.mtek_base_url,
        timeout=api.request_timeout,
        max_attempts=api.mtek_max_attempts,
    )


def run_job(
    name: str,
    execute: JobExecutor,
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    *,
    fail_on_record_errors: bool = False,
) -> int:
    """
    Run one job and translate its outcome into a process exit code.

    Args:
        name: Job name for logs
        execute: Callable building config from the environment and running the job
        argv: Positional arguments after the job name
        environ: Environment mapping (defaults to os.environ)
        fail_on_record_errors: Exit non-zero when any record errored

    Returns:
        0 on success, 1 on fatal error, 2 on configuration error
    """
    environ = os.environ if environ is None else environ
    setup_logging(get_env(environ, 'LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(f"Job {name} started", extra={'job': name})

    try:
        result = execute(environ, list(argv or []))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", extra={'job': name})
        return EXIT_CONFIG
    except Exception as e:
        logger.error(
            f"Job {name} failed: {e}",
            extra={
                'job': name,
                'error_type': type(e).__name__,
                'duration_seconds': round(time.time() - start_time, 2)
            },
            exc_info=True
        )
        return EXIT_FAILED

    logger.info(
        result.summary(),
        extra={
            'job': name,
            'counts': result.counts,
            'issues': len(result.issues),
            'duration_seconds': round(time.time() - start_time, 2)
        }
    )
    if fail_on_record_errors and result.failed:
        return EXIT_FAILED
    return EXIT_OK
