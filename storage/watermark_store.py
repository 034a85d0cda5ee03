"""Persistence for the reminder catch-up watermark."""
import json
import logging
import os
import tempfile
from typing import Mapping, Optional

import boto3
from botocore.exceptions import ClientError

from config import get_env
from processor.models import Watermark

logger = logging.getLogger(__name__)


class FileWatermarkStore:
    """
    Watermark kept in a small JSON file.

    Only one job instance may use a given file at a time; there is no
    locking around the read-modify-write.
    """

    def __init__(self, path: str):
        """
        Args:
            path: Location of the JSON state file
        """
        self.path = path

    def load(self) -> Watermark:
        """Read the watermark; a missing or unparsable file gives a fresh one."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info(f"No watermark file at {self.path}; starting fresh")
            return Watermark()
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable watermark file {self.path}: {e}; starting fresh")
            return Watermark()

        watermark = Watermark.from_dict(data)
        logger.info(
            f"Loaded watermark targetDate={watermark.target_date!r} "
            f"lastProcessedHour={watermark.last_processed_hour}"
        )
        return watermark

    def save(self, watermark: Watermark) -> None:
        """Write the watermark atomically (temp file, then replace)."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(watermark.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.info(f"Saved watermark {watermark.to_dict()} to {self.path}")


class DynamoDBWatermarkStore:
    """Watermark kept as one DynamoDB item per job, for runs without a durable disk."""

    def __init__(self, table_name: str, job_name: str):
        """
        Args:
            table_name: DynamoDB table with string hash key 'job_name'
            job_name: Key of the item holding this job's watermark
        """
        self.table_name = table_name
        self.job_name = job_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBWatermarkStore for table: {table_name}")

    def load(self) -> Watermark:
        try:
            response = self.table.get_item(Key={'job_name': self.job_name})
        except ClientError as e:
            logger.error(f"Error reading watermark from DynamoDB: {e}")
            raise

        item = response.get('Item')
        if not item:
            return Watermark()

        hour = item.get('lastProcessedHour')
        return Watermark.from_dict({
            'targetDate': item.get('targetDate'),
            # numbers come back as Decimal
            'lastProcessedHour': int(hour) if hour is not None else None,
        })

    def save(self, watermark: Watermark) -> None:
        item = {'job_name': self.job_name, **watermark.to_dict()}
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error(f"Error writing watermark to DynamoDB: {e}")
            raise
        logger.info(f"Saved watermark {watermark.to_dict()} for {self.job_name}")


def watermark_store_from_env(
    environ: Mapping[str, str], job_name: str, default_path: str
):
    """DynamoDB store when WATERMARK_TABLE is set, else a file at WATERMARK_PATH."""
    table_name: Optional[str] = get_env(environ, "WATERMARK_TABLE") or None
    if table_name:
        return DynamoDBWatermarkStore(table_name, job_name)
    return FileWatermarkStore(get_env(environ, "WATERMARK_PATH", default_path))
