from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from common.config import ENV_BACKUP_BUCKET, Settings
from common.errors import ConfigError, StorageError
from common.log import get_logger

from .conversation_store import ConversationStore


logger = get_logger("backup")

DEFAULT_PREFIX = "wingman/backups/"


@dataclass
class S3Location:
    bucket: str
    prefix: str


class S3BackupUploader:
    """
    Copies a local backup snapshot directory to S3.

    Usage
    - Provide a bucket and key prefix (from env or injected).
    - `upload_snapshot(path)` uploads every file of the snapshot under
      ``<prefix><snapshot-name>/<file-name>`` and returns the written keys.

    Segment files are uploaded byte-for-byte: they are already encrypted, so
    no key is needed here. contacts.json goes up as plaintext, exactly as it
    sits on disk.

    Environment variables (optional)
    - `WINGMAN_BACKUP_BUCKET`: S3 bucket for snapshots
    - `WINGMAN_BACKUP_PREFIX`: key prefix (default "wingman/backups/")
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = DEFAULT_PREFIX,
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        normalized = prefix.strip("/")
        self._loc = S3Location(bucket=bucket, prefix=f"{normalized}/" if normalized else "")

    # -------- Construction helpers --------
    @classmethod
    def from_settings(cls, settings: Settings, *, s3: Optional[object] = None) -> "S3BackupUploader":
        if not settings.backup_bucket:
            raise ConfigError(f"S3 backups need a bucket: set {ENV_BACKUP_BUCKET}")
        return cls(s3=s3, bucket=settings.backup_bucket, prefix=settings.backup_prefix)

    @classmethod
    def from_env(cls) -> "S3BackupUploader":
        return cls.from_settings(Settings.from_env())

    # -------- Core operations --------
    def key_for(self, snapshot_name: str, file_name: str) -> str:
        return f"{self._loc.prefix}{snapshot_name}/{file_name}"

    def upload_snapshot(self, snapshot_dir: Union[str, Path]) -> List[str]:
        """Upload every regular file in `snapshot_dir`; returns the S3 keys written.

        Raises:
        - StorageError if the directory is missing or any S3 call fails.
        """
        snapshot = Path(snapshot_dir)
        if not snapshot.is_dir():
            raise StorageError(f"Backup snapshot not found: {snapshot}")

        keys: List[str] = []
        for path in sorted(p for p in snapshot.iterdir() if p.is_file()):
            key = self.key_for(snapshot.name, path.name)
            content_type = "application/json" if path.suffix == ".json" else "application/octet-stream"
            try:
                self._s3.put_object(
                    Bucket=self._loc.bucket,
                    Key=key,
                    Body=path.read_bytes(),
                    ContentType=content_type,
                )
            except (ClientError, BotoCoreError, OSError) as e:
                raise StorageError(f"Failed to upload {path.name} to s3://{self._loc.bucket}/{key}") from e
            keys.append(key)
        return keys


def backup_offsite(store: ConversationStore, uploader: S3BackupUploader) -> Optional[List[str]]:
    """Create a local snapshot and ship it to S3. Returns uploaded keys, or None on failure."""
    snapshot = store.backup()
    if snapshot is None:
        return None
    try:
        keys = uploader.upload_snapshot(snapshot)
    except StorageError:
        logger.exception("Off-site backup upload failed")
        return None
    logger.info(f"Uploaded {len(keys)} backup files from {snapshot.name}")
    return keys
