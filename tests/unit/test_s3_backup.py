from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from common.config import Settings
from common.errors import ConfigError, StorageError
from state.conversation_store import ConversationStore
from state.models import Sender
from state.s3_backup import S3BackupUploader, backup_offsite


class _FakeS3:
    def __init__(self, *, fail: bool = False) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ContentType: str}
        self._fail = fail

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        if self._fail:
            raise ClientError({"Error": {"Code": "AccessDenied"}}, "PutObject")
        self._store[(Bucket, Key)] = {"Body": Body, "ContentType": ContentType}
        return {"ETag": f'"fake-{len(Body)}"'}


def _store(tmp_path, keys) -> ConversationStore:
    store = ConversationStore(
        keys,
        data_dir=tmp_path / "data",
        backups_dir=tmp_path / "backups",
        max_active_messages=2,
        archive_threshold=3,
    )
    store.ensure_directories()
    return store


def test_upload_snapshot_copies_every_file(tmp_path):
    snapshot = tmp_path / "backup_2026-10-19T10-00-00-000+00-00"
    snapshot.mkdir()
    (snapshot / "abc.enc").write_text("00:11", encoding="utf-8")
    (snapshot / "contacts.json").write_text("{}", encoding="utf-8")

    s3 = _FakeS3()
    uploader = S3BackupUploader(s3=s3, bucket="b", prefix="/wingman/backups/")
    keys = uploader.upload_snapshot(snapshot)

    assert keys == [
        f"wingman/backups/{snapshot.name}/abc.enc",
        f"wingman/backups/{snapshot.name}/contacts.json",
    ]
    assert s3._store[("b", keys[0])]["Body"] == b"00:11"
    assert s3._store[("b", keys[0])]["ContentType"] == "application/octet-stream"
    assert s3._store[("b", keys[1])]["ContentType"] == "application/json"


def test_upload_missing_snapshot_raises(tmp_path):
    uploader = S3BackupUploader(s3=_FakeS3(), bucket="b")
    with pytest.raises(StorageError):
        uploader.upload_snapshot(tmp_path / "nope")


def test_client_error_becomes_storage_error(tmp_path):
    snapshot = tmp_path / "snap"
    snapshot.mkdir()
    (snapshot / "a.enc").write_text("x", encoding="utf-8")

    uploader = S3BackupUploader(s3=_FakeS3(fail=True), bucket="b")
    with pytest.raises(StorageError):
        uploader.upload_snapshot(snapshot)


def test_backup_offsite_uploads_encrypted_segments(tmp_path, unlocked_keys):
    store = _store(tmp_path, unlocked_keys)
    for i in range(4):
        store.append("contact1", Sender.THEM, f"m{i}")

    s3 = _FakeS3()
    keys = backup_offsite(store, S3BackupUploader(s3=s3, bucket="b", prefix="bk"))

    assert keys is not None
    names = sorted(k.rsplit("/", 1)[1] for k in keys)
    assert names == ["contact1.enc", "contact1_0.enc"]
    for key in keys:
        body = s3._store[("b", key)]["Body"]
        assert b"m0" not in body


def test_backup_offsite_returns_none_on_upload_failure(tmp_path, unlocked_keys):
    store = _store(tmp_path, unlocked_keys)
    store.append("contact1", Sender.THEM, "hello")
    assert backup_offsite(store, S3BackupUploader(s3=_FakeS3(fail=True), bucket="b")) is None


def test_from_env_missing_bucket_raises(monkeypatch):
    monkeypatch.delenv("WINGMAN_BACKUP_BUCKET", raising=False)
    with pytest.raises(ConfigError):
        S3BackupUploader.from_env()


def test_from_settings_uses_configured_bucket_and_prefix(tmp_path):
    settings = Settings(backup_bucket="snapshots", backup_prefix="team/wingman")
    fake = _FakeS3()
    uploader = S3BackupUploader.from_settings(settings, s3=fake)

    snapshot = tmp_path / "backup_x"
    snapshot.mkdir()
    (snapshot / "c.enc").write_text("iv:cipher", encoding="utf-8")
    assert uploader.upload_snapshot(snapshot) == ["team/wingman/backup_x/c.enc"]
    assert ("snapshots", "team/wingman/backup_x/c.enc") in fake._store


def test_from_settings_without_bucket_raises():
    with pytest.raises(ConfigError):
        S3BackupUploader.from_settings(Settings())


def test_from_env_reads_bucket(monkeypatch):
    monkeypatch.setenv("WINGMAN_BACKUP_BUCKET", "env-bucket")
    monkeypatch.setenv("WINGMAN_BACKUP_PREFIX", "p/")
    monkeypatch.setattr("state.s3_backup.boto3.client", lambda *a, **k: _FakeS3())
    uploader = S3BackupUploader.from_env()
    assert uploader.key_for("backup_1", "a.enc") == "p/backup_1/a.enc"
