"""
Encrypted, append-only conversation history per contact.

Layout (under the data directory):
- conversations/<id>.enc     active segment + metadata, ``ivHex:cipherHex``
- archives/<id>_<index>.enc  immutable archive segment (JSON array of messages)

Every operation needs the shared `KeyManager` to be unlocked. Failures
(locked, wrong key, filesystem) are logged and surface as an empty result,
``None`` or ``False``; they never propagate to the caller.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from common.config import Settings
from common.crypto import KeyManager
from common.errors import DecryptionError, LockedError, StorageError, WingmanError
from common.log import get_logger

from .models import (
    Conversation,
    ConversationStats,
    ExportDocument,
    Message,
    Sender,
    SenderStats,
    utc_now_iso,
)


logger = get_logger("storage")

ENCRYPTED_SUFFIX = ".enc"
_ENTITY_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@+-]{0,127}$")
_LABEL_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp-{uuid4().hex}")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def _sender_stats(messages: List[Message]) -> SenderStats:
    if not messages:
        return SenderStats()
    return SenderStats(
        count=len(messages),
        avg_length=_round_half_up(sum(len(m.text) for m in messages) / len(messages)),
        first_message=messages[0].timestamp,
        last_message=messages[-1].timestamp,
    )


class ConversationStore:
    """
    Active/archive segmented message log, encrypted at rest.

    - `append` adds to the active segment. When the active segment grows past
      `archive_threshold`, the oldest ``len(active) - max_active_messages``
      messages move into a brand-new archive segment at index
      ``metadata.archived``, leaving exactly `max_active_messages` active.
    - Archive segments are written once and never merged or rewritten.
    - ``len(active) + sum(len(segment)) == metadata.total_messages`` holds after
      every successful append.
    - Read-modify-write of one conversation is serialized by a per-entity lock.
      Different contacts do not block each other.

    Writes are not transactional: the archive segment is written before the
    active segment. A crash in between leaves an orphan segment file at the
    next index, which the next rollover overwrites; no committed message is
    lost.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        *,
        data_dir: Union[str, Path],
        backups_dir: Optional[Union[str, Path]] = None,
        max_active_messages: int = 100,
        archive_threshold: int = 200,
        contacts_file: Optional[Union[str, Path]] = None,
    ) -> None:
        if max_active_messages <= 0:
            raise ValueError("max_active_messages must be > 0")
        if archive_threshold < max_active_messages:
            raise ValueError("archive_threshold must be >= max_active_messages")
        self._keys = key_manager
        self.data_dir = Path(data_dir)
        self.conversations_dir = self.data_dir / "conversations"
        self.archives_dir = self.data_dir / "archives"
        self.backups_dir = Path(backups_dir) if backups_dir else self.data_dir.parent / "backups"
        self.contacts_file = Path(contacts_file) if contacts_file else self.data_dir / "contacts.json"
        self.max_active_messages = max_active_messages
        self.archive_threshold = archive_threshold

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, key_manager: KeyManager) -> "ConversationStore":
        return cls(
            key_manager,
            data_dir=settings.data_dir,
            backups_dir=settings.backups_dir,
            max_active_messages=settings.max_active_messages,
            archive_threshold=settings.archive_threshold,
            contacts_file=settings.contacts_file,
        )

    # -------- Paths & locking --------
    def ensure_directories(self) -> None:
        for d in (self.data_dir, self.conversations_dir, self.archives_dir, self.backups_dir):
            d.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _check_id(entity_id: str) -> str:
        if not isinstance(entity_id, str) or not _ENTITY_ID_RE.match(entity_id) or ".." in entity_id:
            raise StorageError(f"Invalid conversation id: {entity_id!r}")
        return entity_id

    def conversation_path(self, entity_id: str) -> Path:
        return self.conversations_dir / f"{self._check_id(entity_id)}{ENCRYPTED_SUFFIX}"

    def archive_path(self, entity_id: str, index: int) -> Path:
        return self.archives_dir / f"{self._check_id(entity_id)}_{int(index)}{ENCRYPTED_SUFFIX}"

    def _entity_lock(self, entity_id: str) -> threading.RLock:
        self._check_id(entity_id)
        with self._locks_guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = self._locks[entity_id] = threading.RLock()
            return lock

    def _require_unlocked(self) -> None:
        if not self._keys.is_unlocked():
            raise LockedError("System is locked. Unlock first.")

    # -------- Raw segment I/O (raises) --------
    def _read_envelope(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path.name}") from e

    def _write_envelope(self, path: Path, payload: object) -> None:
        envelope = self._keys.encrypt_object(payload)
        try:
            _atomic_write(path, envelope)
        except OSError as e:
            raise StorageError(f"Failed to write {path.name}") from e

    def _read_conversation(self, entity_id: str) -> Conversation:
        self._require_unlocked()
        envelope = self._read_envelope(self.conversation_path(entity_id))
        if envelope is None:
            return Conversation.empty()
        raw = self._keys.decrypt_object(envelope)
        try:
            return Conversation.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Malformed conversation data for {entity_id}") from e

    def _write_conversation(self, entity_id: str, conversation: Conversation) -> None:
        self._require_unlocked()
        self._write_envelope(self.conversation_path(entity_id), conversation.to_json_dict())

    def _read_archive(self, entity_id: str, index: int) -> List[Message]:
        self._require_unlocked()
        envelope = self._read_envelope(self.archive_path(entity_id, index))
        if envelope is None:
            raise StorageError(f"Missing archive segment {index} for {entity_id}")
        raw = self._keys.decrypt_object(envelope)
        try:
            return [Message.model_validate(m) for m in raw]
        except (TypeError, ValidationError) as e:
            raise StorageError(f"Malformed archive segment {index} for {entity_id}") from e

    def _write_archive(self, entity_id: str, index: int, messages: List[Message]) -> None:
        self._write_envelope(
            self.archive_path(entity_id, index),
            [m.model_dump(mode="json") for m in messages],
        )

    # -------- Public operations --------
    def load(self, entity_id: str) -> Conversation:
        """Decrypted active segment and metadata; an empty skeleton on any failure."""
        try:
            with self._entity_lock(entity_id):
                return self._read_conversation(entity_id)
        except LockedError:
            logger.warning(f"Load refused while locked: {entity_id}")
            return Conversation.empty()
        except WingmanError:
            logger.exception(f"Failed to load conversation {entity_id}")
            return Conversation.empty()

    def save(self, entity_id: str, conversation: Conversation) -> bool:
        """Encrypt and overwrite the active segment. Returns False on failure."""
        try:
            with self._entity_lock(entity_id):
                self._write_conversation(entity_id, conversation)
            return True
        except WingmanError:
            logger.exception(f"Failed to save conversation {entity_id}")
            return False

    def append(self, entity_id: str, sender: Union[Sender, str], text: str) -> Optional[Message]:
        """Append one message, rolling the oldest into an archive segment when needed.

        Returns the stored Message, or None when nothing was persisted.
        """
        try:
            message = Message(sender=Sender(sender), text=text)
        except (ValueError, ValidationError):
            logger.error(f"Rejected malformed message for {entity_id}")
            return None

        try:
            with self._entity_lock(entity_id):
                conversation = self._read_conversation(entity_id)
                conversation.messages.append(message)
                conversation.metadata.total_messages += 1
                conversation.metadata.last_update = utc_now_iso()

                if len(conversation.messages) > self.archive_threshold:
                    self._rollover(entity_id, conversation)

                self._write_conversation(entity_id, conversation)
        except LockedError:
            logger.warning(f"Append refused while locked: {entity_id}")
            return None
        except WingmanError:
            logger.exception(f"Failed to append message to {entity_id}")
            return None
        return message

    def _rollover(self, entity_id: str, conversation: Conversation) -> None:
        overshoot = len(conversation.messages) - self.max_active_messages
        if overshoot <= 0:
            return
        index = conversation.metadata.archived
        to_archive = conversation.messages[:overshoot]
        self._write_archive(entity_id, index, to_archive)

        conversation.messages = conversation.messages[overshoot:]
        conversation.metadata.archived = index + 1
        logger.info(f"Archived {overshoot} old messages for {entity_id} into segment {index}")

    def load_full_history(self, entity_id: str) -> List[Message]:
        """All messages, oldest first: archive segments 0..n-1, then the active segment."""
        try:
            with self._entity_lock(entity_id):
                conversation = self._read_conversation(entity_id)
                history: List[Message] = []
                for index in range(conversation.metadata.archived):
                    try:
                        history.extend(self._read_archive(entity_id, index))
                    except (StorageError, DecryptionError):
                        logger.exception(f"Failed to load archive {index} for {entity_id}")
                history.extend(conversation.messages)
                return history
        except LockedError:
            logger.warning(f"History load refused while locked: {entity_id}")
            return []
        except WingmanError:
            logger.exception(f"Failed to load history for {entity_id}")
            return []

    def search(self, entity_id: str, keyword: str) -> List[Message]:
        """Case-insensitive substring search over the full history."""
        needle = keyword.lower()
        return [m for m in self.load_full_history(entity_id) if needle in m.text.lower()]

    def stats(self, entity_id: str) -> ConversationStats:
        try:
            with self._entity_lock(entity_id):
                conversation = self.load(entity_id)
                history = self.load_full_history(entity_id)
        except StorageError:
            logger.exception(f"Failed to compute stats for {entity_id!r}")
            return ConversationStats()
        return ConversationStats(
            total=len(history),
            active=len(conversation.messages),
            archived=conversation.metadata.archived,
            user=_sender_stats([m for m in history if m.sender is Sender.USER]),
            them=_sender_stats([m for m in history if m.sender is Sender.THEM]),
            first_message=history[0].timestamp if history else None,
            last_message=history[-1].timestamp if history else None,
        )

    def export(self, entity_id: str, contact_label: str) -> Optional[Path]:
        """Write the full history to ``export_<label>_<ms>.json`` in the data directory.

        Returns the export path, or None on failure.
        """
        try:
            self._require_unlocked()
            with self._entity_lock(entity_id):
                messages = self.load_full_history(entity_id)
                stats = self.stats(entity_id)
            document = ExportDocument(contact_label=contact_label, stats=stats, messages=messages)

            safe_label = _LABEL_UNSAFE_RE.sub("_", contact_label).strip("_") or "contact"
            path = self.data_dir / f"export_{safe_label}_{int(time.time() * 1000)}.json"
            _atomic_write(
                path,
                json.dumps(document.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False),
            )
            logger.info(f"Exported {len(messages)} messages for {entity_id}")
            return path
        except (WingmanError, OSError):
            logger.exception(f"Failed to export conversation {entity_id}")
            return None

    def backup(self) -> Optional[Path]:
        """Copy every active and archive segment plus contacts.json into a snapshot directory.

        Files are copied verbatim (still encrypted). Returns the snapshot path or None.
        """
        try:
            self._require_unlocked()
            stamp = datetime.now(UTC).isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
            backup_dir = self.backups_dir / f"backup_{stamp}"
            backup_dir.mkdir(parents=True, exist_ok=True)

            files = self._segment_files()
            files.append(self.contacts_file)

            copied = 0
            for f in files:
                if f.exists():
                    shutil.copy2(f, backup_dir / f.name)
                    copied += 1
            logger.info(f"Backup created with {copied} files: {backup_dir}")
            return backup_dir
        except (WingmanError, OSError):
            logger.exception("Failed to create backup")
            return None

    def _segment_files(self) -> List[Path]:
        """Every active segment (sorted), then every archive segment (sorted)."""
        files: List[Path] = []
        for d in (self.conversations_dir, self.archives_dir):
            if d.is_dir():
                files.extend(sorted(p for p in d.iterdir() if p.is_file() and p.suffix == ENCRYPTED_SUFFIX))
        return files

    def has_stored_data(self) -> bool:
        """True once any segment file exists, readable or not."""
        return bool(self._segment_files())

    def verification_blobs(self) -> Iterator[str]:
        """Yield stored envelopes that a candidate key can be tested against.

        Active segments come before archives. Files that cannot be read are
        logged and skipped.
        """
        for path in self._segment_files():
            try:
                yield path.read_text(encoding="utf-8")
            except OSError:
                logger.warning(f"Skipping unreadable segment file {path.name} during key verification")
