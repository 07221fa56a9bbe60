from __future__ import annotations

import json
import secrets
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.identities import normalize_jid
from common.log import get_logger, mask_identity

from .models import utc_now_iso


logger = get_logger("contacts")

DEFAULT_PERSONALITY = "superhuman"
DEFAULT_NAME = "Unknown"


class ContactMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    total_messages: int = Field(default=0, alias="totalMessages")
    last_message: Optional[str] = Field(default=None, alias="lastMessage")


class Contact(BaseModel):
    """Directory entry. `uuid` is the opaque id used for conversation files."""

    model_config = ConfigDict(populate_by_name=True)

    uuid: str = Field(default_factory=lambda: secrets.token_hex(16))
    name: str = DEFAULT_NAME
    jid: str
    personality: str = DEFAULT_PERSONALITY
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    updated_at: str = Field(default_factory=utc_now_iso, alias="updatedAt")
    metadata: ContactMetadata = Field(default_factory=ContactMetadata)


class ContactDirectory:
    """
    Plaintext JSON index mapping JID -> contact profile.

    - Backed by a single JSON file: { jid: {uuid, name, jid, personality, ...}, ... }
    - Not encrypted: it holds identity metadata only, never message content,
      and is readable while the system is locked.
    - Loaded lazily on first use; every mutation rewrites the file.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._data: Dict[str, Contact] = {}
        self._loaded = False
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        try:
            if self._path.exists():
                with self._path.open("r", encoding="utf-8") as f:
                    raw = json.load(f)
                if isinstance(raw, dict):
                    self._data = {
                        str(k): Contact.model_validate(v) for k, v in raw.items() if isinstance(v, dict)
                    }
        except (OSError, ValueError, ValidationError):
            logger.exception("Failed to load contacts; starting with an empty directory")
            self._data = {}

    def _save(self) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            payload = {jid: c.model_dump(mode="json", by_alias=True) for jid, c in self._data.items()}
            with self._path.open("w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            return True
        except OSError:
            logger.exception("Failed to save contacts")
            return False

    def get_or_create(self, jid: str, name: Optional[str] = None) -> Contact:
        key = normalize_jid(jid)
        with self._lock:
            self._ensure_loaded()
            contact = self._data.get(key)
            if contact is None:
                contact = Contact(jid=key, name=name or DEFAULT_NAME)
                self._data[key] = contact
                self._save()
                logger.info(f"Created new contact {mask_identity(key)}")
            return contact

    def _touch(self, jid: str, **changes: Any) -> Contact:
        with self._lock:
            contact = self.get_or_create(jid)
            updated = contact.model_copy(update={**changes, "updated_at": utc_now_iso()})
            self._data[contact.jid] = updated
            self._save()
            return updated

    def update_name(self, jid: str, name: str) -> Contact:
        return self._touch(jid, name=name)

    def set_personality(self, jid: str, personality: str) -> Contact:
        return self._touch(jid, personality=personality)

    def get_personality(self, jid: str) -> str:
        contact = self.get(jid)
        return contact.personality if contact else DEFAULT_PERSONALITY

    def update_metadata(self, jid: str, **updates: Any) -> Contact:
        """Merge fields into the contact's metadata (e.g. total_messages=3)."""
        with self._lock:
            contact = self.get_or_create(jid)
            merged = contact.metadata.model_copy(update=updates)
            return self._touch(jid, metadata=merged)

    def get(self, jid: str) -> Optional[Contact]:
        with self._lock:
            self._ensure_loaded()
            return self._data.get(normalize_jid(jid))

    def get_by_uuid(self, uuid: str) -> Optional[Contact]:
        with self._lock:
            self._ensure_loaded()
            return next((c for c in self._data.values() if c.uuid == uuid), None)

    def all(self) -> List[Contact]:
        with self._lock:
            self._ensure_loaded()
            return list(self._data.values())

    def find_by_name(self, search: str) -> List[Contact]:
        """Case-insensitive substring match on contact names."""
        needle = search.lower()
        return [c for c in self.all() if needle in c.name.lower()]

    def delete(self, jid: str) -> bool:
        with self._lock:
            self._ensure_loaded()
            if self._data.pop(normalize_jid(jid), None) is None:
                return False
            self._save()
            return True
