from __future__ import annotations

import json

from state.contacts import DEFAULT_PERSONALITY, ContactDirectory


def test_get_or_create_normalizes_and_persists(tmp_path):
    path = tmp_path / "contacts.json"
    directory = ContactDirectory(path)

    contact = directory.get_or_create("919876543210", "Sam")
    assert contact.jid == "919876543210@s.whatsapp.net"
    assert contact.name == "Sam"
    assert contact.personality == DEFAULT_PERSONALITY
    assert len(contact.uuid) == 32

    raw = json.loads(path.read_text(encoding="utf-8"))
    entry = raw["919876543210@s.whatsapp.net"]
    assert entry["uuid"] == contact.uuid
    assert {"createdAt", "updatedAt", "metadata"} <= set(entry)

    again = ContactDirectory(path).get_or_create("919876543210@s.whatsapp.net", "Other")
    assert again.uuid == contact.uuid
    assert again.name == "Sam"


def test_updates_and_lookup(tmp_path):
    directory = ContactDirectory(tmp_path / "contacts.json")
    directory.get_or_create("919876543210", "Sam")

    directory.update_name("919876543210", "Samantha")
    directory.set_personality("919876543210", "professor")
    directory.update_metadata("919876543210", total_messages=4)

    contact = directory.get("919876543210@s.whatsapp.net")
    assert contact is not None
    assert contact.name == "Samantha"
    assert directory.get_personality("919876543210@s.whatsapp.net") == "professor"
    assert contact.metadata.total_messages == 4
    assert directory.get_by_uuid(contact.uuid) == contact
    assert directory.get_personality("910000000000@s.whatsapp.net") == DEFAULT_PERSONALITY


def test_find_by_name_and_delete(tmp_path):
    directory = ContactDirectory(tmp_path / "contacts.json")
    directory.get_or_create("911111111111", "Alice Smith")
    directory.get_or_create("922222222222", "Bob")

    assert [c.name for c in directory.find_by_name("smi")] == ["Alice Smith"]
    assert directory.delete("922222222222") is True
    assert directory.delete("922222222222") is False
    assert [c.name for c in directory.all()] == ["Alice Smith"]


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "contacts.json"
    path.write_text("{not json", encoding="utf-8")
    assert ContactDirectory(path).all() == []
