"""
Tests for the Kanuka audit trail
"""

import json

from kanuka.audit import AuditEntry, AuditLog


class TestAuditEntry:
    """Tests for AuditEntry serialization"""

    def test_to_dict_keys(self):
        entry = AuditEntry(
            operation="register",
            user="alice@example.com",
            user_uuid="a-1",
            target_user="bob@example.com",
            target_uuid="b-2",
            files=["/p/.kanuka/secrets/b-2.kanuka"],
            timestamp="2024-01-01T00:00:00.000000Z",
        )
        assert entry.to_dict() == {
            "ts": "2024-01-01T00:00:00.000000Z",
            "user": "alice@example.com",
            "uuid": "a-1",
            "op": "register",
            "target_user": "bob@example.com",
            "target_uuid": "b-2",
            "files": ["/p/.kanuka/secrets/b-2.kanuka"],
        }

    def test_optional_fields_omitted(self):
        data = AuditEntry(operation="init", user="alice@example.com").to_dict()
        assert "target_user" not in data
        assert "files" not in data

    def test_timestamp_is_utc(self):
        assert AuditEntry(operation="register").timestamp.endswith("Z")

    def test_from_dict(self):
        entry = AuditEntry.from_dict({"op": "register", "uuid": "a-1", "target_uuid": "b-2"})
        assert entry.operation == "register"
        assert entry.user_uuid == "a-1"
        assert entry.target_uuid == "b-2"
        assert entry.files == []


class TestAuditLog:
    """Tests for the JSON Lines audit log"""

    def test_append_and_read(self, tmp_path):
        log = AuditLog(tmp_path / "audit.jsonl")
        assert log.append(AuditEntry(operation="register", target_user="bob@example.com"))
        assert log.append(AuditEntry(operation="revoke", target_user="carol@example.com"))

        entries = log.read()
        assert [e.operation for e in entries] == ["register", "revoke"]

    def test_one_json_object_per_line(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = AuditLog(path)
        log.append(AuditEntry(operation="register"))
        log.append(AuditEntry(operation="register"))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["op"] == "register"

    def test_filter_by_operation(self, tmp_path):
        log = AuditLog(tmp_path / "audit.jsonl")
        log.append(AuditEntry(operation="register"))
        log.append(AuditEntry(operation="revoke"))
        assert len(log.read(operation="revoke")) == 1

    def test_read_missing_file(self, tmp_path):
        assert AuditLog(tmp_path / "audit.jsonl").read() == []

    def test_malformed_lines_skipped(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        path.write_text('not json\n\n["a list"]\n{"op": "register"}\n')
        entries = AuditLog(path).read()
        assert [e.operation for e in entries] == ["register"]

    def test_append_failure_returns_false(self, tmp_path):
        log = AuditLog(tmp_path / "missing" / "audit.jsonl")
        assert log.append(AuditEntry(operation="register")) is False
