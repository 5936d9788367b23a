"""
Unit tests for the Change record.

Tests cover:
- Dictionary and JSON encoding
- Validation of decoded changes
- The record property for deletes
"""

import pytest

from crudkit.index_server.feed.base import Change, ChangeOperation, FeedSerializationError


def _change(**overrides):
    data = {
        "resource_type": "tweet",
        "operation": ChangeOperation.CREATE,
        "before": None,
        "after": {"id": "t1", "author": "A"},
        "sequence": 1,
        "key": "t1",
        "ts_ms": 1730000000000,
    }
    data.update(overrides)
    return Change(**data)


class TestChange:
    """Tests for Change."""

    def test_to_dict_uses_operation_value(self):
        """Operation is encoded by value."""
        data = _change().to_dict()

        assert data["operation"] == "create"
        assert data["sequence"] == 1
        assert data["after"] == {"id": "t1", "author": "A"}

    def test_from_dict_restores_change(self):
        """from_dict reverses to_dict."""
        change = _change(operation=ChangeOperation.UPDATE, before={"id": "t1", "author": "B"})

        restored = Change.from_dict(change.to_dict())

        assert restored == change

    def test_from_bytes_decodes_json(self):
        """to_bytes produces sorted UTF-8 JSON that from_bytes accepts."""
        change = _change()

        encoded = change.to_bytes()

        assert encoded.startswith(b'{"after"')
        assert Change.from_bytes(encoded) == change

    def test_missing_fields_rejected(self):
        """resource_type, operation and sequence are required."""
        with pytest.raises(FeedSerializationError, match="sequence"):
            Change.from_dict({"resource_type": "tweet", "operation": "create"})

    def test_unknown_operation_rejected(self):
        """Only create/update/delete are valid."""
        with pytest.raises(FeedSerializationError, match="Unknown operation"):
            Change.from_dict({"resource_type": "tweet", "operation": "upsert", "sequence": 1})

    @pytest.mark.parametrize("sequence", [0, -3, "7", True, 1.5])
    def test_invalid_sequence_rejected(self, sequence):
        """Sequences are positive integers."""
        with pytest.raises(FeedSerializationError, match="Invalid sequence"):
            Change.from_dict(
                {"resource_type": "tweet", "operation": "create", "sequence": sequence}
            )

    def test_from_bytes_rejects_garbage(self):
        """Non-JSON and non-object payloads fail with FeedSerializationError."""
        with pytest.raises(FeedSerializationError):
            Change.from_bytes(b"\xff not json")
        with pytest.raises(FeedSerializationError):
            Change.from_bytes(b"[1, 2, 3]")

    def test_record_is_before_for_delete(self):
        """A delete leaves the before snapshot as its record."""
        before = {"id": "t1", "author": "A"}
        delete = _change(operation=ChangeOperation.DELETE, before=before, after=None)

        assert delete.record == before
        assert _change().record == {"id": "t1", "author": "A"}

    def test_change_is_immutable(self):
        """Changes are frozen."""
        change = _change()

        with pytest.raises(AttributeError):
            change.sequence = 2
