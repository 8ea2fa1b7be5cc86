"""
Tests for collector/graph.py: relationship helpers, JobState invariants,
JSON export and upload to the sync server.

Uses unittest.mock to patch `requests` (no real HTTP calls).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from collector.errors import JobStateError, MissingEndpointError
from collector.graph import (
    JobState,
    RelationshipClass,
    create_direct_relationship,
    relationship_type,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _entity(key: str, type_: str = "google_thing", **extra) -> dict:
    return {"_key": key, "_type": type_, "_class": "Resource", "name": key, **extra}


def _make_state() -> JobState:
    return JobState(server_url="http://fake-server/", token="tok-123")


def _mock_post_200():
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {"entities_upserted": 2, "relationships_upserted": 1}
    return resp


# =========================================================================
# Relationship helpers
# =========================================================================

class TestRelationshipType:
    def test_shared_prefix_is_dropped(self):
        assert relationship_type(
            "google_app_engine_application", "HAS", "google_app_engine_service"
        ) == "google_app_engine_application_has_service"

    def test_only_provider_prefix_shared(self):
        assert relationship_type(
            "google_user", "CREATED", "google_app_engine_version"
        ) == "google_user_created_app_engine_version"

    def test_identical_types_keep_target(self):
        assert relationship_type("google_x", "USES", "google_x") == "google_x_uses_google_x"


class TestCreateDirectRelationship:
    def test_fields(self):
        app = _entity("apps/a", "google_app_engine_application")
        bucket = _entity("b1", "google_storage_bucket")
        rel = create_direct_relationship(RelationshipClass.USES, app, bucket)

        assert rel["_key"] == "apps/a|uses|b1"
        assert rel["_type"] == "google_app_engine_application_uses_storage_bucket"
        assert rel["_class"] == "USES"
        assert rel["_fromEntityKey"] == "apps/a"
        assert rel["_toEntityKey"] == "b1"
        assert rel["displayName"] == "USES"

    def test_extra_properties(self):
        rel = create_direct_relationship(
            RelationshipClass.HAS, _entity("a"), _entity("b"), properties={"weight": 1}
        )
        assert rel["weight"] == 1


# =========================================================================
# JobState writes
# =========================================================================

class TestAddEntity:
    def test_add_and_find(self):
        state = JobState()
        assert state.add_entity(_entity("k1")) is True
        assert state.find_entity("k1")["name"] == "k1"
        assert state.has_key("k1")
        assert state.entity_count == 1

    def test_duplicate_key_is_noop(self, caplog):
        state = JobState()
        state.add_entity(_entity("k1", label="first"))

        with caplog.at_level(logging.WARNING, logger="collector.graph"):
            assert state.add_entity(_entity("k1", label="second")) is False

        assert state.entity_count == 1
        assert state.find_entity("k1")["label"] == "first"
        assert any("Duplicate entity key k1" in r.message for r in caplog.records)

    def test_missing_required_field(self):
        state = JobState()
        with pytest.raises(JobStateError):
            state.add_entity({"_key": "k1", "_type": "t"})

    def test_add_entities_counts_new(self):
        state = JobState()
        assert state.add_entities([_entity("a"), _entity("b"), _entity("a")]) == 2

    def test_find_entity_none_key(self):
        assert JobState().find_entity(None) is None
        assert JobState().find_entity("") is None


class TestAddRelationship:
    def test_missing_endpoint_rejected(self):
        state = JobState()
        state.add_entity(_entity("a"))
        rel = create_direct_relationship(RelationshipClass.HAS, _entity("a"), _entity("b"))

        with pytest.raises(MissingEndpointError):
            state.add_relationship(rel)
        assert state.relationship_count == 0

    def test_duplicate_relationship_is_noop(self):
        state = JobState()
        state.add_entities([_entity("a"), _entity("b")])
        rel = create_direct_relationship(RelationshipClass.HAS, _entity("a"), _entity("b"))

        assert state.add_relationship(rel) is True
        assert state.add_relationship(dict(rel)) is False
        assert state.relationship_count == 1

    def test_missing_field_rejected(self):
        state = JobState()
        state.add_entities([_entity("a"), _entity("b")])
        with pytest.raises(JobStateError):
            state.add_relationship({"_key": "a|has|b", "_type": "t", "_class": "HAS"})


# =========================================================================
# JobState reads
# =========================================================================

class TestIteration:
    def test_iterate_entities_by_type_in_order(self):
        state = JobState()
        state.add_entities([_entity("a", "t1"), _entity("b", "t2"), _entity("c", "t1")])
        assert [e["_key"] for e in state.iterate_entities("t1")] == ["a", "c"]
        assert list(state.iterate_entities("missing")) == []

    def test_adding_while_iterating(self):
        state = JobState()
        state.add_entity(_entity("a", "t1"))
        for entity in state.iterate_entities("t1"):
            state.add_entity(_entity(entity["_key"] + "-child", "t1"))
        assert state.entity_count == 2

    def test_iterate_relationships_filtered(self):
        state = JobState()
        a, b = _entity("a", "google_a"), _entity("b", "google_b")
        state.add_entities([a, b])
        state.add_relationship(create_direct_relationship(RelationshipClass.HAS, a, b))
        state.add_relationship(create_direct_relationship(RelationshipClass.USES, a, b))

        assert len(list(state.iterate_relationships())) == 2
        assert len(list(state.iterate_relationships("google_a_uses_b"))) == 1

    def test_data_area(self):
        state = JobState()
        state.set_data("slot", {"x": 1})
        assert state.get_data("slot") == {"x": 1}
        assert state.get_data("other", "default") == "default"

    def test_summary(self):
        state = JobState()
        a, b = _entity("a", "google_a"), _entity("b", "google_b")
        state.add_entities([a, b])
        state.add_relationship(create_direct_relationship(RelationshipClass.HAS, a, b))

        summary = state.summary()
        assert summary["entity_count"] == 2
        assert summary["relationship_count"] == 1
        assert summary["entities_by_type"] == {"google_a": 1, "google_b": 1}
        assert summary["relationships_by_type"] == {"google_a_has_b": 1}


# =========================================================================
# Export
# =========================================================================

class TestWriteJson:
    def test_writes_entities_relationships_events(self, tmp_path):
        state = JobState()
        state.add_entity(_entity("a", createdOn=datetime(2021, 3, 9, tzinfo=timezone.utc)))
        events = [{"type": "missing_permission", "permission": "p", "stepId": "s"}]

        path = state.write_json(tmp_path / "out" / "graph.json", events)
        data = json.loads(path.read_text())

        assert [e["_key"] for e in data["entities"]] == ["a"]
        assert data["relationships"] == []
        assert data["events"] == events
        assert data["entities"][0]["createdOn"].startswith("2021-03-09")


# =========================================================================
# Upload
# =========================================================================

class TestFlush:
    @patch("requests.post")
    def test_posts_graph(self, mock_post):
        state = _make_state()
        state.add_entity(_entity("a"))
        mock_post.return_value = _mock_post_200()

        assert state.flush(project_id="p1", events=[]) is True

        args, kwargs = mock_post.call_args
        assert args[0] == "http://fake-server/api/v1/graph/sync"
        assert kwargs["headers"]["Authorization"] == "Bearer tok-123"
        body = json.loads(kwargs["data"])
        assert body["provider"] == "gcp"
        assert body["project_id"] == "p1"
        assert body["entities"][0]["_key"] == "a"

    @patch("requests.post")
    def test_offline_is_noop(self, mock_post):
        state = JobState()
        state.add_entity(_entity("a"))
        assert state.flush() is False
        mock_post.assert_not_called()

    @patch("requests.post")
    def test_empty_graph_not_uploaded(self, mock_post):
        assert _make_state().flush() is False
        mock_post.assert_not_called()

    @patch("requests.post")
    def test_http_error_logged(self, mock_post, caplog):
        state = _make_state()
        state.add_entity(_entity("a"))
        resp = MagicMock()
        resp.status_code = 500
        resp.text = "boom"
        mock_post.return_value = resp

        with caplog.at_level(logging.WARNING, logger="collector.graph"):
            assert state.flush() is False
        assert any("Sync failed" in r.message for r in caplog.records)

    @patch("requests.post", side_effect=requests.ConnectionError("down"))
    def test_network_error_logged(self, _mock_post, caplog):
        state = _make_state()
        state.add_entity(_entity("a"))

        with caplog.at_level(logging.WARNING, logger="collector.graph"):
            assert state.flush() is False
        assert any("Sync failed" in r.message for r in caplog.records)

    @patch("requests.post")
    def test_non_json_body_logged(self, mock_post, caplog):
        state = _make_state()
        state.add_entity(_entity("a"))
        resp = MagicMock()
        resp.status_code = 200
        resp.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "", 0)
        mock_post.return_value = resp

        with caplog.at_level(logging.WARNING, logger="collector.graph"):
            assert state.flush() is False
        assert any("Sync failed" in r.message for r in caplog.records)

    @patch("requests.post")
    def test_non_object_body_logged(self, mock_post, caplog):
        state = _make_state()
        state.add_entity(_entity("a"))
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = ["unexpected"]
        mock_post.return_value = resp

        with caplog.at_level(logging.WARNING, logger="collector.graph"):
            assert state.flush() is False
        assert any("Sync failed" in r.message for r in caplog.records)
