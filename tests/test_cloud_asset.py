"""Tests for collector/steps/cloud_asset.py."""

from __future__ import annotations

import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from collector.config import CollectorConfig
from collector.errors import MissingPermissionError
from collector.executor import STATUS_PARTIAL, CollectionContext, run_step
from collector.steps.cloud_asset import (
    STEPS,
    create_iam_binding_entity,
    iam_binding_key,
)

RESOURCE = "//cloudresourcemanager.googleapis.com/projects/p1"


def _binding(role="roles/editor", members=("user:b@x.com", "user:a@x.com"), condition=None):
    return SimpleNamespace(role=role, members=list(members), condition=condition)


def _policy_result(*bindings, resource=RESOURCE):
    return SimpleNamespace(
        resource=resource,
        project="projects/123456",
        policy=SimpleNamespace(bindings=list(bindings)),
    )


def _context() -> CollectionContext:
    return CollectionContext(config=CollectorConfig(project_id="p1"))


class TestIamBindingKey:
    def test_unconditional(self):
        assert iam_binding_key(RESOURCE, "roles/editor", None) == f"{RESOURCE}_roles/editor"

    def test_condition_changes_key(self):
        plain = iam_binding_key(RESOURCE, "roles/editor", None)
        conditional = iam_binding_key(RESOURCE, "roles/editor", "request.time < x")
        assert conditional != plain
        assert conditional.startswith(plain + "_")


class TestConverter:
    def test_entity(self):
        entity = create_iam_binding_entity(_binding(), "projects/123456", RESOURCE)
        assert entity["_class"] == "AccessPolicy"
        assert entity["role"] == "roles/editor"
        assert entity["members"] == ["user:a@x.com", "user:b@x.com"]
        assert entity["memberCount"] == 2
        assert entity["conditionExpression"] is None

    def test_conditional_binding(self):
        condition = SimpleNamespace(title="expires", expression="request.time < x")
        entity = create_iam_binding_entity(_binding(condition=condition), None, RESOURCE)
        assert entity["conditionTitle"] == "expires"
        assert entity["projectName"] is None


class TestStep:
    @patch("collector.steps.cloud_asset.CloudAssetClient")
    def test_one_entity_per_binding(self, mock_cls):
        client = MagicMock()
        client.iterate_iam_policies.return_value = iter([
            _policy_result(_binding("roles/editor"), _binding("roles/viewer")),
            _policy_result(_binding("roles/editor"), resource="//storage.googleapis.com/b1"),
        ])
        mock_cls.return_value = client
        context = _context()

        run_step(context, STEPS[0])

        assert context.job_state.entity_count == 3

    @patch("collector.steps.cloud_asset.CloudAssetClient")
    def test_permission_gap(self, mock_cls):
        client = MagicMock()
        client.iterate_iam_policies.side_effect = MissingPermissionError(
            "cloudasset.assets.searchAllIamPolicies"
        )
        mock_cls.return_value = client
        context = _context()

        result = run_step(context, STEPS[0])

        assert result.status == STATUS_PARTIAL
        [event] = context.events.missing_permissions()
        assert event == {
            "type": "missing_permission",
            "permission": "cloudasset.assets.searchAllIamPolicies",
            "stepId": "fetch-cloud-asset-iam-bindings",
        }
