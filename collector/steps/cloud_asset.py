"""
Cloud Asset: every IAM binding on every resource in the project.

One entity per (resource, role, condition) binding, found through
``searchAllIamPolicies``.
"""

from __future__ import annotations

import hashlib
from typing import Any

from collector.clients import CloudAssetClient
from collector.errors import MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import value_or_none
from collector.registry import EntitySchema, StepDescriptor

STEP_CLOUD_ASSET_IAM_BINDINGS = "fetch-cloud-asset-iam-bindings"

IAM_BINDING_ENTITY_TYPE = "google_iam_binding"
IAM_BINDING_ENTITY_CLASS = "AccessPolicy"


def iam_binding_key(resource: str, role: str, condition_expression: str | None) -> str:
    key = f"{resource}_{role}"
    if condition_expression:
        digest = hashlib.sha1(condition_expression.encode("utf-8")).hexdigest()[:12]
        key = f"{key}_{digest}"
    return key


def create_iam_binding_entity(binding: Any, project: str | None, resource: str | None) -> dict:
    condition = getattr(binding, "condition", None)
    condition_expression = value_or_none(getattr(condition, "expression", None))
    members = sorted(binding.members)

    return {
        "_key": iam_binding_key(resource or "", binding.role, condition_expression),
        "_type": IAM_BINDING_ENTITY_TYPE,
        "_class": IAM_BINDING_ENTITY_CLASS,
        "name": binding.role,
        "displayName": binding.role,
        "resource": value_or_none(resource),
        "projectName": value_or_none(project),
        "role": binding.role,
        "members": members,
        "memberCount": len(members),
        "conditionTitle": value_or_none(getattr(condition, "title", None)),
        "conditionExpression": condition_expression,
    }


def fetch_iam_bindings(context: CollectionContext) -> None:
    job_state = context.job_state
    client = CloudAssetClient(context.config, context.credentials)
    iam_bindings_count = 0

    try:
        for policy_result in client.iterate_iam_policies():
            policy = getattr(policy_result, "policy", None)
            for binding in getattr(policy, "bindings", None) or []:
                if job_state.add_entity(
                    create_iam_binding_entity(binding, policy_result.project, policy_result.resource)
                ):
                    iam_bindings_count += 1
    except MissingPermissionError as err:
        context.missing_permission(err)
        return

    context.logger.info("Created %d IAM binding entities", iam_bindings_count)


STEPS = [
    StepDescriptor(
        id=STEP_CLOUD_ASSET_IAM_BINDINGS,
        name="IAM Bindings",
        entities=(
            EntitySchema("IAM Binding", IAM_BINDING_ENTITY_TYPE, IAM_BINDING_ENTITY_CLASS),
        ),
        handler=fetch_iam_bindings,
    ),
]
