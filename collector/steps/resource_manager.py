"""
Resource Manager: the project itself and the users named in its IAM policy.

Users are keyed by email, the same key space as service accounts, so steps
that only know "who did this" (an email) can resolve either kind.
"""

from __future__ import annotations

from typing import Any

from collector.clients import ResourceManagerClient
from collector.errors import MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import enum_name, string_map, timestamp, value_or_none
from collector.registry import EntitySchema, StepDescriptor

STEP_RESOURCE_MANAGER_PROJECT = "fetch-resource-manager-project"
STEP_RESOURCE_MANAGER_IAM_POLICY = "fetch-resource-manager-iam-policy"

PROJECT_ENTITY_TYPE = "google_cloud_project"
PROJECT_ENTITY_CLASS = "Account"
IAM_USER_ENTITY_TYPE = "google_user"
IAM_USER_ENTITY_CLASS = "User"

_USER_MEMBER_PREFIX = "user:"


def create_project_entity(project: Any) -> dict:
    return {
        "_key": project.name,
        "_type": PROJECT_ENTITY_TYPE,
        "_class": PROJECT_ENTITY_CLASS,
        "name": project.name,
        "displayName": value_or_none(project.display_name) or project.project_id,
        "projectId": project.project_id,
        "parent": value_or_none(project.parent),
        "state": enum_name(project.state),
        "createdOn": timestamp(project.create_time),
        "labels": string_map(project.labels) or None,
    }


def create_user_entity(email: str, roles: list[str]) -> dict:
    return {
        "_key": email,
        "_type": IAM_USER_ENTITY_TYPE,
        "_class": IAM_USER_ENTITY_CLASS,
        "name": email,
        "displayName": email,
        "email": email,
        "roles": sorted(roles),
    }


def user_roles_from_policy(policy: Any) -> dict[str, list[str]]:
    """Map each ``user:`` member of *policy* to the roles bound to it."""
    roles_by_user: dict[str, list[str]] = {}
    for binding in policy.bindings:
        for member in binding.members:
            if not member.startswith(_USER_MEMBER_PREFIX):
                continue
            email = member[len(_USER_MEMBER_PREFIX):]
            roles = roles_by_user.setdefault(email, [])
            if binding.role not in roles:
                roles.append(binding.role)
    return roles_by_user


def fetch_resource_manager_project(context: CollectionContext) -> None:
    client = ResourceManagerClient(context.config, context.credentials)

    try:
        project = client.get_project()
    except MissingPermissionError as err:
        context.missing_permission(err)
        return

    context.job_state.add_entity(create_project_entity(project))


def fetch_resource_manager_iam_policy(context: CollectionContext) -> None:
    job_state = context.job_state
    client = ResourceManagerClient(context.config, context.credentials)

    try:
        policy = client.get_iam_policy()
    except MissingPermissionError as err:
        context.missing_permission(err)
        return

    roles_by_user = user_roles_from_policy(policy)
    for email, roles in roles_by_user.items():
        job_state.add_entity(create_user_entity(email, roles))

    context.logger.info("Created %d user entities from the project IAM policy", len(roles_by_user))


STEPS = [
    StepDescriptor(
        id=STEP_RESOURCE_MANAGER_PROJECT,
        name="Project",
        entities=(EntitySchema("Project", PROJECT_ENTITY_TYPE, PROJECT_ENTITY_CLASS),),
        handler=fetch_resource_manager_project,
    ),
    StepDescriptor(
        id=STEP_RESOURCE_MANAGER_IAM_POLICY,
        name="Resource Manager IAM Policy",
        entities=(EntitySchema("IAM User", IAM_USER_ENTITY_TYPE, IAM_USER_ENTITY_CLASS),),
        handler=fetch_resource_manager_iam_policy,
    ),
]
