"""IAM service accounts and their keys."""

from __future__ import annotations

from typing import Any

from collector.clients import IamClient
from collector.errors import MalformedResourceNameError, MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import enum_name, timestamp, value_or_none
from collector.graph import RelationshipClass, create_direct_relationship, relationship_type
from collector.names import SERVICE_ACCOUNT, SERVICE_ACCOUNT_KEY, parse_resource_name
from collector.registry import EntitySchema, RelationshipSchema, StepDescriptor

STEP_IAM_SERVICE_ACCOUNTS = "fetch-iam-service-accounts"
STEP_IAM_SERVICE_ACCOUNT_KEYS = "fetch-iam-service-account-keys"

IAM_SERVICE_ACCOUNT_ENTITY_TYPE = "google_iam_service_account"
IAM_SERVICE_ACCOUNT_ENTITY_CLASS = "User"
IAM_SERVICE_ACCOUNT_KEY_ENTITY_TYPE = "google_iam_service_account_key"
IAM_SERVICE_ACCOUNT_KEY_ENTITY_CLASS = "AccessKey"

RELATIONSHIP_TYPE_SERVICE_ACCOUNT_HAS_KEY = relationship_type(
    IAM_SERVICE_ACCOUNT_ENTITY_TYPE, RelationshipClass.HAS, IAM_SERVICE_ACCOUNT_KEY_ENTITY_TYPE
)


def service_account_resource_name(project_id: str, email: str) -> str:
    return f"projects/{project_id}/serviceAccounts/{email}"


def create_service_account_entity(service_account: Any) -> dict:
    parsed = parse_resource_name(service_account.name, SERVICE_ACCOUNT)
    return {
        # Keyed by email so other resources can point at it by email alone.
        "_key": service_account.email,
        "_type": IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
        "_class": IAM_SERVICE_ACCOUNT_ENTITY_CLASS,
        "name": service_account.name,
        "displayName": value_or_none(service_account.display_name) or service_account.email,
        "email": service_account.email,
        "projectId": parsed["projects"],
        "uniqueId": value_or_none(service_account.unique_id),
        "description": value_or_none(service_account.description),
        "oauth2ClientId": value_or_none(service_account.oauth2_client_id),
        "disabled": bool(service_account.disabled),
        "active": not service_account.disabled,
    }


def create_service_account_key_entity(key: Any) -> dict:
    parsed = parse_resource_name(key.name, SERVICE_ACCOUNT_KEY)
    return {
        "_key": key.name,
        "_type": IAM_SERVICE_ACCOUNT_KEY_ENTITY_TYPE,
        "_class": IAM_SERVICE_ACCOUNT_KEY_ENTITY_CLASS,
        "name": key.name,
        "displayName": parsed.leaf_id,
        "keyId": parsed["keys"],
        "serviceAccountEmail": parsed["serviceAccounts"],
        "projectId": parsed["projects"],
        "keyAlgorithm": enum_name(key.key_algorithm),
        "keyOrigin": enum_name(key.key_origin),
        "keyType": enum_name(key.key_type),
        "validAfterOn": timestamp(key.valid_after_time),
        "validBeforeOn": timestamp(key.valid_before_time),
        "disabled": bool(getattr(key, "disabled", False)),
    }


def fetch_iam_service_accounts(context: CollectionContext) -> None:
    job_state = context.job_state
    client = IamClient(context.config, context.credentials)

    try:
        for service_account in client.iterate_service_accounts():
            try:
                entity = create_service_account_entity(service_account)
            except MalformedResourceNameError as exc:
                context.logger.warning("Skipping service account: %s", exc)
                continue
            job_state.add_entity(entity)
    except MissingPermissionError as err:
        context.missing_permission(err)


def fetch_iam_service_account_keys(context: CollectionContext) -> None:
    job_state = context.job_state
    client = IamClient(context.config, context.credentials)

    try:
        for service_account_entity in job_state.iterate_entities(IAM_SERVICE_ACCOUNT_ENTITY_TYPE):
            project_id = service_account_entity.get("projectId")
            email = service_account_entity.get("email")
            if not project_id or not email:
                context.logger.warning(
                    "Service account %s has no projectId/email; skipping its keys",
                    service_account_entity["_key"],
                )
                continue

            keys = client.list_service_account_keys(
                service_account_resource_name(project_id, email)
            )
            for key in keys:
                try:
                    key_entity = create_service_account_key_entity(key)
                except MalformedResourceNameError as exc:
                    context.logger.warning("Skipping service account key: %s", exc)
                    continue

                job_state.add_entity(key_entity)
                job_state.add_relationship(
                    create_direct_relationship(
                        RelationshipClass.HAS, service_account_entity, key_entity
                    )
                )
    except MissingPermissionError as err:
        context.missing_permission(err)


STEPS = [
    StepDescriptor(
        id=STEP_IAM_SERVICE_ACCOUNTS,
        name="IAM Service Accounts",
        entities=(
            EntitySchema(
                "IAM Service Account",
                IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
                IAM_SERVICE_ACCOUNT_ENTITY_CLASS,
            ),
        ),
        handler=fetch_iam_service_accounts,
    ),
    StepDescriptor(
        id=STEP_IAM_SERVICE_ACCOUNT_KEYS,
        name="IAM Service Account Keys",
        entities=(
            EntitySchema(
                "IAM Service Account Key",
                IAM_SERVICE_ACCOUNT_KEY_ENTITY_TYPE,
                IAM_SERVICE_ACCOUNT_KEY_ENTITY_CLASS,
            ),
        ),
        relationships=(
            RelationshipSchema(
                RelationshipClass.HAS,
                RELATIONSHIP_TYPE_SERVICE_ACCOUNT_HAS_KEY,
                IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
                IAM_SERVICE_ACCOUNT_KEY_ENTITY_TYPE,
            ),
        ),
        depends_on=(STEP_IAM_SERVICE_ACCOUNTS,),
        reads=(IAM_SERVICE_ACCOUNT_ENTITY_TYPE,),
        handler=fetch_iam_service_account_keys,
    ),
]
