"""Cloud Functions and the service accounts they run as."""

from __future__ import annotations

from typing import Any

from collector.clients import CloudFunctionsClient
from collector.errors import MalformedResourceNameError, MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import duration_seconds, enum_name, string_map, timestamp, value_or_none
from collector.graph import RelationshipClass, create_direct_relationship, relationship_type
from collector.names import CLOUD_FUNCTION, parse_resource_name
from collector.registry import EntitySchema, RelationshipSchema, StepDescriptor
from collector.steps.iam import IAM_SERVICE_ACCOUNT_ENTITY_TYPE, STEP_IAM_SERVICE_ACCOUNTS

STEP_CLOUD_FUNCTIONS = "fetch-cloud-functions"
STEP_CLOUD_FUNCTIONS_SERVICE_ACCOUNT_RELATIONSHIPS = (
    "build-cloud-function-service-account-relationships"
)

CLOUD_FUNCTION_ENTITY_TYPE = "google_cloud_function"
CLOUD_FUNCTION_ENTITY_CLASS = "Function"

RELATIONSHIP_TYPE_CLOUD_FUNCTION_USES_IAM_SERVICE_ACCOUNT = relationship_type(
    CLOUD_FUNCTION_ENTITY_TYPE, RelationshipClass.USES, IAM_SERVICE_ACCOUNT_ENTITY_TYPE
)


def create_cloud_function_entity(cloud_function: Any) -> dict:
    parsed = parse_resource_name(cloud_function.name, CLOUD_FUNCTION)
    https_trigger = getattr(cloud_function, "https_trigger", None)
    timeout = getattr(cloud_function, "timeout", None)

    return {
        "_key": cloud_function.name,
        "_type": CLOUD_FUNCTION_ENTITY_TYPE,
        "_class": CLOUD_FUNCTION_ENTITY_CLASS,
        "name": cloud_function.name,
        "displayName": parsed.leaf_id,
        "projectId": parsed["projects"],
        "location": parsed["locations"],
        "functionId": parsed["functions"],
        "description": value_or_none(cloud_function.description),
        "status": enum_name(cloud_function.status),
        "entryPoint": value_or_none(cloud_function.entry_point),
        "runtime": value_or_none(cloud_function.runtime),
        "timeout": duration_seconds(timeout) if timeout else None,
        "availableMemoryMb": cloud_function.available_memory_mb or None,
        "serviceAccountEmail": value_or_none(cloud_function.service_account_email),
        "updatedOn": timestamp(cloud_function.update_time),
        "versionId": cloud_function.version_id or None,
        "trigger": "HTTPS" if https_trigger and getattr(https_trigger, "url", None) else "EVENT",
        "httpsTriggerUrl": value_or_none(getattr(https_trigger, "url", None)),
        "ingressSettings": enum_name(cloud_function.ingress_settings),
        "sourceArchiveUrl": value_or_none(cloud_function.source_archive_url),
        "labels": string_map(getattr(cloud_function, "labels", None)) or None,
    }


def fetch_cloud_functions(context: CollectionContext) -> None:
    job_state = context.job_state
    client = CloudFunctionsClient(context.config, context.credentials)

    try:
        for cloud_function in client.iterate_functions():
            try:
                entity = create_cloud_function_entity(cloud_function)
            except MalformedResourceNameError as exc:
                context.logger.warning("Skipping cloud function: %s", exc)
                continue
            job_state.add_entity(entity)
    except MissingPermissionError as err:
        context.missing_permission(err)


def build_cloud_function_service_account_relationships(context: CollectionContext) -> None:
    job_state = context.job_state

    for cloud_function_entity in job_state.iterate_entities(CLOUD_FUNCTION_ENTITY_TYPE):
        service_account_email = cloud_function_entity.get("serviceAccountEmail")
        if not service_account_email:
            continue

        service_account_entity = job_state.find_entity(service_account_email)
        if not service_account_entity:
            continue

        job_state.add_relationship(
            create_direct_relationship(
                RelationshipClass.USES, cloud_function_entity, service_account_entity
            )
        )


STEPS = [
    StepDescriptor(
        id=STEP_CLOUD_FUNCTIONS,
        name="Cloud Functions",
        entities=(
            EntitySchema("Cloud Function", CLOUD_FUNCTION_ENTITY_TYPE, CLOUD_FUNCTION_ENTITY_CLASS),
        ),
        handler=fetch_cloud_functions,
    ),
    StepDescriptor(
        id=STEP_CLOUD_FUNCTIONS_SERVICE_ACCOUNT_RELATIONSHIPS,
        name="Cloud Function Service Account Relationships",
        relationships=(
            RelationshipSchema(
                RelationshipClass.USES,
                RELATIONSHIP_TYPE_CLOUD_FUNCTION_USES_IAM_SERVICE_ACCOUNT,
                CLOUD_FUNCTION_ENTITY_TYPE,
                IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
            ),
        ),
        depends_on=(STEP_CLOUD_FUNCTIONS, STEP_IAM_SERVICE_ACCOUNTS),
        reads=(CLOUD_FUNCTION_ENTITY_TYPE, IAM_SERVICE_ACCOUNT_ENTITY_TYPE),
        handler=build_cloud_function_service_account_relationships,
    ),
]
