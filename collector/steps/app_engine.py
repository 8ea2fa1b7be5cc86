"""
App Engine: application -> services -> versions -> instances.

There is exactly one App Engine application per project.  Services, versions
and instances are fetched by fanning out over the parent entities the
previous step stored, using the ids parsed from their resource names at
creation time.
"""

from __future__ import annotations

from typing import Any

from collector.clients import AppEngineClient
from collector.errors import MalformedResourceNameError, MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import enum_name, flatten_prefixed, string_map, timestamp, value_or_none
from collector.graph import RelationshipClass, create_direct_relationship, relationship_type
from collector.names import (
    APP_ENGINE_APPLICATION,
    APP_ENGINE_INSTANCE,
    APP_ENGINE_SERVICE,
    APP_ENGINE_VERSION,
    parse_resource_name,
)
from collector.registry import EntitySchema, RelationshipSchema, StepDescriptor
from collector.steps.iam import IAM_SERVICE_ACCOUNT_ENTITY_TYPE, STEP_IAM_SERVICE_ACCOUNTS
from collector.steps.resource_manager import (
    IAM_USER_ENTITY_TYPE,
    PROJECT_ENTITY_TYPE,
    STEP_RESOURCE_MANAGER_IAM_POLICY,
    STEP_RESOURCE_MANAGER_PROJECT,
)
from collector.steps.storage import (
    CLOUD_STORAGE_BUCKET_ENTITY_TYPE,
    STEP_CLOUD_STORAGE_BUCKETS,
    bucket_key,
)

STEP_APP_ENGINE_APPLICATION = "fetch-app-engine-application"
STEP_APP_ENGINE_SERVICES = "fetch-app-engine-services"
STEP_APP_ENGINE_VERSIONS = "fetch-app-engine-versions"
STEP_APP_ENGINE_INSTANCES = "fetch-app-engine-instances"
STEP_APP_ENGINE_PROJECT_RELATIONSHIP = "build-project-has-app-engine-application-relationship"

ENTITY_TYPE_APP_ENGINE_APPLICATION = "google_app_engine_application"
ENTITY_CLASS_APP_ENGINE_APPLICATION = "Application"
ENTITY_TYPE_APP_ENGINE_SERVICE = "google_app_engine_service"
ENTITY_CLASS_APP_ENGINE_SERVICE = "Service"
ENTITY_TYPE_APP_ENGINE_VERSION = "google_app_engine_version"
ENTITY_CLASS_APP_ENGINE_VERSION = "Deployment"
ENTITY_TYPE_APP_ENGINE_INSTANCE = "google_app_engine_instance"
ENTITY_CLASS_APP_ENGINE_INSTANCE = "Host"

RELATIONSHIP_TYPE_APPLICATION_USES_BUCKET = relationship_type(
    ENTITY_TYPE_APP_ENGINE_APPLICATION, RelationshipClass.USES, CLOUD_STORAGE_BUCKET_ENTITY_TYPE
)
RELATIONSHIP_TYPE_APPLICATION_HAS_SERVICE = relationship_type(
    ENTITY_TYPE_APP_ENGINE_APPLICATION, RelationshipClass.HAS, ENTITY_TYPE_APP_ENGINE_SERVICE
)
RELATIONSHIP_TYPE_SERVICE_HAS_VERSION = relationship_type(
    ENTITY_TYPE_APP_ENGINE_SERVICE, RelationshipClass.HAS, ENTITY_TYPE_APP_ENGINE_VERSION
)
RELATIONSHIP_TYPE_VERSION_HAS_INSTANCE = relationship_type(
    ENTITY_TYPE_APP_ENGINE_VERSION, RelationshipClass.HAS, ENTITY_TYPE_APP_ENGINE_INSTANCE
)
RELATIONSHIP_TYPE_USER_CREATED_VERSION = relationship_type(
    IAM_USER_ENTITY_TYPE, RelationshipClass.CREATED, ENTITY_TYPE_APP_ENGINE_VERSION
)
RELATIONSHIP_TYPE_SERVICE_ACCOUNT_CREATED_VERSION = relationship_type(
    IAM_SERVICE_ACCOUNT_ENTITY_TYPE, RelationshipClass.CREATED, ENTITY_TYPE_APP_ENGINE_VERSION
)
RELATIONSHIP_TYPE_PROJECT_HAS_APPLICATION = relationship_type(
    PROJECT_ENTITY_TYPE, RelationshipClass.HAS, ENTITY_TYPE_APP_ENGINE_APPLICATION
)

# Output slot carrying the project's single application entity.
APP_ENGINE_APPLICATION_SLOT = "app_engine_application"


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------

def create_app_engine_application_entity(application: Any, project_id: str) -> dict:
    parsed = parse_resource_name(application.name, APP_ENGINE_APPLICATION)
    feature_settings = getattr(application, "feature_settings", None)
    return {
        "_key": application.name,
        "_type": ENTITY_TYPE_APP_ENGINE_APPLICATION,
        "_class": ENTITY_CLASS_APP_ENGINE_APPLICATION,
        "name": application.name,
        "displayName": application.name,
        "id": value_or_none(application.id),
        "appId": parsed["apps"],
        "projectId": project_id,
        "authDomain": value_or_none(application.auth_domain),
        "locationId": value_or_none(application.location_id),
        "codeBucket": value_or_none(application.code_bucket),
        "defaultBucket": value_or_none(application.default_bucket),
        "servingStatus": enum_name(application.serving_status),
        "defaultHostname": value_or_none(application.default_hostname),
        "gcrDomain": value_or_none(application.gcr_domain),
        "databaseType": enum_name(application.database_type),
        "splitHealthChecks": getattr(feature_settings, "split_health_checks", None),
        "useContainerOptimizedOs": getattr(feature_settings, "use_container_optimized_os", None),
    }


def create_app_engine_service_entity(service: Any) -> dict:
    parsed = parse_resource_name(service.name, APP_ENGINE_SERVICE)
    split = getattr(service, "split", None)
    allocations = dict(getattr(split, "allocations", None) or {})
    return {
        "_key": service.name,
        "_type": ENTITY_TYPE_APP_ENGINE_SERVICE,
        "_class": ENTITY_CLASS_APP_ENGINE_SERVICE,
        "name": service.name,
        "displayName": parsed.leaf_id,
        "id": value_or_none(service.id),
        "appId": parsed["apps"],
        "serviceId": parsed["services"],
        "splitShardBy": enum_name(getattr(split, "shard_by", None)),
        "labels": string_map(getattr(service, "labels", None)) or None,
        # Traffic share per version, e.g. "allocation.v1": 0.5
        **flatten_prefixed("allocation", allocations),
    }


def create_app_engine_version_entity(version: Any, project_id: str) -> dict:
    parsed = parse_resource_name(version.name, APP_ENGINE_VERSION)
    return {
        "_key": version.name,
        "_type": ENTITY_TYPE_APP_ENGINE_VERSION,
        "_class": ENTITY_CLASS_APP_ENGINE_VERSION,
        "name": version.name,
        "displayName": parsed.leaf_id,
        "id": value_or_none(version.id),
        "projectId": project_id,
        "appId": parsed["apps"],
        "serviceId": parsed["services"],
        "versionId": parsed["versions"],
        "instanceClass": value_or_none(version.instance_class),
        "runtime": value_or_none(version.runtime),
        "runtimeChannel": value_or_none(version.runtime_channel),
        "threadsafe": version.threadsafe,
        "env": value_or_none(version.env),
        "servingStatus": enum_name(version.serving_status),
        "createdBy": value_or_none(version.created_by),
        "createdOn": timestamp(version.create_time),
        "diskUsageBytes": value_or_none(version.disk_usage_bytes),
        "versionUrl": value_or_none(version.version_url),
    }


def create_app_engine_instance_entity(instance: Any) -> dict:
    parsed = parse_resource_name(instance.name, APP_ENGINE_INSTANCE)
    return {
        "_key": instance.name,
        "_type": ENTITY_TYPE_APP_ENGINE_INSTANCE,
        "_class": ENTITY_CLASS_APP_ENGINE_INSTANCE,
        "name": instance.name,
        "displayName": parsed.leaf_id,
        "id": value_or_none(instance.id),
        "appId": parsed["apps"],
        "serviceId": parsed["services"],
        "versionId": parsed["versions"],
        "instanceId": parsed["instances"],
        "appEngineRelease": value_or_none(instance.app_engine_release),
        "availability": enum_name(instance.availability),
        "startedOn": timestamp(instance.start_time),
        "requests": instance.requests,
        "qps": instance.qps,
        "averageLatency": instance.average_latency,
        "memoryUsage": value_or_none(instance.memory_usage),
        "vmStatus": value_or_none(getattr(instance, "vm_status", None)),
    }


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def fetch_app_engine_application(context: CollectionContext) -> None:
    job_state = context.job_state
    client = AppEngineClient(context.config, context.credentials)

    try:
        application = client.get_application()
    except MissingPermissionError as err:
        context.missing_permission(err)
        return

    if application is None:
        return

    try:
        application_entity = create_app_engine_application_entity(application, client.project_id)
    except MalformedResourceNameError as exc:
        context.logger.warning("Skipping App Engine application: %s", exc)
        return

    job_state.add_entity(application_entity)
    context.set_output(APP_ENGINE_APPLICATION_SLOT, application_entity)

    for bucket_name in (application.default_bucket, application.code_bucket):
        if not bucket_name:
            continue
        bucket_entity = job_state.find_entity(bucket_key(bucket_name))
        if bucket_entity:
            job_state.add_relationship(
                create_direct_relationship(
                    RelationshipClass.USES, application_entity, bucket_entity
                )
            )


def fetch_app_engine_services(context: CollectionContext) -> None:
    job_state = context.job_state
    client = AppEngineClient(context.config, context.credentials)
    application_entity = context.get_output(APP_ENGINE_APPLICATION_SLOT)

    try:
        for service in client.iterate_services():
            try:
                service_entity = create_app_engine_service_entity(service)
            except MalformedResourceNameError as exc:
                context.logger.warning("Skipping App Engine service: %s", exc)
                continue

            job_state.add_entity(service_entity)
            if application_entity:
                job_state.add_relationship(
                    create_direct_relationship(
                        RelationshipClass.HAS, application_entity, service_entity
                    )
                )
    except MissingPermissionError as err:
        context.missing_permission(err)


def fetch_app_engine_service_versions(context: CollectionContext) -> None:
    job_state = context.job_state
    client = AppEngineClient(context.config, context.credentials)

    try:
        for service_entity in job_state.iterate_entities(ENTITY_TYPE_APP_ENGINE_SERVICE):
            service_id = service_entity.get("serviceId")
            if not service_id:
                context.logger.warning(
                    "Service %s has no serviceId; skipping its versions", service_entity["_key"]
                )
                continue

            for version in client.iterate_versions(service_id):
                try:
                    version_entity = create_app_engine_version_entity(version, client.project_id)
                except MalformedResourceNameError as exc:
                    context.logger.warning("Skipping App Engine version: %s", exc)
                    continue

                job_state.add_entity(version_entity)
                job_state.add_relationship(
                    create_direct_relationship(
                        RelationshipClass.HAS, service_entity, version_entity
                    )
                )

                # Users and service accounts are both keyed by email.
                creator_entity = job_state.find_entity(version_entity["createdBy"])
                if creator_entity:
                    job_state.add_relationship(
                        create_direct_relationship(
                            RelationshipClass.CREATED, creator_entity, version_entity
                        )
                    )
    except MissingPermissionError as err:
        context.missing_permission(err)


def fetch_app_engine_version_instances(context: CollectionContext) -> None:
    job_state = context.job_state
    client = AppEngineClient(context.config, context.credentials)

    try:
        for version_entity in job_state.iterate_entities(ENTITY_TYPE_APP_ENGINE_VERSION):
            service_id = version_entity.get("serviceId")
            version_id = version_entity.get("versionId")
            if not service_id or not version_id:
                context.logger.warning(
                    "Version %s has no serviceId/versionId; skipping its instances",
                    version_entity["_key"],
                )
                continue

            for instance in client.iterate_instances(service_id, version_id):
                try:
                    instance_entity = create_app_engine_instance_entity(instance)
                except MalformedResourceNameError as exc:
                    context.logger.warning("Skipping App Engine instance: %s", exc)
                    continue

                job_state.add_entity(instance_entity)
                job_state.add_relationship(
                    create_direct_relationship(
                        RelationshipClass.HAS, version_entity, instance_entity
                    )
                )
    except MissingPermissionError as err:
        context.missing_permission(err)


def build_project_application_relationship(context: CollectionContext) -> None:
    job_state = context.job_state
    application_entity = context.get_output(APP_ENGINE_APPLICATION_SLOT)
    if not application_entity:
        return

    for project_entity in job_state.iterate_entities(PROJECT_ENTITY_TYPE):
        if project_entity.get("projectId") == application_entity.get("projectId"):
            job_state.add_relationship(
                create_direct_relationship(
                    RelationshipClass.HAS, project_entity, application_entity
                )
            )


# ---------------------------------------------------------------------------
# Step registry
# ---------------------------------------------------------------------------

STEPS = [
    StepDescriptor(
        id=STEP_APP_ENGINE_APPLICATION,
        name="AppEngine Application",
        entities=(
            EntitySchema(
                "AppEngine Application",
                ENTITY_TYPE_APP_ENGINE_APPLICATION,
                ENTITY_CLASS_APP_ENGINE_APPLICATION,
            ),
        ),
        relationships=(
            RelationshipSchema(
                RelationshipClass.USES,
                RELATIONSHIP_TYPE_APPLICATION_USES_BUCKET,
                ENTITY_TYPE_APP_ENGINE_APPLICATION,
                CLOUD_STORAGE_BUCKET_ENTITY_TYPE,
            ),
        ),
        depends_on=(STEP_CLOUD_STORAGE_BUCKETS,),
        reads=(CLOUD_STORAGE_BUCKET_ENTITY_TYPE,),
        outputs=(APP_ENGINE_APPLICATION_SLOT,),
        handler=fetch_app_engine_application,
    ),
    StepDescriptor(
        id=STEP_APP_ENGINE_SERVICES,
        name="AppEngine Services",
        entities=(
            EntitySchema(
                "AppEngine Service",
                ENTITY_TYPE_APP_ENGINE_SERVICE,
                ENTITY_CLASS_APP_ENGINE_SERVICE,
            ),
        ),
        relationships=(
            RelationshipSchema(
                RelationshipClass.HAS,
                RELATIONSHIP_TYPE_APPLICATION_HAS_SERVICE,
                ENTITY_TYPE_APP_ENGINE_APPLICATION,
                ENTITY_TYPE_APP_ENGINE_SERVICE,
            ),
        ),
        depends_on=(STEP_APP_ENGINE_APPLICATION,),
        inputs=(APP_ENGINE_APPLICATION_SLOT,),
        handler=fetch_app_engine_services,
    ),
    StepDescriptor(
        id=STEP_APP_ENGINE_VERSIONS,
        name="AppEngine Versions",
        entities=(
            EntitySchema(
                "AppEngine Version",
                ENTITY_TYPE_APP_ENGINE_VERSION,
                ENTITY_CLASS_APP_ENGINE_VERSION,
            ),
        ),
        relationships=(
            RelationshipSchema(
                RelationshipClass.HAS,
                RELATIONSHIP_TYPE_SERVICE_HAS_VERSION,
                ENTITY_TYPE_APP_ENGINE_SERVICE,
                ENTITY_TYPE_APP_ENGINE_VERSION,
            ),
            RelationshipSchema(
                RelationshipClass.CREATED,
                RELATIONSHIP_TYPE_USER_CREATED_VERSION,
                IAM_USER_ENTITY_TYPE,
                ENTITY_TYPE_APP_ENGINE_VERSION,
            ),
            RelationshipSchema(
                RelationshipClass.CREATED,
                RELATIONSHIP_TYPE_SERVICE_ACCOUNT_CREATED_VERSION,
                IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
                ENTITY_TYPE_APP_ENGINE_VERSION,
            ),
        ),
        depends_on=(
            STEP_APP_ENGINE_SERVICES,
            STEP_RESOURCE_MANAGER_IAM_POLICY,
            STEP_IAM_SERVICE_ACCOUNTS,
        ),
        reads=(
            ENTITY_TYPE_APP_ENGINE_SERVICE,
            IAM_USER_ENTITY_TYPE,
            IAM_SERVICE_ACCOUNT_ENTITY_TYPE,
        ),
        handler=fetch_app_engine_service_versions,
    ),
    StepDescriptor(
        id=STEP_APP_ENGINE_INSTANCES,
        name="AppEngine Instances",
        entities=(
            EntitySchema(
                "AppEngine Instance",
                ENTITY_TYPE_APP_ENGINE_INSTANCE,
                ENTITY_CLASS_APP_ENGINE_INSTANCE,
            ),
        ),
        relationships=(
            RelationshipSchema(
                RelationshipClass.HAS,
                RELATIONSHIP_TYPE_VERSION_HAS_INSTANCE,
                ENTITY_TYPE_APP_ENGINE_VERSION,
                ENTITY_TYPE_APP_ENGINE_INSTANCE,
            ),
        ),
        depends_on=(STEP_APP_ENGINE_VERSIONS,),
        reads=(ENTITY_TYPE_APP_ENGINE_VERSION,),
        handler=fetch_app_engine_version_instances,
    ),
    StepDescriptor(
        id=STEP_APP_ENGINE_PROJECT_RELATIONSHIP,
        name="Project to AppEngine Application Relationship",
        relationships=(
            RelationshipSchema(
                RelationshipClass.HAS,
                RELATIONSHIP_TYPE_PROJECT_HAS_APPLICATION,
                PROJECT_ENTITY_TYPE,
                ENTITY_TYPE_APP_ENGINE_APPLICATION,
            ),
        ),
        depends_on=(STEP_RESOURCE_MANAGER_PROJECT, STEP_APP_ENGINE_APPLICATION),
        reads=(PROJECT_ENTITY_TYPE,),
        inputs=(APP_ENGINE_APPLICATION_SLOT,),
        handler=build_project_application_relationship,
    ),
]
