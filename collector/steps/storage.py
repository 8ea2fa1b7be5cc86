"""Cloud Storage buckets."""

from __future__ import annotations

from typing import Any

from collector.clients import StorageClient
from collector.errors import MissingPermissionError
from collector.executor import CollectionContext
from collector.fields import string_map, timestamp, value_or_none
from collector.registry import EntitySchema, StepDescriptor

STEP_CLOUD_STORAGE_BUCKETS = "fetch-storage-buckets"

CLOUD_STORAGE_BUCKET_ENTITY_TYPE = "google_storage_bucket"
CLOUD_STORAGE_BUCKET_ENTITY_CLASS = "DataStore"


def bucket_key(bucket_name: str) -> str:
    """Buckets are keyed by their globally unique name."""
    return bucket_name


def create_cloud_storage_bucket_entity(bucket: Any, project_id: str) -> dict:
    iam_configuration = getattr(bucket, "iam_configuration", None) or {}
    return {
        "_key": bucket_key(bucket.name),
        "_type": CLOUD_STORAGE_BUCKET_ENTITY_TYPE,
        "_class": CLOUD_STORAGE_BUCKET_ENTITY_CLASS,
        "name": bucket.name,
        "displayName": bucket.name,
        "id": value_or_none(bucket.id),
        "projectId": project_id,
        "location": value_or_none(bucket.location),
        "locationType": value_or_none(bucket.location_type),
        "storageClass": value_or_none(bucket.storage_class),
        "versioningEnabled": bool(bucket.versioning_enabled),
        "encrypted": True,
        "kmsKeyName": value_or_none(bucket.default_kms_key_name),
        "uniformBucketLevelAccess": iam_configuration.get(
            "uniformBucketLevelAccess", {}
        ).get("enabled"),
        "publicAccessPrevention": iam_configuration.get("publicAccessPrevention"),
        "createdOn": timestamp(bucket.time_created),
        "updatedOn": timestamp(bucket.updated),
        "labels": string_map(bucket.labels) or None,
    }


def fetch_storage_buckets(context: CollectionContext) -> None:
    job_state = context.job_state
    client = StorageClient(context.config, context.credentials)

    try:
        for bucket in client.iterate_buckets():
            job_state.add_entity(create_cloud_storage_bucket_entity(bucket, client.project_id))
    except MissingPermissionError as err:
        context.missing_permission(err)


STEPS = [
    StepDescriptor(
        id=STEP_CLOUD_STORAGE_BUCKETS,
        name="Cloud Storage Buckets",
        entities=(
            EntitySchema(
                "Cloud Storage Bucket",
                CLOUD_STORAGE_BUCKET_ENTITY_TYPE,
                CLOUD_STORAGE_BUCKET_ENTITY_CLASS,
            ),
        ),
        handler=fetch_storage_buckets,
    ),
]
