"""
Read-only Google Cloud resource clients.

One client per API family.  Every listing is exposed as an ``iterate_*``
generator that walks the API's page tokens explicitly until no token is
returned.  A 403 from any call is re-raised as ``MissingPermissionError``
naming the IAM permission that call requires; everything else propagates.

Every API call is written out literally; there is no dynamic dispatch.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Optional

from google.api_core.exceptions import Forbidden, NotFound, PermissionDenied
from google.cloud import (
    appengine_admin_v1,
    asset_v1,
    functions_v1,
    iam_admin_v1,
    resourcemanager_v3,
    storage,
)

from collector.config import CollectorConfig
from collector.errors import MissingPermissionError, PaginationError

logger = logging.getLogger(__name__)

# fetch_page(page_token) -> (items on that page, next page token)
FetchPage = Callable[[Optional[str]], tuple[Iterable[Any], Optional[str]]]


# ---------------------------------------------------------------------------
# Pagination / permission helpers
# ---------------------------------------------------------------------------

def iterate_pages(fetch_page: FetchPage) -> Iterator[Any]:
    """Yield every item of every page, in page order.

    Stops when a page comes back without a next token.  A token that was
    already followed once raises ``PaginationError``.
    """
    page_token: str | None = None
    seen_tokens: set[str] = set()
    page_count = 0

    while True:
        items, next_token = fetch_page(page_token)
        page_count += 1
        yield from items or ()

        if not next_token:
            logger.debug("Pagination finished after %d page(s)", page_count)
            return
        if next_token in seen_tokens:
            raise PaginationError(f"Page token {next_token!r} returned twice")
        seen_tokens.add(next_token)
        page_token = next_token


@contextmanager
def requires_permission(permission: str) -> Iterator[None]:
    """Translate a 403 raised inside the block into ``MissingPermissionError``."""
    try:
        yield
    except (PermissionDenied, Forbidden) as exc:
        raise MissingPermissionError(permission, exc) from exc


def _page_request(request: dict, page_token: str | None) -> dict:
    if page_token:
        return {**request, "page_token": page_token}
    return request


class _BaseClient:
    """Holds the project scope and credentials shared by every client."""

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        self.project_id = config.project_id
        self._credentials = credentials


# ---------------------------------------------------------------------------
# App Engine
# ---------------------------------------------------------------------------

class AppEngineClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._applications = None
        self._services = None
        self._versions = None
        self._instances = None

    @property
    def app_name(self) -> str:
        # One App Engine application per project, named after it.
        return f"apps/{self.project_id}"

    def _applications_client(self):
        if self._applications is None:
            self._applications = appengine_admin_v1.ApplicationsClient(credentials=self._credentials)
        return self._applications

    def _services_client(self):
        if self._services is None:
            self._services = appengine_admin_v1.ServicesClient(credentials=self._credentials)
        return self._services

    def _versions_client(self):
        if self._versions is None:
            self._versions = appengine_admin_v1.VersionsClient(credentials=self._credentials)
        return self._versions

    def _instances_client(self):
        if self._instances is None:
            self._instances = appengine_admin_v1.InstancesClient(credentials=self._credentials)
        return self._instances

    def get_application(self) -> Any | None:
        """Return the project's application, or None if App Engine is not set up."""
        with requires_permission("appengine.applications.get"):
            try:
                return self._applications_client().get_application(
                    request={"name": self.app_name}
                )
            except NotFound:
                logger.info("No App Engine application in project %s", self.project_id)
                return None

    def iterate_services(self) -> Iterator[Any]:
        client = self._services_client()

        def fetch(page_token):
            pager = client.list_services(
                request=_page_request({"parent": self.app_name}, page_token)
            )
            # Pagers expose the fields of the response they were built from.
            return pager.services, pager.next_page_token

        with requires_permission("appengine.services.list"):
            yield from iterate_pages(fetch)

    def iterate_versions(self, service_id: str) -> Iterator[Any]:
        client = self._versions_client()
        parent = f"{self.app_name}/services/{service_id}"

        def fetch(page_token):
            pager = client.list_versions(request=_page_request({"parent": parent}, page_token))
            return pager.versions, pager.next_page_token

        with requires_permission("appengine.versions.list"):
            yield from iterate_pages(fetch)

    def iterate_instances(self, service_id: str, version_id: str) -> Iterator[Any]:
        client = self._instances_client()
        parent = f"{self.app_name}/services/{service_id}/versions/{version_id}"

        def fetch(page_token):
            pager = client.list_instances(request=_page_request({"parent": parent}, page_token))
            return pager.instances, pager.next_page_token

        with requires_permission("appengine.instances.list"):
            yield from iterate_pages(fetch)


# ---------------------------------------------------------------------------
# Cloud Asset
# ---------------------------------------------------------------------------

class CloudAssetClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._client = None

    def _asset_client(self):
        if self._client is None:
            self._client = asset_v1.AssetServiceClient(credentials=self._credentials)
        return self._client

    def iterate_iam_policies(self) -> Iterator[Any]:
        """Yield every IAM policy search result under the project."""
        client = self._asset_client()
        request = {"scope": f"projects/{self.project_id}"}

        def fetch(page_token):
            pager = client.search_all_iam_policies(request=_page_request(request, page_token))
            return pager.results, pager.next_page_token

        with requires_permission("cloudasset.assets.searchAllIamPolicies"):
            yield from iterate_pages(fetch)


# ---------------------------------------------------------------------------
# Cloud Functions
# ---------------------------------------------------------------------------

class CloudFunctionsClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._client = None

    def _functions_client(self):
        if self._client is None:
            self._client = functions_v1.CloudFunctionsServiceClient(credentials=self._credentials)
        return self._client

    def iterate_functions(self) -> Iterator[Any]:
        """Yield every function in every location of the project."""
        client = self._functions_client()
        request = {"parent": f"projects/{self.project_id}/locations/-"}

        def fetch(page_token):
            pager = client.list_functions(request=_page_request(request, page_token))
            return pager.functions, pager.next_page_token

        with requires_permission("cloudfunctions.functions.list"):
            yield from iterate_pages(fetch)


# ---------------------------------------------------------------------------
# Cloud Storage
# ---------------------------------------------------------------------------

class StorageClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._client = None

    def _storage_client(self):
        if self._client is None:
            self._client = storage.Client(project=self.project_id, credentials=self._credentials)
        return self._client

    def iterate_buckets(self) -> Iterator[Any]:
        client = self._storage_client()

        def fetch(page_token):
            iterator = client.list_buckets(page_token=page_token)
            page = next(iterator.pages, None)
            items = list(page) if page is not None else []
            return items, iterator.next_page_token

        with requires_permission("storage.buckets.list"):
            yield from iterate_pages(fetch)


# ---------------------------------------------------------------------------
# IAM
# ---------------------------------------------------------------------------

class IamClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._client = None

    def _iam_client(self):
        if self._client is None:
            self._client = iam_admin_v1.IAMClient(credentials=self._credentials)
        return self._client

    def iterate_service_accounts(self) -> Iterator[Any]:
        client = self._iam_client()
        request = {"name": f"projects/{self.project_id}"}

        def fetch(page_token):
            pager = client.list_service_accounts(request=_page_request(request, page_token))
            return pager.accounts, pager.next_page_token

        with requires_permission("iam.serviceAccounts.list"):
            yield from iterate_pages(fetch)

    def list_service_account_keys(self, service_account_name: str) -> list[Any]:
        """Return the keys of one service account (this API is not paginated)."""
        with requires_permission("iam.serviceAccountKeys.list"):
            response = self._iam_client().list_service_account_keys(
                request={"name": service_account_name}
            )
        return list(response.keys)


# ---------------------------------------------------------------------------
# Resource Manager
# ---------------------------------------------------------------------------

class ResourceManagerClient(_BaseClient):

    def __init__(self, config: CollectorConfig, credentials: Any = None) -> None:
        super().__init__(config, credentials)
        self._client = None

    def _projects_client(self):
        if self._client is None:
            self._client = resourcemanager_v3.ProjectsClient(credentials=self._credentials)
        return self._client

    def get_project(self) -> Any:
        with requires_permission("resourcemanager.projects.get"):
            return self._projects_client().get_project(
                request={"name": f"projects/{self.project_id}"}
            )

    def get_iam_policy(self) -> Any:
        with requires_permission("resourcemanager.projects.getIamPolicy"):
            return self._projects_client().get_iam_policy(
                resource=f"projects/{self.project_id}"
            )
