"""
Tool inputs and request parameter handling for EntraAware.

- Input models for the askEntra and askAzure tools
- OData shorthand folding ($select, $filter, ...)
- Predefined Azure Resource Manager operations resolved to concrete requests
"""

import re
import time
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator

from entra_aware_core import HttpMethod, MissingParameterError

# Default API versions for common resource types
DEFAULT_API_VERSIONS: Dict[str, str] = {
    "resources": "2021-04-01",
    "resourceGroups": "2021-04-01",
    "subscriptions": "2022-12-01",
    "providers": "2021-04-01",
    "deployments": "2021-04-01",
    "Microsoft.Compute/virtualMachines": "2023-03-01",
    "Microsoft.Storage/storageAccounts": "2023-01-01",
    "Microsoft.Network/virtualNetworks": "2023-04-01",
    "Microsoft.KeyVault/vaults": "2023-02-01",
    "Microsoft.Billing/billingAccounts": "2024-04-01",
    "Microsoft.CostManagement/query": "2023-03-01",
}

ODATA_SHORTHANDS = {
    "select": "$select",
    "filter": "$filter",
    "expand": "$expand",
    "order_by": "$orderby",
}

PROVIDER_PATTERN = re.compile(r"/providers/([^/]+)")
PROVIDER_TYPE_PATTERN = re.compile(r"/providers/[^/]+/([^/]+)/?")


class GraphApiVersion(str, Enum):
    """Microsoft Graph API version."""
    V1 = "v1.0"
    BETA = "beta"


class AzureOperation(str, Enum):
    """Predefined Azure Resource Manager operations."""
    LIST_RESOURCES = "listResources"
    LIST_RESOURCE_PROVIDERS = "listResourceProviders"
    GET_RESOURCE_PROVIDER = "getResourceProvider"
    REGISTER_RESOURCE_PROVIDER = "registerResourceProvider"
    GET_RESOURCE_TYPES = "getResourceTypes"
    GET_API_VERSIONS = "getApiVersions"
    GET_LOCATIONS = "getLocations"
    CREATE_RESOURCE = "createResource"
    DEPLOY_TEMPLATE = "deployTemplate"
    DELETE_RESOURCE = "deleteResource"
    CUSTOM = "custom"


# Operations that can run without a subscription
SUBSCRIPTION_OPTIONAL = (
    AzureOperation.CUSTOM,
    AzureOperation.LIST_RESOURCE_PROVIDERS,
    AzureOperation.GET_RESOURCE_PROVIDER,
    AzureOperation.REGISTER_RESOURCE_PROVIDER,
)


def _lower_method(v):
    if isinstance(v, str):
        return v.strip().lower()
    return v


# Input Models
class EntraRequestInput(BaseModel):
    """Input for Microsoft Graph API requests."""
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True, extra='forbid', populate_by_name=True)

    path: str = Field(
        ...,
        description="The Graph API URL path (e.g. '/users/{id}/memberOf', '/directoryRoles')",
        min_length=1
    )
    method: HttpMethod = Field(
        default=HttpMethod.GET,
        description="HTTP method to use"
    )
    query_params: Dict[str, str] = Field(
        default_factory=dict,
        alias="queryParams",
        description="Query parameters for the request"
    )
    body: Optional[Dict[str, JsonValue]] = Field(
        default=None,
        description="Request body for POST/PUT/PATCH requests"
    )
    api_version: GraphApiVersion = Field(
        default=GraphApiVersion.V1,
        alias="apiVersion",
        description="Microsoft Graph API version"
    )
    fetch_all_pages: bool = Field(
        default=False,
        alias="fetchAllPages",
        description="Automatically fetch all pages of results"
    )
    consistency_level: Optional[str] = Field(
        default=None,
        alias="consistencyLevel",
        description="ConsistencyLevel header value (use 'eventual' for queries with $filter, $search, etc.)"
    )
    select: Optional[str] = Field(default=None, description="Shorthand for $select query parameter")
    filter: Optional[str] = Field(default=None, description="Shorthand for $filter query parameter")
    expand: Optional[str] = Field(default=None, description="Shorthand for $expand query parameter")
    order_by: Optional[str] = Field(default=None, alias="orderBy", description="Shorthand for $orderby query parameter")
    top: Optional[int] = Field(default=None, description="Shorthand for $top query parameter", ge=0)
    count: Optional[bool] = Field(default=None, description="Shorthand for $count=true to include count of items")

    @field_validator('method', mode='before')
    @classmethod
    def validate_method(cls, v):
        """Accept HTTP methods in any case."""
        return _lower_method(v)


class AzureRequestInput(BaseModel):
    """Input for Azure Resource Manager API requests."""
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True, extra='forbid', populate_by_name=True)

    path: str = Field(
        default="",
        description="The Azure API path (e.g. '/subscriptions', '/resourceGroups/{name}'); required for custom operations"
    )
    method: HttpMethod = Field(
        default=HttpMethod.GET,
        description="HTTP method to use"
    )
    api_version: Optional[str] = Field(
        default=None,
        alias="apiVersion",
        description="Azure API version - required for each Azure Resource Provider"
    )
    subscription_id: Optional[str] = Field(
        default=None,
        alias="subscriptionId",
        description="Azure Subscription ID (if not included in path)"
    )
    body: Optional[Dict[str, JsonValue]] = Field(
        default=None,
        description="Request body for POST/PUT/PATCH requests"
    )
    query_params: Dict[str, str] = Field(
        default_factory=dict,
        alias="queryParams",
        description="Additional query parameters"
    )
    fetch_all_pages: bool = Field(
        default=False,
        alias="fetchAllPages",
        description="Automatically fetch all pages of results"
    )
    operation: AzureOperation = Field(
        default=AzureOperation.CUSTOM,
        description="Predefined Azure operations"
    )
    provider_namespace: Optional[str] = Field(
        default=None,
        alias="providerNamespace",
        description="Resource provider namespace (e.g. 'Microsoft.Compute')"
    )
    resource_type: Optional[str] = Field(
        default=None,
        alias="resourceType",
        description="Resource type for specific operations"
    )
    resource_group_name: Optional[str] = Field(
        default=None,
        alias="resourceGroupName",
        description="Resource group name for resource operations"
    )
    resource_name: Optional[str] = Field(
        default=None,
        alias="resourceName",
        description="Resource name for resource operations"
    )

    @field_validator('method', mode='before')
    @classmethod
    def validate_method(cls, v):
        """Accept HTTP methods in any case."""
        return _lower_method(v)


class OperationPlan(BaseModel):
    """Concrete request fragment produced by resolving an operation."""

    path: str
    method: HttpMethod
    api_version: Optional[str] = None
    body: Optional[Dict[str, JsonValue]] = None
    # (provider namespace, resource type) to discover a version from when none is known
    version_hint: Optional[Tuple[str, Optional[str]]] = None


# Utility Functions
def normalize_query(
    explicit: Optional[Mapping[str, str]] = None,
    *,
    select: Optional[str] = None,
    filter: Optional[str] = None,
    expand: Optional[str] = None,
    order_by: Optional[str] = None,
    top: Optional[int] = None,
    count: Optional[bool] = None,
) -> Dict[str, str]:
    """
    Fold OData shorthand options into query string parameters.

    Shorthand values are applied on top of a copy of the explicit
    parameters, so a shorthand always replaces an explicit key of the
    same name.

    Args:
        explicit: Query parameters given as-is by the caller
        select, filter, expand, order_by: Map to $select, $filter, $expand, $orderby
        top: Maps to $top
        count: When true, sets $count=true

    Returns:
        Dict[str, str]: The merged query parameters
    """
    params = dict(explicit or {})
    shorthands = {"select": select, "filter": filter, "expand": expand, "order_by": order_by}
    for name, key in ODATA_SHORTHANDS.items():
        value = shorthands[name]
        if value:
            params[key] = value
    if top is not None:
        params["$top"] = str(top)
    if count:
        params["$count"] = "true"
    return params


def extract_provider_hint(path: str) -> Optional[Tuple[str, Optional[str]]]:
    """Extract (provider namespace, resource type) from a '/providers/{ns}/{type}' path."""
    match = PROVIDER_PATTERN.search(path)
    if not match:
        return None
    type_match = PROVIDER_TYPE_PATTERN.search(path)
    return match.group(1), type_match.group(1) if type_match else None


def _require(operation: AzureOperation, params: AzureRequestInput, fields: List[Tuple[str, Optional[str]]]) -> None:
    missing = [name for name, value in fields if not value]
    if missing:
        raise MissingParameterError(operation.value, missing)


def _resource_path(params: AzureRequestInput) -> str:
    return (
        f"/subscriptions/{params.subscription_id}/resourceGroups/{params.resource_group_name}"
        f"/providers/{params.provider_namespace}/{params.resource_type}/{params.resource_name}"
    )


def _resource_version(params: AzureRequestInput) -> Tuple[Optional[str], Optional[Tuple[str, Optional[str]]]]:
    default = DEFAULT_API_VERSIONS.get(f"{params.provider_namespace}/{params.resource_type}")
    if default:
        return default, None
    return None, (params.provider_namespace, params.resource_type)


def _provider_scope(params: AzureRequestInput) -> str:
    if params.subscription_id:
        return f"/subscriptions/{params.subscription_id}/providers"
    return "/providers"


def resolve_operation(operation: AzureOperation, params: AzureRequestInput) -> OperationPlan:
    """
    Resolve a predefined Azure operation into a concrete path, method and API version.

    An explicit apiVersion (or an api-version query parameter) always wins
    over the operation's default version. For custom operations the caller's
    path and method are kept.

    Raises:
        MissingParameterError: A parameter required by the operation is absent
    """
    operation = AzureOperation(operation)
    explicit_version = params.api_version or params.query_params.get("api-version")

    if operation not in SUBSCRIPTION_OPTIONAL:
        _require(operation, params, [("subscriptionId", params.subscription_id)])

    def with_default(key: str) -> Optional[str]:
        return params.api_version or (None if explicit_version else DEFAULT_API_VERSIONS[key])

    sub = params.subscription_id

    if operation == AzureOperation.LIST_RESOURCES:
        if params.resource_group_name:
            path = f"/subscriptions/{sub}/resourceGroups/{params.resource_group_name}/resources"
        else:
            path = f"/subscriptions/{sub}/resources"
        return OperationPlan(path=path, method=HttpMethod.GET, api_version=with_default("resources"))

    if operation == AzureOperation.LIST_RESOURCE_PROVIDERS:
        return OperationPlan(path=_provider_scope(params), method=HttpMethod.GET, api_version=with_default("providers"))

    if operation in (
        AzureOperation.GET_RESOURCE_PROVIDER,
        AzureOperation.GET_RESOURCE_TYPES,
        AzureOperation.GET_API_VERSIONS,
        AzureOperation.GET_LOCATIONS,
    ):
        _require(operation, params, [("providerNamespace", params.provider_namespace)])
        return OperationPlan(
            path=f"{_provider_scope(params)}/{params.provider_namespace}",
            method=HttpMethod.GET,
            api_version=with_default("providers"),
        )

    if operation == AzureOperation.REGISTER_RESOURCE_PROVIDER:
        _require(operation, params, [("providerNamespace", params.provider_namespace)])
        return OperationPlan(
            path=f"{_provider_scope(params)}/{params.provider_namespace}/register",
            method=HttpMethod.POST,
            api_version=with_default("providers"),
        )

    if operation in (AzureOperation.CREATE_RESOURCE, AzureOperation.DELETE_RESOURCE):
        _require(operation, params, [
            ("resourceGroupName", params.resource_group_name),
            ("providerNamespace", params.provider_namespace),
            ("resourceType", params.resource_type),
            ("resourceName", params.resource_name),
        ])
        if operation == AzureOperation.CREATE_RESOURCE:
            _require(operation, params, [("body", params.body)])
        if explicit_version:
            api_version, hint = params.api_version, None
        else:
            api_version, hint = _resource_version(params)
        return OperationPlan(
            path=_resource_path(params),
            method=HttpMethod.PUT if operation == AzureOperation.CREATE_RESOURCE else HttpMethod.DELETE,
            api_version=api_version,
            body=params.body if operation == AzureOperation.CREATE_RESOURCE else None,
            version_hint=hint,
        )

    if operation == AzureOperation.DEPLOY_TEMPLATE:
        _require(operation, params, [("resourceGroupName", params.resource_group_name)])
        properties = (params.body or {}).get("properties")
        if not isinstance(properties, dict) or not properties.get("template"):
            raise MissingParameterError(operation.value, ["body.properties.template"])
        body = dict(params.body)
        deployment_name = body.pop("deploymentName", None) or f"deployment-{int(time.time() * 1000)}"
        return OperationPlan(
            path=(
                f"/subscriptions/{sub}/resourcegroups/{params.resource_group_name}"
                f"/providers/Microsoft.Resources/deployments/{deployment_name}"
            ),
            method=HttpMethod.PUT,
            api_version=with_default("deployments"),
            body=body,
        )

    # custom
    _require(operation, params, [("path", params.path)])
    api_version = params.api_version
    hint = None
    if not explicit_version:
        if params.path == "/subscriptions":
            api_version = DEFAULT_API_VERSIONS["subscriptions"]
        else:
            hint = extract_provider_hint(params.path)
    return OperationPlan(
        path=params.path,
        method=params.method,
        api_version=api_version,
        body=params.body,
        version_hint=hint,
    )
