"""
EntraAware core request machinery.

Shared by the Microsoft Graph (Entra) and Azure Resource Manager tools:
- Lazily initialised, cached Azure credential
- Request executor parameterised over the two API profiles
- Automatic pagination over continuation links
- API version discovery for resource providers
- Uniform text envelopes for results and errors
"""

import asyncio
import json
import logging
import os
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from mcp.types import TextContent
from pydantic import BaseModel, ConfigDict, Field, JsonValue

# Constants
GRAPH_BASE_URL = "https://graph.microsoft.com"
ARM_BASE_URL = "https://management.azure.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
ARM_SCOPE = "https://management.azure.com/.default"
FALLBACK_API_VERSION = "2021-04-01"
PROVIDER_LOOKUP_API_VERSION = "2021-04-01"
REQUEST_TIMEOUT = 30.0

logger = logging.getLogger(__name__)


# Errors
class EntraAwareError(Exception):
    """Base exception for errors raised while serving a tool call."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to the payload shown to the caller."""
        payload: Dict[str, Any] = {
            "message": self.message,
            "name": type(self).__name__,
        }
        if self.status is not None:
            payload["status"] = self.status
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class CredentialInitializationError(EntraAwareError):
    """Raised when no Azure credential could be created."""


class MissingEnvironmentError(CredentialInitializationError):
    """Raised when the client secret fallback lacks its environment variables."""


class TokenAcquisitionError(EntraAwareError):
    """Raised when the credential does not produce a bearer token."""


class MissingParameterError(EntraAwareError):
    """Raised when a predefined operation is missing required parameters."""

    def __init__(self, operation: str, missing: List[str]):
        self.operation = operation
        self.missing = list(missing)
        super().__init__(f"Operation '{operation}' requires {', '.join(self.missing)}")


class ApiVersionLookupError(EntraAwareError):
    """Raised internally when provider API versions cannot be discovered."""


class UpstreamHttpError(EntraAwareError):
    """Raised when the upstream API answers with a non-2xx status."""

    def __init__(self, api_type: str, status: int, body: Any = None):
        super().__init__(f"{api_type} API error: {status}", status=status, detail=body)


class UpstreamConnectionError(EntraAwareError):
    """Raised when the upstream API cannot be reached."""


# Credentials
class AzureContext:
    """
    Process-owned holder of the Azure credential.

    The credential is created on first use and reused afterwards. Creation
    runs under a lock so concurrent first calls build a single credential.
    """

    def __init__(self, credential: Any = None):
        self._credential = credential
        self._lock = threading.Lock()

    def get_credential(self) -> Any:
        """Return the cached credential, creating it on first call."""
        if self._credential is not None:
            return self._credential
        with self._lock:
            if self._credential is None:
                self._credential = _create_credential()
        return self._credential

    async def get_token(self, scope: str) -> str:
        """Get a bearer token for the given scope."""
        credential = self.get_credential()
        try:
            access_token = await asyncio.to_thread(credential.get_token, scope)
        except ClientAuthenticationError as e:
            raise TokenAcquisitionError(f"Failed to acquire access token for {scope}: {e.message}") from e

        token = getattr(access_token, "token", None)
        if not token:
            raise TokenAcquisitionError(f"Failed to acquire access token for {scope}")
        return token


def _create_credential() -> Any:
    try:
        logger.info("Attempting to use DefaultAzureCredential (will try Azure CLI if environment variables not set)")
        return DefaultAzureCredential()
    except Exception as e:
        logger.warning(f"DefaultAzureCredential failed: {e}")
        logger.warning("Falling back to ClientSecretCredential")

    tenant_id = os.getenv("TENANT_ID")
    client_id = os.getenv("CLIENT_ID")
    client_secret = os.getenv("CLIENT_SECRET")

    missing = [
        name
        for name, value in (("TENANT_ID", tenant_id), ("CLIENT_ID", client_id), ("CLIENT_SECRET", client_secret))
        if not value
    ]
    if missing:
        logger.error(f"ClientSecretCredential unavailable, missing {', '.join(missing)}")
        raise MissingEnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Please ensure you are logged in with 'az login' or have set environment variables."
        )

    try:
        return ClientSecretCredential(tenant_id, client_id, client_secret)
    except Exception as e:
        logger.error(f"ClientSecretCredential failed: {e}")
        raise CredentialInitializationError(
            "Failed to initialize any Azure credential. "
            "Please ensure you are logged in with 'az login' or have set environment variables."
        ) from e


# Request model
class HttpMethod(str, Enum):
    """HTTP methods accepted by the tools."""
    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"


WRITE_METHODS = (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


class RequestSpec(BaseModel):
    """A single proxied request, built fresh for every tool call."""
    model_config = ConfigDict(frozen=True)

    path: str
    method: HttpMethod = HttpMethod.GET
    api_version: Optional[str] = None
    query_params: Dict[str, str] = Field(default_factory=dict)
    body: Optional[JsonValue] = None
    fetch_all_pages: bool = False
    consistency_level: Optional[str] = None


class ApiProfile(BaseModel):
    """Everything that differs between the Graph and ARM upstreams."""
    model_config = ConfigDict(frozen=True)

    name: str
    base_url: str
    scope: str
    next_link_field: str
    api_version_in_query: bool

    def build_url(self, path: str, api_version: Optional[str]) -> str:
        """Build the absolute request URL for a path."""
        if path.startswith("https://"):
            return path
        path = path if path.startswith("/") else f"/{path}"
        if self.api_version_in_query or not api_version:
            return f"{self.base_url}{path}"
        return f"{self.base_url}/{api_version}{path}"

    def build_params(self, spec: RequestSpec) -> Dict[str, str]:
        """Build the query string parameters for a request."""
        params = dict(spec.query_params)
        if self.api_version_in_query and spec.api_version:
            params["api-version"] = spec.api_version
        return params


GRAPH_PROFILE = ApiProfile(
    name="Entra",
    base_url=GRAPH_BASE_URL,
    scope=GRAPH_SCOPE,
    next_link_field="@odata.nextLink",
    api_version_in_query=False,
)

ARM_PROFILE = ApiProfile(
    name="Azure",
    base_url=ARM_BASE_URL,
    scope=ARM_SCOPE,
    next_link_field="nextLink",
    api_version_in_query=True,
)


# Executor
class RequestExecutor:
    """Issue authenticated requests against an API profile, following pages on request."""

    def __init__(
        self,
        context: AzureContext,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.context = context
        self.transport = transport
        self.timeout = timeout

    async def execute(self, profile: ApiProfile, spec: RequestSpec) -> JsonValue:
        """
        Execute a request and return the decoded result.

        GET requests with fetch_all_pages follow the profile's continuation
        link until exhausted. When the first page carries no link it is
        returned as is; otherwise the items of every page are concatenated
        into an aggregated result.

        Raises:
            UpstreamHttpError: Any page or request answered with a non-2xx status
            UpstreamConnectionError: The upstream could not be reached
            TokenAcquisitionError: No bearer token was issued
            EntraAwareError: A continuation page was not a JSON object
        """
        token = await self.context.get_token(profile.scope)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if spec.consistency_level:
            headers["ConsistencyLevel"] = spec.consistency_level

        url = profile.build_url(spec.path, spec.api_version)
        params = profile.build_params(spec)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            if spec.method == HttpMethod.GET and spec.fetch_all_pages:
                return await self._fetch_all_pages(client, profile, url, params, headers)

            body = None
            if spec.method in WRITE_METHODS:
                body = spec.body if spec.body is not None else {}

            response = await self._send(client, profile, spec.method, url, headers, params=params, body=body)
            return _decode(response, spec.method)

    async def _fetch_all_pages(
        self,
        client: httpx.AsyncClient,
        profile: ApiProfile,
        url: str,
        params: Dict[str, str],
        headers: Dict[str, str],
    ) -> JsonValue:
        response = await self._send(client, profile, HttpMethod.GET, url, headers, params=params)
        first_page = _decode(response, HttpMethod.GET)

        next_link = first_page.get(profile.next_link_field) if isinstance(first_page, dict) else None
        if not next_link:
            return first_page

        items = list(first_page.get("value") or [])
        pages = 1
        while next_link:
            # continuation links already carry the full query string
            response = await self._send(client, profile, HttpMethod.GET, next_link, headers)
            page = _decode(response, HttpMethod.GET)
            pages += 1
            if not isinstance(page, dict):
                raise EntraAwareError(
                    f"{profile.name} API returned a page that is not a JSON object",
                    status=response.status_code,
                    detail=page,
                )
            items.extend(page.get("value") or [])
            next_link = page.get(profile.next_link_field)

        logger.info(f"Fetched {len(items)} items across {pages} pages from {profile.name} API")

        result = {
            key: value
            for key, value in first_page.items()
            if key not in ("value", profile.next_link_field)
        }
        result["value"] = items
        result["totalItemsFetched"] = len(items)
        return result

    async def _send(
        self,
        client: httpx.AsyncClient,
        profile: ApiProfile,
        method: HttpMethod,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
        body: JsonValue = None,
    ) -> httpx.Response:
        try:
            response = await client.request(
                method.value.upper(),
                url,
                headers=headers,
                params=params or None,
                json=body,
            )
        except httpx.TimeoutException as e:
            raise UpstreamConnectionError(f"Request to {profile.name} API timed out: {e}") from e
        except httpx.RequestError as e:
            raise UpstreamConnectionError(f"Request to {profile.name} API failed: {e}") from e

        if not response.is_success:
            raise UpstreamHttpError(profile.name, response.status_code, _parse_body(response))
        return response


def _parse_body(response: httpx.Response) -> JsonValue:
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        return text


def _decode(response: httpx.Response, method: HttpMethod) -> JsonValue:
    if not response.text:
        if method == HttpMethod.DELETE:
            return {"status": "Successfully deleted"}
        return {"status": "Success"}
    return _parse_body(response)


# API version discovery
async def _lookup_api_version(
    executor: RequestExecutor,
    provider_namespace: str,
    resource_type: Optional[str] = None,
) -> str:
    spec = RequestSpec(
        path=f"/providers/{provider_namespace}",
        api_version=PROVIDER_LOOKUP_API_VERSION,
    )
    try:
        provider = await executor.execute(ARM_PROFILE, spec)
    except EntraAwareError as e:
        raise ApiVersionLookupError(f"Failed to fetch API versions: {e.message}", status=e.status) from e

    if not isinstance(provider, dict):
        raise ApiVersionLookupError(f"Unexpected provider metadata for {provider_namespace}")

    if resource_type:
        for entry in provider.get("resourceTypes") or []:
            if not isinstance(entry, dict):
                continue
            if str(entry.get("resourceType", "")).lower() == resource_type.lower():
                versions = entry.get("apiVersions") or []
                if isinstance(versions, list) and versions:
                    return str(versions[0])
                break
    else:
        versions = provider.get("apiVersions") or []
        if isinstance(versions, list) and versions:
            return str(versions[0])

    target = f"{provider_namespace}/{resource_type}" if resource_type else provider_namespace
    raise ApiVersionLookupError(f"Could not find API version for {target}")


async def resolve_api_version(
    executor: RequestExecutor,
    provider_namespace: str,
    resource_type: Optional[str] = None,
) -> str:
    """
    Discover the API version to use for a resource provider.

    The first entry of the provider's (or resource type's) apiVersions list
    is taken as the most recent one. Never raises: lookup failures are
    logged and the fallback version is returned.

    Args:
        executor: Executor used to query the provider metadata
        provider_namespace: Resource provider namespace (e.g., 'Microsoft.Compute')
        resource_type: Optional resource type within the provider (e.g., 'virtualMachines')

    Returns:
        str: API version string
    """
    try:
        version = await _lookup_api_version(executor, provider_namespace, resource_type)
    except ApiVersionLookupError as e:
        logger.warning(f"Error fetching API versions: {e.message}; using {FALLBACK_API_VERSION}")
        return FALLBACK_API_VERSION
    logger.info(f"Resolved API version {version} for {provider_namespace}{'/' + resource_type if resource_type else ''}")
    return version


# Response formatting
class ToolResult(BaseModel):
    """Uniform tool envelope holding exactly one text block."""

    content: List[TextContent] = Field(min_length=1, max_length=1)

    @property
    def text(self) -> str:
        return self.content[0].text


def _text_result(text: str) -> ToolResult:
    return ToolResult(content=[TextContent(type="text", text=text)])


def format_success(api_type: str, method: str, path: str, result: Any) -> ToolResult:
    """Wrap a successful result with a label naming the API, method and path."""
    method_name = method.value if isinstance(method, HttpMethod) else str(method)
    body = json.dumps(result, indent=2, default=str)
    return _text_result(f"{api_type} API Result ({method_name.upper()} {path}):\n\n{body}")


def format_error(err: BaseException, api_type: str) -> ToolResult:
    """Convert any raised error into an error envelope."""
    if isinstance(err, EntraAwareError):
        detail = err.to_dict()
    else:
        detail = {"message": str(err), "name": type(err).__name__}
    return _text_result(f"Error querying {api_type} API: {json.dumps(detail, indent=2, default=str)}")
