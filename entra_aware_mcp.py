#!/usr/bin/env python3
"""
EntraAware MCP Server

This MCP server gives AI assistants direct access to Microsoft Graph (Entra ID)
and the Azure Resource Management API through two generic tools.

Key Features:
- askEntra: any Graph path, method and body, with OData shorthand parameters
- askAzure: any ARM path, or a predefined operation such as listResources
- Automatic pagination over @odata.nextLink / nextLink
- API version discovery for resource providers
- Azure AD authentication via DefaultAzureCredential or a client secret
"""

import logging
import sys
from typing import Optional

from mcp.server.fastmcp import FastMCP

from entra_aware_core import (
    ARM_PROFILE,
    GRAPH_PROFILE,
    AzureContext,
    MissingParameterError,
    RequestExecutor,
    RequestSpec,
    ToolResult,
    format_error,
    format_success,
    resolve_api_version,
)
from entra_aware_params import (
    AzureRequestInput,
    EntraRequestInput,
    normalize_query,
    resolve_operation,
)

# Initialize FastMCP server
mcp = FastMCP("EntraAware")

# Configure logging
logging.basicConfig(level=logging.INFO)
logging.getLogger("azure.identity").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# Process-owned credential context and executor
_context = AzureContext()
_executor: Optional[RequestExecutor] = None


def get_executor() -> RequestExecutor:
    """Return the executor shared by every tool call in this process."""
    global _executor
    if _executor is None:
        _executor = RequestExecutor(_context)
    return _executor


async def handle_entra_request(params: EntraRequestInput, executor: RequestExecutor) -> ToolResult:
    """Run a Microsoft Graph request and wrap the outcome in a ToolResult."""
    try:
        query_params = normalize_query(
            params.query_params,
            select=params.select,
            filter=params.filter,
            expand=params.expand,
            order_by=params.order_by,
            top=params.top,
            count=params.count,
        )
        spec = RequestSpec(
            path=params.path,
            method=params.method,
            api_version=params.api_version.value,
            query_params=query_params,
            body=params.body,
            fetch_all_pages=params.fetch_all_pages,
            consistency_level=params.consistency_level,
        )
        result = await executor.execute(GRAPH_PROFILE, spec)
        return format_success(GRAPH_PROFILE.name, spec.method, spec.path, result)

    except Exception as e:
        logger.error(f"Entra API request failed: {e}")
        return format_error(e, GRAPH_PROFILE.name)


async def handle_azure_request(params: AzureRequestInput, executor: RequestExecutor) -> ToolResult:
    """
    Run an Azure Resource Manager request and wrap the outcome in a ToolResult.

    Predefined operations are resolved first. When no API version is known
    and the request targets a resource provider, the provider's metadata is
    queried for one.
    """
    try:
        plan = resolve_operation(params.operation, params)

        api_version = plan.api_version
        has_query_version = "api-version" in params.query_params
        if not api_version and not has_query_version and plan.version_hint:
            provider_namespace, resource_type = plan.version_hint
            api_version = await resolve_api_version(executor, provider_namespace, resource_type)

        if not api_version and not has_query_version:
            raise MissingParameterError(params.operation.value, ["apiVersion"])

        path = plan.path
        if params.subscription_id and "/subscriptions/" not in path:
            path = f"/subscriptions/{params.subscription_id}{path if path.startswith('/') else '/' + path}"

        spec = RequestSpec(
            path=path,
            method=plan.method,
            api_version=api_version,
            query_params=params.query_params,
            body=plan.body,
            fetch_all_pages=params.fetch_all_pages,
        )
        result = await executor.execute(ARM_PROFILE, spec)
        return format_success(ARM_PROFILE.name, spec.method, plan.path, result)

    except Exception as e:
        logger.error(f"Azure API request failed: {e}")
        return format_error(e, ARM_PROFILE.name)


# MCP Tools
@mcp.tool(
    name="askEntra",
    annotations={
        "title": "Ask Microsoft Graph (Entra)",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": True
    }
)
async def ask_entra(params: EntraRequestInput) -> str:
    """
    Direct access to Microsoft Graph API for accurate Entra (Azure AD) data.

    Args:
        params (EntraRequestInput): Request parameters containing:
            - path (str): Graph API path (e.g., '/users', '/groups/{id}/members')
            - method (str): HTTP method, defaults to 'get'
            - queryParams (Dict[str, str]): Query parameters for the request
            - body (Optional[dict]): Request body for POST/PUT/PATCH
            - apiVersion (str): 'v1.0' or 'beta'
            - fetchAllPages (bool): Follow @odata.nextLink and merge all pages
            - consistencyLevel (Optional[str]): ConsistencyLevel header (e.g., 'eventual')
            - select, filter, expand, orderBy, top, count: OData shorthands

    Returns:
        str: Labelled JSON result, or a JSON error description

    Example usage:
        - List users: path='/users', select='displayName,mail', top=10
        - Count guests: path='/users/$count', filter="userType eq 'Guest'", consistencyLevel='eventual'
    """
    result = await handle_entra_request(params, get_executor())
    return result.text


@mcp.tool(
    name="askAzure",
    annotations={
        "title": "Ask Azure Resource Manager",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
        "openWorldHint": True
    }
)
async def ask_azure(params: AzureRequestInput) -> str:
    """
    Direct access to Azure Resource Management API for managing Azure resources.

    Args:
        params (AzureRequestInput): Request parameters containing:
            - path (str): ARM path for custom operations (e.g., '/subscriptions')
            - method (str): HTTP method, defaults to 'get'
            - apiVersion (Optional[str]): API version; discovered or defaulted when omitted
            - subscriptionId (Optional[str]): Prefixed to paths without '/subscriptions/'
            - body (Optional[dict]): Request body for POST/PUT/PATCH
            - queryParams (Dict[str, str]): Additional query parameters
            - fetchAllPages (bool): Follow nextLink and merge all pages
            - operation (str): Predefined operation or 'custom'
            - providerNamespace, resourceType, resourceGroupName, resourceName: Operation parameters

    Returns:
        str: Labelled JSON result, or a JSON error description

    Example usage:
        - List resources: operation='listResources', subscriptionId='...'
        - Get a provider: operation='getResourceProvider', providerNamespace='Microsoft.Compute'
        - Custom: path='/subscriptions/{id}/resourcegroups', apiVersion='2021-04-01'
    """
    result = await handle_azure_request(params, get_executor())
    return result.text


def main() -> None:
    """Run the server with stdio transport for desktop integration."""
    try:
        logger.info("EntraAware MCP Server running on stdio")
        mcp.run()
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)


# Main execution
if __name__ == "__main__":
    main()
