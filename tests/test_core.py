"""Tests for the credential context, request executor, version resolver and formatters."""

import json
import os
import threading
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError

from entra_aware_core import (
    ARM_PROFILE,
    ARM_SCOPE,
    FALLBACK_API_VERSION,
    GRAPH_PROFILE,
    GRAPH_SCOPE,
    AzureContext,
    CredentialInitializationError,
    EntraAwareError,
    HttpMethod,
    MissingEnvironmentError,
    MissingParameterError,
    RequestSpec,
    TokenAcquisitionError,
    UpstreamConnectionError,
    UpstreamHttpError,
    format_error,
    format_success,
    resolve_api_version,
)

SP_ENV = {"TENANT_ID": "tenant", "CLIENT_ID": "client", "CLIENT_SECRET": "secret"}


class TestAzureContext:
    """Tests for credential creation and token acquisition."""

    def test_default_credential_is_created_once(self):
        with patch("entra_aware_core.DefaultAzureCredential") as default_cls:
            context = AzureContext()
            first = context.get_credential()
            second = context.get_credential()

        assert first is second
        default_cls.assert_called_once_with()

    @patch.dict(os.environ, SP_ENV)
    def test_falls_back_to_client_secret(self):
        with patch("entra_aware_core.DefaultAzureCredential", side_effect=RuntimeError("no default")), \
                patch("entra_aware_core.ClientSecretCredential") as secret_cls:
            credential = AzureContext().get_credential()

        secret_cls.assert_called_once_with("tenant", "client", "secret")
        assert credential is secret_cls.return_value

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_environment_after_default_failure(self):
        with patch("entra_aware_core.DefaultAzureCredential", side_effect=RuntimeError("no default")):
            with pytest.raises(MissingEnvironmentError) as excinfo:
                AzureContext().get_credential()

        message = str(excinfo.value)
        assert "TENANT_ID" in message
        assert "CLIENT_ID" in message
        assert "CLIENT_SECRET" in message
        assert isinstance(excinfo.value, CredentialInitializationError)

    @patch.dict(os.environ, SP_ENV)
    def test_both_strategies_failing(self):
        with patch("entra_aware_core.DefaultAzureCredential", side_effect=RuntimeError("no default")), \
                patch("entra_aware_core.ClientSecretCredential", side_effect=ValueError("bad tenant")):
            context = AzureContext()
            with pytest.raises(CredentialInitializationError) as excinfo:
                context.get_credential()

        assert not isinstance(excinfo.value, MissingEnvironmentError)
        assert context._credential is None

    def test_concurrent_first_calls_build_one_credential(self):
        def slow_default():
            time.sleep(0.05)
            return MagicMock()

        results = []
        with patch("entra_aware_core.DefaultAzureCredential", side_effect=slow_default) as default_cls:
            context = AzureContext()
            threads = [threading.Thread(target=lambda: results.append(context.get_credential())) for _ in range(5)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert default_cls.call_count == 1
        assert len({id(result) for result in results}) == 1

    @pytest.mark.asyncio
    async def test_get_token_uses_scope(self, credential):
        token = await AzureContext(credential).get_token(GRAPH_SCOPE)
        assert token == "test-token"
        assert credential.scopes == [GRAPH_SCOPE]

    @pytest.mark.asyncio
    async def test_get_token_empty_token(self):
        credential = MagicMock()
        credential.get_token.return_value = AccessToken("", 0)
        with pytest.raises(TokenAcquisitionError):
            await AzureContext(credential).get_token(ARM_SCOPE)

    @pytest.mark.asyncio
    async def test_get_token_none(self):
        credential = MagicMock()
        credential.get_token.return_value = None
        with pytest.raises(TokenAcquisitionError):
            await AzureContext(credential).get_token(ARM_SCOPE)

    @pytest.mark.asyncio
    async def test_get_token_authentication_failure(self):
        credential = MagicMock()
        credential.get_token.side_effect = ClientAuthenticationError("AADSTS7000215: Invalid client secret")
        with pytest.raises(TokenAcquisitionError) as excinfo:
            await AzureContext(credential).get_token(ARM_SCOPE)
        assert "Invalid client secret" in str(excinfo.value)


class TestApiProfile:
    """Tests for URL and parameter construction per profile."""

    def test_graph_url_embeds_version(self):
        assert GRAPH_PROFILE.build_url("/users", "v1.0") == "https://graph.microsoft.com/v1.0/users"
        assert GRAPH_PROFILE.build_url("me/messages", "beta") == "https://graph.microsoft.com/beta/me/messages"

    def test_graph_params_exclude_version(self):
        spec = RequestSpec(path="/users", api_version="v1.0", query_params={"$top": "5"})
        assert GRAPH_PROFILE.build_params(spec) == {"$top": "5"}

    def test_arm_url_ignores_version(self):
        assert ARM_PROFILE.build_url("/subscriptions", "2022-12-01") == "https://management.azure.com/subscriptions"

    def test_arm_params_add_api_version(self):
        spec = RequestSpec(path="/subscriptions", api_version="2022-12-01", query_params={"$top": "5"})
        assert ARM_PROFILE.build_params(spec) == {"$top": "5", "api-version": "2022-12-01"}

    def test_arm_params_keep_query_version_without_explicit(self):
        spec = RequestSpec(path="/subscriptions", query_params={"api-version": "2020-01-01"})
        assert ARM_PROFILE.build_params(spec) == {"api-version": "2020-01-01"}

    def test_absolute_url_used_verbatim(self):
        link = "https://graph.microsoft.com/v1.0/users?$skiptoken=abc"
        assert GRAPH_PROFILE.build_url(link, "v1.0") == link

    def test_request_spec_is_immutable(self):
        spec = RequestSpec(path="/users")
        with pytest.raises(Exception):
            spec.path = "/groups"


class TestRequestExecutor:
    """Tests for RequestExecutor."""

    @pytest.mark.asyncio
    async def test_single_get(self, make_executor, recorded):
        def handler(request):
            recorded.append(request)
            return httpx.Response(200, json={"value": [{"id": "1"}]})

        spec = RequestSpec(path="/users", api_version="v1.0", query_params={"$select": "id"}, consistency_level="eventual")
        result = await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert result == {"value": [{"id": "1"}]}
        request = recorded[0]
        assert request.method == "GET"
        assert request.url.path == "/v1.0/users"
        assert request.url.params["$select"] == "id"
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.headers["ConsistencyLevel"] == "eventual"

    @pytest.mark.asyncio
    async def test_write_without_body_sends_empty_object(self, make_executor, recorded):
        def handler(request):
            recorded.append(request)
            return httpx.Response(201, json={"id": "new"})

        spec = RequestSpec(path="/groups", method=HttpMethod.POST, api_version="v1.0")
        result = await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert result == {"id": "new"}
        assert recorded[0].method == "POST"
        assert json.loads(recorded[0].content) == {}

    @pytest.mark.asyncio
    async def test_write_sends_body(self, make_executor, recorded):
        def handler(request):
            recorded.append(request)
            return httpx.Response(200, json={})

        spec = RequestSpec(path="/users/1", method=HttpMethod.PATCH, api_version="v1.0", body={"jobTitle": "Engineer"})
        await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert recorded[0].method == "PATCH"
        assert json.loads(recorded[0].content) == {"jobTitle": "Engineer"}

    @pytest.mark.asyncio
    async def test_delete_with_empty_body(self, make_executor):
        spec = RequestSpec(path="/groups/1", method=HttpMethod.DELETE, api_version="v1.0")
        executor = make_executor(lambda request: httpx.Response(204))
        assert await executor.execute(GRAPH_PROFILE, spec) == {"status": "Successfully deleted"}

    @pytest.mark.asyncio
    async def test_empty_success_body(self, make_executor):
        spec = RequestSpec(path="/subscriptions/s/providers/Microsoft.Web/register", method=HttpMethod.POST, api_version="2021-04-01")
        executor = make_executor(lambda request: httpx.Response(202))
        assert await executor.execute(ARM_PROFILE, spec) == {"status": "Success"}

    @pytest.mark.asyncio
    async def test_non_json_body_returned_as_text(self, make_executor):
        spec = RequestSpec(path="/users/1/photo/$value", api_version="v1.0")
        executor = make_executor(lambda request: httpx.Response(200, text="not json"))
        assert await executor.execute(GRAPH_PROFILE, spec) == "not json"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_status_and_body(self, make_executor):
        error_body = {"error": {"code": "AuthorizationFailed", "message": "denied"}}
        spec = RequestSpec(path="/subscriptions", api_version="2022-12-01")
        executor = make_executor(lambda request: httpx.Response(403, json=error_body))

        with pytest.raises(UpstreamHttpError) as excinfo:
            await executor.execute(ARM_PROFILE, spec)

        assert excinfo.value.status == 403
        assert excinfo.value.detail == error_body

    @pytest.mark.asyncio
    async def test_connection_failure(self, make_executor):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        spec = RequestSpec(path="/subscriptions", api_version="2022-12-01")
        with pytest.raises(UpstreamConnectionError):
            await make_executor(handler).execute(ARM_PROFILE, spec)

    @pytest.mark.asyncio
    async def test_pagination_accumulates_graph_pages(self, make_executor, recorded):
        base = "https://graph.microsoft.com/v1.0/users"
        pages = {
            None: {"@odata.context": "ctx", "@odata.count": 5, "value": [1, 2], "@odata.nextLink": f"{base}?$skiptoken=a"},
            "a": {"value": [3], "@odata.nextLink": f"{base}?$skiptoken=b"},
            "b": {"value": [4, 5]},
        }

        def handler(request):
            recorded.append(request)
            return httpx.Response(200, json=pages[request.url.params.get("$skiptoken")])

        spec = RequestSpec(path="/users", api_version="v1.0", query_params={"$count": "true"}, fetch_all_pages=True)
        result = await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert result == {
            "@odata.context": "ctx",
            "@odata.count": 5,
            "value": [1, 2, 3, 4, 5],
            "totalItemsFetched": 5,
        }
        assert len(recorded) == 3
        assert all(request.headers["Authorization"] == "Bearer test-token" for request in recorded)

    @pytest.mark.asyncio
    async def test_pagination_follows_arm_next_link(self, make_executor):
        base = "https://management.azure.com/subscriptions/s/resources"
        pages = {
            None: {"value": ["a"], "nextLink": f"{base}?api-version=2021-04-01&$skiptoken=1"},
            "1": {"value": ["b", "c"], "nextLink": f"{base}?api-version=2021-04-01&$skiptoken=2"},
            "2": {"value": ["d"]},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("$skiptoken")])

        spec = RequestSpec(path="/subscriptions/s/resources", api_version="2021-04-01", fetch_all_pages=True)
        result = await make_executor(handler).execute(ARM_PROFILE, spec)

        assert result["value"] == ["a", "b", "c", "d"]
        assert result["totalItemsFetched"] == 4
        assert "nextLink" not in result

    @pytest.mark.asyncio
    async def test_single_page_returned_unwrapped(self, make_executor):
        page = {"@odata.context": "ctx", "value": [1, 2]}
        spec = RequestSpec(path="/users", api_version="v1.0", fetch_all_pages=True)
        executor = make_executor(lambda request: httpx.Response(200, json=page))

        result = await executor.execute(GRAPH_PROFILE, spec)

        assert result == page
        assert "totalItemsFetched" not in result

    @pytest.mark.asyncio
    async def test_page_failure_aborts_pagination(self, make_executor):
        base = "https://graph.microsoft.com/v1.0/users"

        def handler(request):
            if request.url.params.get("$skiptoken") == "a":
                return httpx.Response(503, text="Service Unavailable")
            return httpx.Response(200, json={"value": [1], "@odata.nextLink": f"{base}?$skiptoken=a"})

        spec = RequestSpec(path="/users", api_version="v1.0", fetch_all_pages=True)
        with pytest.raises(UpstreamHttpError) as excinfo:
            await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert excinfo.value.status == 503
        assert excinfo.value.detail == "Service Unavailable"

    @pytest.mark.asyncio
    async def test_non_object_page_aborts_pagination(self, make_executor):
        base = "https://graph.microsoft.com/v1.0/users"

        def handler(request):
            if request.url.params.get("$skiptoken") == "a":
                return httpx.Response(200, text="maintenance")
            return httpx.Response(200, json={"value": [1], "@odata.nextLink": f"{base}?$skiptoken=a"})

        spec = RequestSpec(path="/users", api_version="v1.0", fetch_all_pages=True)
        with pytest.raises(EntraAwareError) as excinfo:
            await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert excinfo.value.status == 200
        assert excinfo.value.detail == "maintenance"
        assert "not a JSON object" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_fetch_all_pages_ignored_for_writes(self, make_executor, recorded):
        def handler(request):
            recorded.append(request)
            return httpx.Response(200, json={"value": [], "@odata.nextLink": "https://graph.microsoft.com/v1.0/next"})

        spec = RequestSpec(path="/users", method=HttpMethod.POST, api_version="v1.0", body={}, fetch_all_pages=True)
        result = await make_executor(handler).execute(GRAPH_PROFILE, spec)

        assert len(recorded) == 1
        assert "@odata.nextLink" in result


PROVIDER_METADATA = {
    "namespace": "Microsoft.Web",
    "apiVersions": ["2023-12-01", "2022-09-01"],
    "resourceTypes": [
        {"resourceType": "serverFarms", "apiVersions": ["2023-01-01"]},
        {"resourceType": "sites", "apiVersions": ["2024-04-01", "2023-12-01"]},
    ],
}


class TestResolveApiVersion:
    """Tests for resolve_api_version."""

    @pytest.mark.asyncio
    async def test_resource_type_match_is_case_insensitive(self, make_executor, recorded):
        def handler(request):
            recorded.append(request)
            return httpx.Response(200, json=PROVIDER_METADATA)

        version = await resolve_api_version(make_executor(handler), "Microsoft.Web", "Sites")

        assert version == "2024-04-01"
        assert recorded[0].url.path == "/providers/Microsoft.Web"
        assert recorded[0].url.params["api-version"] == "2021-04-01"

    @pytest.mark.asyncio
    async def test_provider_version_without_resource_type(self, make_executor):
        executor = make_executor(lambda request: httpx.Response(200, json=PROVIDER_METADATA))
        assert await resolve_api_version(executor, "Microsoft.Web") == "2023-12-01"

    @pytest.mark.asyncio
    async def test_unknown_resource_type_falls_back(self, make_executor):
        executor = make_executor(lambda request: httpx.Response(200, json=PROVIDER_METADATA))
        assert await resolve_api_version(executor, "Microsoft.Web", "staticSites") == FALLBACK_API_VERSION

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self, make_executor):
        executor = make_executor(lambda request: httpx.Response(404, json={"error": {"code": "InvalidResourceNamespace"}}))
        assert await resolve_api_version(executor, "Microsoft.Nope", "things") == FALLBACK_API_VERSION

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, make_executor):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        assert await resolve_api_version(make_executor(handler), "Microsoft.Web") == FALLBACK_API_VERSION

    @pytest.mark.asyncio
    async def test_malformed_metadata_falls_back(self, make_executor):
        executor = make_executor(lambda request: httpx.Response(200, json={"resourceTypes": ["oops"], "apiVersions": "x"}))
        assert await resolve_api_version(executor, "Microsoft.Web", "sites") == FALLBACK_API_VERSION


class TestFormatters:
    """Tests for format_success and format_error."""

    def test_success_label_and_body(self):
        result = format_success("Entra", HttpMethod.GET, "/users", {"value": [1]})
        assert len(result.content) == 1
        assert result.content[0].type == "text"
        label, body = result.text.split("\n\n", 1)
        assert label == "Entra API Result (GET /users):"
        assert json.loads(body) == {"value": [1]}

    def test_success_accepts_plain_method_string(self):
        result = format_success("Azure", "put", "/x", None)
        assert result.text.startswith("Azure API Result (PUT /x):")

    def test_error_from_upstream(self):
        err = UpstreamHttpError("Azure", 404, {"error": {"code": "ResourceNotFound"}})
        result = format_error(err, "Azure")

        prefix = "Error querying Azure API: "
        assert result.text.startswith(prefix)
        payload = json.loads(result.text[len(prefix):])
        assert payload == {
            "message": "Azure API error: 404",
            "name": "UpstreamHttpError",
            "status": 404,
            "detail": {"error": {"code": "ResourceNotFound"}},
        }

    def test_error_without_status_omits_fields(self):
        result = format_error(MissingParameterError("listResources", ["subscriptionId"]), "Azure")
        payload = json.loads(result.text.split(": ", 1)[1])
        assert payload == {
            "message": "Operation 'listResources' requires subscriptionId",
            "name": "MissingParameterError",
        }

    def test_error_from_arbitrary_exception(self):
        result = format_error(KeyError("value"), "Entra")
        payload = json.loads(result.text.split(": ", 1)[1])
        assert payload["name"] == "KeyError"
        assert "value" in payload["message"]
