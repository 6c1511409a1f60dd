#!/usr/bin/env python3
"""
EntraAware MCP Server Smoke Check

This script checks an EntraAware setup against a real tenant by:
1. Verifying authentication for both Graph and ARM
2. Calling Microsoft Graph through askEntra
3. Calling Azure Resource Manager through askAzure
4. Running a predefined operation
5. Confirming errors come back as error payloads

Run it before adding the server to Claude Desktop or other MCP clients.
"""

import asyncio
import os
import sys

from entra_aware_core import ARM_SCOPE, GRAPH_SCOPE
from entra_aware_mcp import get_executor, handle_azure_request, handle_entra_request
from entra_aware_params import AzureRequestInput, EntraRequestInput


class SmokeRunner:
    def __init__(self):
        self.checks_passed = 0
        self.checks_failed = 0
        self.executor = get_executor()

    async def run_all_checks(self):
        """Run all checks and report results."""
        print("🧪 EntraAware MCP Server Smoke Check")
        print("=" * 50)

        await self.check_authentication()
        await self.check_graph()
        await self.check_azure()
        await self.check_predefined_operation()
        await self.check_error_handling()

        self.print_final_results()

    def _record(self, ok: bool, success: str, failure: str):
        if ok:
            print(f"✅ {success}")
            self.checks_passed += 1
        else:
            print(f"❌ {failure}")
            self.checks_failed += 1

    async def check_authentication(self):
        """Check that tokens can be acquired for both audiences."""
        print("\n🔐 Check 1: Authentication")
        for scope in (GRAPH_SCOPE, ARM_SCOPE):
            try:
                token = await self.executor.context.get_token(scope)
                self._record(bool(token), f"Token acquired for {scope} (length: {len(token)})", f"Empty token for {scope}")
            except Exception as e:
                self._record(False, "", f"Authentication failed for {scope}: {e}")
                print("💡 Tips:")
                print("   - Run 'az login' to use Azure CLI authentication")
                print("   - Or set TENANT_ID, CLIENT_ID and CLIENT_SECRET for a service principal")

    async def check_graph(self):
        """Check a simple Graph call."""
        print("\n🌐 Check 2: Microsoft Graph")
        result = await handle_entra_request(EntraRequestInput(path="/organization", select="id,displayName"), self.executor)
        self._record(result.text.startswith("Entra API Result"), "Graph request succeeded", f"Graph request failed:\n{result.text[:400]}")

    async def check_azure(self):
        """Check a simple ARM call."""
        print("\n☁️  Check 3: Azure Resource Manager")
        result = await handle_azure_request(AzureRequestInput(path="/subscriptions"), self.executor)
        self._record(result.text.startswith("Azure API Result"), "ARM request succeeded", f"ARM request failed:\n{result.text[:400]}")

    async def check_predefined_operation(self):
        """Check a predefined operation that needs no subscription."""
        print("\n📋 Check 4: Predefined operation (listResourceProviders)")
        result = await handle_azure_request(
            AzureRequestInput(operation="listResourceProviders", fetchAllPages=True),
            self.executor,
        )
        self._record(result.text.startswith("Azure API Result"), "Provider listing succeeded", f"Provider listing failed:\n{result.text[:400]}")

    async def check_error_handling(self):
        """Check that an invalid path yields an error payload instead of raising."""
        print("\n🚨 Check 5: Error handling")
        result = await handle_entra_request(EntraRequestInput(path="/thisPathDoesNotExist"), self.executor)
        self._record(result.text.startswith("Error querying Entra API"), "Invalid path returned an error payload", f"Unexpected result: {result.text[:200]}")

    def print_final_results(self):
        """Print the final results."""
        total = self.checks_passed + self.checks_failed

        print("\n" + "=" * 50)
        print("📊 Smoke Check Summary")
        print("=" * 50)
        print(f"Total checks run: {total}")
        print(f"✅ Passed: {self.checks_passed}")
        print(f"❌ Failed: {self.checks_failed}")

        if self.checks_failed == 0:
            print("\n🎉 All checks passed! EntraAware is ready to use.")
        else:
            success_rate = (self.checks_passed / total) * 100 if total > 0 else 0
            print(f"\n⚠️  {self.checks_failed} check(s) failed (Success rate: {success_rate:.1f}%)")


async def main():
    print("EntraAware MCP Server Smoke Check")
    print("This script calls live Microsoft Graph and Azure endpoints.\n")

    print("🔍 Environment Check:")
    cli_available = os.system("az account show > /dev/null 2>&1") == 0
    sp_vars_set = all([os.getenv("TENANT_ID"), os.getenv("CLIENT_ID"), os.getenv("CLIENT_SECRET")])

    if cli_available:
        print("✅ Azure CLI authentication available")
    elif sp_vars_set:
        print("✅ Service Principal environment variables set")
    else:
        print("⚠️  No Azure CLI login or TENANT_ID/CLIENT_ID/CLIENT_SECRET found")
        print("   DefaultAzureCredential may still find managed identity or AZURE_* variables")

    runner = SmokeRunner()
    await runner.run_all_checks()
    if runner.checks_failed:
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n⏹️  Smoke check interrupted by user")
