#!/usr/bin/env python3
"""
EntraAware HTTP MCP Server
Serves the askEntra and askAzure tools as JSON-RPC over plain HTTP for
clients that cannot launch a stdio server (N8N, mcp-remote, curl)
"""

import asyncio
import logging
import os
from typing import Any, Dict

from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from entra_aware_mcp import get_executor, handle_azure_request, handle_entra_request
from entra_aware_params import AzureRequestInput, EntraRequestInput

# Setup logging
logging.basicConfig(level=logging.INFO)
logging.getLogger("azure.identity").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# Create Flask app
app = Flask(__name__)
CORS(app)

SERVER_NAME = "EntraAware"
SERVER_VERSION = "0.0.6"
PROTOCOL_VERSION = "2024-11-05"

TOOLS = {
    "askEntra": {
        "description": "Direct access to Microsoft Graph API for accurate Entra (Azure AD) data",
        "model": EntraRequestInput,
        "handler": handle_entra_request,
    },
    "askAzure": {
        "description": "Direct access to Azure Resource Management API for managing Azure resources",
        "model": AzureRequestInput,
        "handler": handle_azure_request,
    },
}


def _error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message}
    }


def handle_mcp_request(data: Dict[str, Any]) -> Dict[str, Any]:
    """Handle an MCP JSON-RPC request and return the response."""
    method = data.get("method")
    request_id = data.get("id")
    params = data.get("params") or {}

    if method == "initialize":
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {
                    "name": SERVER_NAME,
                    "version": SERVER_VERSION
                }
            }
        }

    elif method == "tools/list":
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "tools": [
                    {
                        "name": name,
                        "description": tool["description"],
                        "inputSchema": tool["model"].model_json_schema(by_alias=True),
                    }
                    for name, tool in TOOLS.items()
                ]
            }
        }

    elif method == "tools/call":
        tool_name = params.get("name")
        tool = TOOLS.get(tool_name)
        if tool is None:
            return _error(request_id, -32602, f"Unknown tool: {tool_name}")

        try:
            arguments = tool["model"].model_validate(params.get("arguments") or {})
        except ValidationError as e:
            return _error(request_id, -32602, f"Invalid arguments for {tool_name}: {e}")

        # handlers convert their own failures into error envelopes
        result = asyncio.run(tool["handler"](arguments, get_executor()))
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": result.model_dump(exclude_none=True)
        }

    return _error(request_id, -32601, f"Method not found: {method}")


@app.route('/')
def root():
    """Root endpoint with server information."""
    return jsonify({
        "name": f"{SERVER_NAME} HTTP MCP Server",
        "version": SERVER_VERSION,
        "status": "running",
        "description": "JSON-RPC MCP endpoint for Microsoft Graph and Azure Resource Manager",
        "endpoints": {
            "mcp": "/mcp",
            "health": "/health"
        },
        "tools": list(TOOLS)
    })


@app.route('/health')
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "protocol": "MCP over HTTP"})


@app.route('/mcp', methods=['POST'])
def mcp_endpoint():
    """JSON-RPC endpoint for MCP clients."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}), 400

    logger.info(f"HTTP MCP request: {data.get('method')}")
    try:
        return jsonify(handle_mcp_request(data))
    except Exception as e:
        logger.error(f"HTTP MCP error: {e}")
        return jsonify(_error(data.get("id"), -32000, f"Internal error: {str(e)}")), 500


def main() -> None:
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting {SERVER_NAME} HTTP MCP Server on {host}:{port}")
    app.run(host=host, port=port, threaded=True)


if __name__ == '__main__':
    main()
