"""Minimal client that asks the operator one question over HTTP.

Start the server with `mcp-ask-user serve-http` and the operator terminal with
`mcp-ask-user respond`, then run this script. It uses the same
`fastmcp.Client` class the test-suite relies on.
"""

from __future__ import annotations

import asyncio
import json

from fastmcp import Client


async def main() -> None:
    async with Client("http://127.0.0.1:8766/mcp/") as client:
        health = await client.call_tool("health_check", {})
        print(f"==> Server ready; {health.data['pending_questions']} question(s) already pending")

        result = await client.call_tool(
            "ask_user",
            {
                "question": "Should I run the full test suite before committing?",
                "title": "Pre-commit check",
                "timeout": 120,
            },
        )
        print(json.dumps(result.data, indent=2))


if __name__ == "__main__":
    asyncio.run(main())
