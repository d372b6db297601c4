"""Minimal FastMCP fixture server for integration tests.

Exposes a couple of tools, one prompt and one static resource so every
capability list the connection manager fetches is non-empty.

Usage:
    python fixtures/companion_server.py
    fastmcp run fixtures/companion_server.py
"""

from fastmcp import FastMCP

mcp = FastMCP(
    name="companion-fixture",
    instructions="A test fixture exposing tools, a prompt and a resource.",
)


@mcp.tool()
def echo(message: str) -> str:
    """Echo a message back.

    Args:
        message: The message to echo.
    """
    return message


@mcp.tool()
def add(a: int, b: int) -> int:
    """Add two integers.

    Args:
        a: First addend.
        b: Second addend.
    """
    return a + b


@mcp.prompt()
def greeting(name: str) -> str:
    """Greet someone by name."""
    return f"Say hello to {name}."


@mcp.resource("fixture://readme", mime_type="text/plain")
def readme() -> str:
    """Static text resource."""
    return "companion fixture readme"


if __name__ == "__main__":
    mcp.run(transport="stdio")
