"""Shared FastMCP instance.

Tool modules register on this object; server.py imports them for their side
effect and runs it. Keeping it here lets tools import it without pulling in
the CLI.
"""

from mcp.server.fastmcp import FastMCP

mcp = FastMCP(
    "GTFS Graph",
    instructions="Scheduled departures and lines for imported GTFS feeds",
)
