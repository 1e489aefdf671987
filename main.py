"""MCP server entry point for PlanTrack."""

from plantrack.server import main

if __name__ == "__main__":
    main()
