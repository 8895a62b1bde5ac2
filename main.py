"""
mcp-relay - relay MCP server capabilities into a host capability registry.

Main entry point; see `mcprelay --help`.
"""

import sys
from pathlib import Path

# Allow running from a source checkout without an install
sys.path.insert(0, str(Path(__file__).parent / "src"))

from mcprelay.cli.main import run  # noqa: E402


if __name__ == "__main__":
    run()
