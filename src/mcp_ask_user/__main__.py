"""Allow `python -m mcp_ask_user` to invoke the CLI entry-point."""

import sys

from typer.main import get_command

from .cli import app


def main() -> None:
    """Dispatch to the Typer CLI entry-point; with no arguments, show help."""
    cmd = get_command(app)
    cmd.main(args=sys.argv[1:] or ["--help"], prog_name="mcp-ask-user")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
