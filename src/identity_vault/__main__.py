"""Allow `python -m identity_vault` to invoke the CLI entry-point safely under pytest."""

from typer.main import get_command

from .cli import app


def main() -> None:
    """Show the CLI help without consuming the host process's argv."""
    cmd = get_command(app)
    try:
        cmd.main(args=["--help"], prog_name="identity-vault")
    except SystemExit:
        # Help prints then exits; suppress for embedding
        return


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
