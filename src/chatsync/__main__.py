"""Thin runnable wrapper for ``python -m chatsync``."""

from chatsync.cli import main as cli_main


def main() -> int:
    return cli_main()


if __name__ == "__main__":
    raise SystemExit(main())
