"""Allow ``python -m murmur``."""

from murmur.cli import cli

if __name__ == "__main__":
    cli(prog_name="murmur")
