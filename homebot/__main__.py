import os

from dotenv import load_dotenv

from homebot.cli.commands import app


def main() -> None:
    # Load .env file from ~/.homebot/ if it exists
    # Precedence: existing env vars > .env file (override=False)
    load_dotenv(os.path.expanduser("~/.homebot/.env"), override=False)
    app()


if __name__ == "__main__":
    main()
