"""Entry point for running PO sync alerts as a module.

Usage:
    python -m posync validate-config
    python -m posync --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from posync.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
