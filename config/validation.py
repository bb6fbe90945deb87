# config/validation.py

"""
Environment variable validation for the enrollment importer.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    remote_url = os.environ.get("REMOTE_STORE_URL", "")
    if not remote_url:
        errors.append("REMOTE_STORE_URL is required in production. Set it to the remote store base URL.")
    elif not remote_url.startswith(("http://", "https://")):
        errors.append("REMOTE_STORE_URL must start with http:// or https://.")

    if not os.environ.get("REMOTE_STORE_TOKEN"):
        errors.append("REMOTE_STORE_TOKEN is required in production to authenticate against the remote store.")

    mapping_path = os.environ.get("IMPORTER_ALIAS_MAPPING_PATH")
    if mapping_path and not os.path.isfile(mapping_path):
        errors.append(f"IMPORTER_ALIAS_MAPPING_PATH points to a missing file: {mapping_path}")

    raw_concurrency = os.environ.get("IMPORTER_CONCURRENCY")
    if raw_concurrency:
        try:
            int(raw_concurrency)
        except ValueError:
            errors.append("IMPORTER_CONCURRENCY must be an integer.")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
