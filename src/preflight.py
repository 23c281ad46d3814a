"""Pre-flight checks run before apply and destroy.

Catches configuration problems before any remote change is attempted,
with actionable error messages:
- API endpoint and token configured
- Token accepted by the provider health endpoint
- State directory present and writable
"""

import logging
import os
from pathlib import Path

import requests
import urllib3

from config import RunConfig

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# API Token Validation
# -----------------------------------------------------------------------------

def validate_api_token(api_endpoint: str, api_token: str, insecure: bool = False,
                       timeout: float = 10.0) -> list[str]:
    """Validate the provider API token is present and accepted.

    Args:
        api_endpoint: Provider base URL (e.g., https://api.example.test)
        api_token: Bearer token
        insecure: Skip TLS verification
        timeout: Request timeout in seconds

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not api_endpoint:
        errors.append(
            "API endpoint not configured\n"
            "  Add 'api_endpoint' to settings.yaml or set IAC_API_ENDPOINT"
        )
        return errors

    if not api_token:
        errors.append(
            "API token not found\n"
            "  Add 'api_token' to secrets.yaml or set IAC_API_TOKEN"
        )
        return errors

    if insecure:
        # Suppress SSL warnings for self-signed certs
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    url = f"{api_endpoint.rstrip('/')}/health"
    try:
        resp = requests.get(
            url,
            headers={"Authorization": f"Bearer {api_token}"},
            verify=not insecure,
            timeout=timeout,
        )

        if resp.status_code in (401, 403):
            errors.append(
                f"API token rejected by {api_endpoint} ({resp.status_code})\n"
                f"  Check the token in secrets.yaml or IAC_API_TOKEN"
            )
        elif resp.status_code != 200:
            errors.append(
                f"Unexpected health response from {api_endpoint}: {resp.status_code}\n"
                f"  Response: {resp.text[:100]}"
            )
        else:
            try:
                version = resp.json().get("version", "unknown")
            except ValueError:
                version = "unknown"
            logger.info(f"API token valid for {api_endpoint} (version {version})")

    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {api_endpoint}\n"
            f"  Check: endpoint URL, network access, firewall"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {api_endpoint}")
    except requests.exceptions.RequestException as e:
        errors.append(f"Error validating token: {e}")

    return errors


# -----------------------------------------------------------------------------
# State Store Validation
# -----------------------------------------------------------------------------

def validate_state_store(state_path: Path) -> list[str]:
    """Check the state directory exists and is writable.

    Returns:
        List of validation error messages (empty if valid)
    """
    directory = Path(state_path).parent
    if not directory.is_dir():
        return [
            f"State directory {directory} does not exist\n"
            f"  Run: iac-engine init --workdir <workdir>"
        ]
    if not os.access(directory, os.W_OK):
        return [f"State directory {directory} is not writable"]
    return []


# -----------------------------------------------------------------------------
# Combined Validation
# -----------------------------------------------------------------------------

def validate_readiness(config: RunConfig, requires_api: bool = True) -> list[str]:
    """Run all readiness checks for a phase.

    Args:
        config: RunConfig instance
        requires_api: Check provider credentials

    Returns:
        Combined list of all validation errors
    """
    errors = []
    if requires_api:
        errors.extend(validate_api_token(
            api_endpoint=config.api_endpoint,
            api_token=config.get_api_token(),
            insecure=config.insecure,
            timeout=config.request_timeout,
        ))
    errors.extend(validate_state_store(config.state_path))
    return errors


def format_preflight_errors(errors: list[str]) -> str:
    """Render errors as a bullet list with ✗ markers."""
    lines = ["Pre-flight validation failed:"]
    for error in errors:
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    return '\n'.join(lines)
