"""Configuration loading and Google Ads credential lookup."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring

from adbulk.models import BulkConfig

SERVICE_NAME = "adbulk-google-ads"

# keyring key name -> environment variable fallback
CREDENTIAL_KEYS: dict[str, str] = {
    "developer_token": "GOOGLE_ADS_DEVELOPER_TOKEN",
    "client_id": "GOOGLE_ADS_CLIENT_ID",
    "client_secret": "GOOGLE_ADS_CLIENT_SECRET",
    "refresh_token": "GOOGLE_ADS_REFRESH_TOKEN",
}


def get_credential(key_name: str) -> str:
    """Get one Google Ads credential: system keyring first, then env var fallback.

    Args:
        key_name: One of :data:`CREDENTIAL_KEYS`.

    Returns:
        Credential string.

    Raises:
        KeyError: If *key_name* is not a known credential.
        RuntimeError: If the credential is found nowhere, with actionable instructions.
    """
    env_var = CREDENTIAL_KEYS[key_name]

    value = keyring.get_password(SERVICE_NAME, key_name)
    if value:
        return value

    value = os.environ.get(env_var)
    if value:
        return value

    raise RuntimeError(
        f"Google Ads credential '{key_name}' not found.\n"
        f"Set it with: adbulk config set-credential {key_name} VALUE\n"
        f"Or: export {env_var}=value"
    )


def get_google_ads_credentials(config: BulkConfig) -> dict[str, object]:
    """Assemble the dict accepted by ``GoogleAdsClient.load_from_dict``.

    Raises:
        RuntimeError: If any required credential is missing.
    """
    credentials: dict[str, object] = {
        key_name: get_credential(key_name) for key_name in CREDENTIAL_KEYS
    }
    credentials["use_proto_plus"] = True
    login_customer_id = config.login_customer_id or os.environ.get(
        "GOOGLE_ADS_LOGIN_CUSTOMER_ID"
    )
    if login_customer_id:
        credentials["login_customer_id"] = str(login_customer_id).replace("-", "")
    return credentials


def load_bulk_config(config_path: Path | None = None) -> BulkConfig:
    """Load pipeline configuration from JSON, falling back to defaults.

    Reads from ``config/bulk_config.json`` when *config_path* is ``None``.
    If the file does not exist, returns a ``BulkConfig`` with defaults.
    Unknown keys are ignored.

    Args:
        config_path: Optional explicit path to bulk_config.json.

    Returns:
        BulkConfig populated from file.
    """
    if config_path is None:
        config_path = Path("config/bulk_config.json")

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    field_names = {f.name for f in BulkConfig.__dataclass_fields__.values()}
    kwargs = {k: v for k, v in data.items() if k in field_names}

    return BulkConfig(**kwargs)
