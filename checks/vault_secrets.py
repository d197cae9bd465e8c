#!/usr/bin/env python3
"""
MUTT v2.5 - Vault Credentials for Checks

Fetches Elasticsearch credentials from Vault (AppRole login, KV v2 read) so
passwords never appear in check command lines.

Expected secret layout at VAULT_SECRETS_PATH:
    ES_USER      (optional, falls back to the configured user)
    ES_PASSWORD  (required)

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import os
import logging
from typing import Any, Dict, Optional

import hvac

logger = logging.getLogger(__name__)


class VaultSecretsError(Exception):
    """Raised when credentials cannot be fetched from Vault."""
    pass


def _read_secret_id(path: str) -> str:
    if not os.path.exists(path):
        raise VaultSecretsError(f"Vault secret ID file not found: {path}")
    with open(path, 'r') as f:
        secret_id = f.read().strip()
    if not secret_id:
        raise VaultSecretsError("Vault secret ID file is empty")
    return secret_id


def fetch_backend_credentials(
    vault_config: Dict[str, Any],
    default_user: Optional[str] = None,
    client: Optional[hvac.Client] = None,
) -> Dict[str, Optional[str]]:
    """
    Log into Vault with AppRole and read the backend credentials.

    Args:
        vault_config: Output of environment.get_vault_config()
        default_user: User to report when the secret has no ES_USER
        client: Pre-built hvac client (default: one for vault_config['addr'])

    Returns:
        {"user": ..., "password": ...}

    Raises:
        VaultSecretsError: On any login or read failure
    """
    if not vault_config.get('role_id'):
        raise VaultSecretsError("VAULT_ROLE_ID is required but not set")

    try:
        logger.info(f"Connecting to Vault at {vault_config['addr']}...")
        vault_client = client or hvac.Client(url=vault_config['addr'])

        vault_client.auth.approle.login(
            role_id=vault_config['role_id'],
            secret_id=_read_secret_id(vault_config['secret_id_file']),
        )
        if not vault_client.is_authenticated():
            raise VaultSecretsError("Vault authentication failed")

        response = vault_client.secrets.kv.v2.read_secret_version(
            path=vault_config['secrets_path']
        )
        data = response['data']['data']
    except VaultSecretsError:
        raise
    except Exception as e:
        logger.error(f"Failed to fetch credentials from Vault: {e}")
        raise VaultSecretsError(f"Failed to fetch credentials from Vault: {e}") from e

    password = data.get('ES_PASSWORD')
    if not password:
        raise VaultSecretsError(f"ES_PASSWORD not found in Vault at {vault_config['secrets_path']}")

    logger.info("Loaded backend credentials from Vault")
    return {
        'user': data.get('ES_USER', default_user),
        'password': password,
    }
