#!/usr/bin/env python3
"""
MUTT v2.5 - Ratio Check Environment Configuration

Environment-driven defaults for the Elasticsearch ratio check. Command line
flags always win over these values; the environment only supplies defaults
so the check can be deployed with credentials and endpoints kept out of the
check definition.

Author: MUTT Development Team
License: MIT
Version: 2.5.0
"""

import os


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes', 'on')


# Malformed values found while loading; the check reports these as UNKNOWN
_CONFIG_ERRORS = []


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        _CONFIG_ERRORS.append(f"{name} ({raw!r}) is not an integer")
        return default


# =====================================================================
# ELASTICSEARCH CONFIGURATION
# =====================================================================

ES_HOST = os.getenv('ES_HOST', 'localhost')
ES_PORT = _env_int('ES_PORT', 9200)
ES_SCHEME = os.getenv('ES_SCHEME', None)  # https when credentials are set
ES_USER = os.getenv('ES_USER', None)
ES_PASSWORD = os.getenv('ES_PASSWORD', None)
ES_TIMEOUT = _env_int('ES_TIMEOUT', 30)

# =====================================================================
# LOGGING CONFIGURATION
# =====================================================================

# A check prints its result on stdout; keep stderr quiet unless asked
LOG_LEVEL = os.getenv('LOG_LEVEL', 'WARNING')
LOG_JSON_ENABLED = _env_bool('LOG_JSON_ENABLED')

# =====================================================================
# DYNAMIC CONFIGURATION (threshold overrides)
# =====================================================================

DYNAMIC_CONFIG_ENABLED = _env_bool('DYNAMIC_CONFIG_ENABLED')
DYNAMIC_CONFIG_PREFIX = os.getenv('DYNAMIC_CONFIG_PREFIX', 'ratio_check:config')

REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
REDIS_PORT = _env_int('REDIS_PORT', 6379)
REDIS_DB = _env_int('REDIS_DB', 0)
REDIS_PASSWORD = os.getenv('REDIS_PASSWORD', None)

# =====================================================================
# VAULT CONFIGURATION (Optional)
# =====================================================================

VAULT_ENABLED = _env_bool('VAULT_ENABLED')
VAULT_ADDR = os.getenv('VAULT_ADDR', 'http://localhost:8200')
VAULT_ROLE_ID = os.getenv('VAULT_ROLE_ID', None)
VAULT_SECRET_ID_FILE = os.getenv('VAULT_SECRET_ID_FILE', '/etc/mutt/secrets/vault_secret_id')
VAULT_SECRETS_PATH = os.getenv('VAULT_SECRETS_PATH', 'secret/mutt/elasticsearch')

# =====================================================================
# METRICS
# =====================================================================

# node-exporter textfile collector target, e.g. /var/lib/node_exporter/ratio.prom
METRICS_TEXTFILE_PATH = os.getenv('METRICS_TEXTFILE_PATH', None)

# =====================================================================
# HELPER FUNCTIONS
# =====================================================================

def get_elasticsearch_config() -> dict:
    """
    Get Elasticsearch connection defaults as a dictionary.

    Returns:
        dict: host, port, scheme, user, password and timeout

    Examples:
        >>> config = get_elasticsearch_config()
        >>> print(config['port'])  # 9200
    """
    return {
        'host': ES_HOST,
        'port': ES_PORT,
        'scheme': ES_SCHEME,
        'user': ES_USER,
        'password': ES_PASSWORD,
        'timeout': ES_TIMEOUT,
    }


def get_redis_config() -> dict:
    """
    Get Redis configuration as a dictionary.

    Returns:
        dict: Redis connection parameters
    """
    config = {
        'host': REDIS_HOST,
        'port': REDIS_PORT,
        'db': REDIS_DB
    }
    if REDIS_PASSWORD:
        config['password'] = REDIS_PASSWORD
    return config


def get_vault_config() -> dict:
    """
    Get Vault configuration as a dictionary.

    Returns:
        dict: Vault address, AppRole role id, secret id file and KV path
    """
    return {
        'enabled': VAULT_ENABLED,
        'addr': VAULT_ADDR,
        'role_id': VAULT_ROLE_ID,
        'secret_id_file': VAULT_SECRET_ID_FILE,
        'secrets_path': VAULT_SECRETS_PATH,
    }


def validate_environment() -> list:
    """
    Validate environment configuration and return any warnings.

    Returns:
        list: List of warning messages (empty if all valid)
    """
    warnings = []

    if ES_PORT < 1 or ES_PORT > 65535:
        warnings.append(f"ES_PORT ({ES_PORT}) is not a valid TCP port")

    if ES_TIMEOUT <= 0:
        warnings.append(f"ES_TIMEOUT ({ES_TIMEOUT}) must be a positive number of seconds")

    if ES_SCHEME is not None and ES_SCHEME not in ('http', 'https'):
        warnings.append(f"ES_SCHEME ({ES_SCHEME}) should be 'http' or 'https'")

    if VAULT_ENABLED and not VAULT_ROLE_ID:
        warnings.append("VAULT_ENABLED is set but VAULT_ROLE_ID is missing")

    return warnings


def get_config_errors() -> list:
    """
    Environment values that could not be parsed.

    Unlike validate_environment() warnings, these stop the check: a
    malformed setting was replaced by its default and the result would not
    reflect the intended configuration.

    Returns:
        list: Error messages (empty if all values parsed)
    """
    return list(_CONFIG_ERRORS)
