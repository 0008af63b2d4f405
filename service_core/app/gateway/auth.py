"""
Outbound request headers and upstream authentication.
"""

import base64
from typing import Dict, Optional

from shared.logging import get_logger

from service_core.app.gateway.models import APIConfig, AuthType

DEFAULT_USER_AGENT = "TenantInfraCore/1.0"

logger = get_logger("core.gateway.auth")


def build_auth_headers(config: APIConfig) -> Dict[str, str]:
    """Authentication headers for the configured scheme.

    ``oauth2`` expects a pre-issued access token as the credential; the token
    exchange itself happens outside the gateway.
    """
    if config.auth_type == AuthType.NONE:
        return {}

    credential = config.credential()
    if not credential:
        logger.warning("No credential configured for authenticated API", api=config.name, auth_type=config.auth_type.value)
        return {}

    if config.auth_type == AuthType.API_KEY:
        return {"X-API-Key": credential}
    if config.auth_type in (AuthType.BEARER, AuthType.OAUTH2):
        return {"Authorization": f"Bearer {credential}"}
    if config.auth_type == AuthType.BASIC:
        encoded = base64.b64encode(credential.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}
    return {}


def build_headers(
    config: APIConfig,
    request_headers: Optional[Dict[str, str]] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Dict[str, str]:
    """Defaults, then config headers, then caller headers, then auth."""
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
    }
    headers.update(config.headers)
    headers.update(request_headers or {})
    headers.update(build_auth_headers(config))
    return headers
