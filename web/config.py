"""
Web API configuration.
"""
from core.config import config, VERSION

# Admin endpoints require this token in X-Admin-Token (disabled when empty)
ADMIN_TOKEN = config.web.admin_token

RATE_LIMIT = f"{config.web.rate_limit_per_minute}/minute"

__all__ = ["ADMIN_TOKEN", "RATE_LIMIT", "VERSION"]
