"""
Web surface configuration.
"""
from iskomarket.config import VERSION, config

WEB_HOST = config.web.host
WEB_PORT = config.web.port
ADMIN_TOKEN = config.web.admin_token

__all__ = ["WEB_HOST", "WEB_PORT", "ADMIN_TOKEN", "VERSION"]
