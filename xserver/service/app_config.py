from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from xserver.config import Settings
from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now

logger = get_logger(__name__)

ALLOWED_FILE_TYPES = ["jpg", "png", "pdf", "doc", "docx"]


def _version_tuple(version: str) -> Optional[Tuple[int, ...]]:
    try:
        return tuple(int(part) for part in version.strip().lstrip("vV").split("."))
    except ValueError:
        return None


def is_outdated(client_version: str, server_version: str) -> bool:
    """True when the client runs an older release than the server.

    Versions are compared on dotted numeric components. Non-numeric versions
    fall back to a plain inequality check.
    """
    client, server = _version_tuple(client_version), _version_tuple(server_version)
    if client is None or server is None:
        return client_version.strip() != server_version.strip()
    width = max(len(client), len(server))
    return client + (0,) * (width - len(client)) < server + (0,) * (width - len(server))


class AppConfigService:
    """Builds the static client configuration and the version-aware app config."""

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self._clock: Clock = clock or utc_now

    def _endpoints(self) -> List[Dict[str, str]]:
        base = self.settings.api_base_url.rstrip("/")
        return [
            {"name": "login", "url": f"{base}/user/login"},
            {"name": "register", "url": f"{base}/user/register"},
            {"name": "refresh", "url": f"{base}/user/refresh"},
            {"name": "profile", "url": f"{base}/user/me"},
            {"name": "settings", "url": f"{base}/config"},
        ]

    def client_config(self) -> Dict[str, Any]:
        return {
            "appVersion": self.settings.app_version,
            "apiBaseUrl": self.settings.api_base_url,
            "debugMode": self.settings.debug_mode,
            "endpoints": self._endpoints(),
            "features": {
                "darkMode": True,
                "notifications": True,
                "maxUploadSize": self.settings.max_upload_size,
                "allowedFileTypes": list(ALLOWED_FILE_TYPES),
            },
        }

    def app_config(self, client_version: Optional[str]) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "enableLogUpload": self.settings.enable_log_upload,
            "logUploadInterval": self.settings.log_upload_interval_minutes,
            "logUploadEndpoint": self.settings.log_upload_endpoint,
            "logRetentionDays": self.settings.log_retention_days,
            "serverTime": self._clock().isoformat(),
            "appVersion": self.settings.app_version,
            "forceUpdate": False,
            "updateUrl": None,
        }
        if client_version and is_outdated(client_version, self.settings.app_version):
            config["forceUpdate"] = self.settings.force_update
            config["updateUrl"] = self.settings.app_update_url
            logger.info(
                "client_update_available",
                client_version=client_version,
                server_version=self.settings.app_version,
                force=self.settings.force_update,
            )
        return config
