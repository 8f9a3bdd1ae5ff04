"""Error kinds shared by the bridge services and routes."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .config import reauth_path

REAUTH_REQUIRED = "REAUTH_REQUIRED"


class BridgeError(RuntimeError):
    """Base class for all bridge errors."""


class ValidationError(BridgeError):
    """Bad or missing request input."""


class NotFoundError(BridgeError):
    """Missing tenant or step instance."""


class InvariantViolation(BridgeError):
    """State that should never exist (unknown execution, orphaned record)."""


class ReauthRequired(BridgeError):
    """The tenant must go through OAuth authorization again."""

    def __init__(self, install_id: str, message: str = "Re-authorization required") -> None:
        super().__init__(message)
        self.install_id = install_id
        self.reauth_url = reauth_path(install_id)
        self.code = REAUTH_REQUIRED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "Authentication required",
            "message": str(self),
            "code": self.code,
            "reAuthUrl": self.reauth_url,
        }


class UpstreamError(BridgeError):
    """Error that carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload

    @property
    def transient(self) -> bool:
        """Transport failures, throttling and 5xx are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class PlatformError(UpstreamError):
    """Error returned by the Platform REST or Bulk API."""


class GatewayError(UpstreamError):
    """Error returned by the SMS Gateway."""
