"""Error taxonomy for the key lifecycle service.

Every failure the service reports to callers is a :class:`KeyServiceError`
subclass carrying a stable ``code`` for programmatic handling and an
``http_status`` for the transport layer.  Parse and crypto failures are
chained with ``raise ... from exc`` so the root cause stays on
``__cause__``.
"""

from __future__ import annotations

from typing import Any, Dict


class KeyServiceError(Exception):
    """Base exception with stable error code."""

    code = "key_service_error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"detail": self.code, "message": self.message}
        if self.details:
            d["details"] = {k: str(v) for k, v in self.details.items()}
        cause = self.__cause__
        if cause is not None:
            d["cause"] = str(cause)
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# ---------------------------------------------------------------------------
# Key-pair validation (client fault)
# ---------------------------------------------------------------------------


class KeyValidationError(KeyServiceError):
    code = "invalid_key"
    http_status = 400


class UnsupportedKeyType(KeyValidationError):
    code = "unsupported_key_type"


class InvalidPublicKey(KeyValidationError):
    code = "invalid_public_key"


class InvalidPrivateKey(KeyValidationError):
    code = "invalid_private_key"


class KeyPairMismatch(KeyValidationError):
    code = "key_pair_mismatch"


# ---------------------------------------------------------------------------
# Storage / lookup
# ---------------------------------------------------------------------------


class DuplicateError(KeyServiceError):
    code = "key_already_exists"
    http_status = 409

    def __init__(self, message: str, *, key_id: str | None, constraint: str = "id") -> None:
        super().__init__(message, key_id=key_id, constraint=constraint)
        self.key_id = key_id
        self.constraint = constraint


class NotFoundError(KeyServiceError):
    code = "key_not_found"
    http_status = 404


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class PermissionDenied(KeyServiceError):
    code = "permission_denied"
    http_status = 403

    def __init__(self, message: str, *, permission: str, **details: Any) -> None:
        super().__init__(message, permission=permission, **details)
        self.permission = permission
