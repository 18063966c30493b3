from __future__ import annotations

from typing import Any, Dict


class MCloudError(Exception):
    status_code = 500
    code = "internal_error"
    retry_safe = False

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "detail": self.detail,
            "error": self.code,
            "retry_safe": self.retry_safe,
        }
        payload.update(self.context)
        return payload


class ValidationError(MCloudError):
    status_code = 400
    code = "validation_error"
    retry_safe = True


class AlreadyInitialized(MCloudError):
    status_code = 409
    code = "already_initialized"
    retry_safe = True


class NotLeader(MCloudError):
    status_code = 503
    code = "not_leader"
    retry_safe = True


class CryptoFailure(MCloudError):
    code = "crypto_failure"
    retry_safe = True


class TokenError(MCloudError):
    status_code = 401
    code = "token_invalid"


class TokenNotFound(TokenError):
    code = "token_not_found"


class TokenExpired(TokenError):
    status_code = 403
    code = "token_expired"


class TokenUsed(TokenError):
    status_code = 403
    code = "token_used"


class DuplicateNode(MCloudError):
    status_code = 409
    code = "duplicate_node"


class NodeNotFound(MCloudError):
    status_code = 404
    code = "node_not_found"


class NodeAuthenticationFailed(MCloudError):
    status_code = 401
    code = "node_authentication_failed"


class ExternalOperationFailure(MCloudError):
    status_code = 502
    code = "external_operation_failure"
    retry_safe = True

    def __init__(
        self,
        detail: str,
        *,
        subsystem: str,
        action: str,
        timed_out: bool = False,
        **context: Any,
    ) -> None:
        super().__init__(detail, subsystem=subsystem, action=action, timed_out=timed_out, **context)
        self.subsystem = subsystem
        self.action = action
        self.timed_out = timed_out


class PersistenceFailedAfterExternalBootstrap(MCloudError):
    code = "persistence_failed_after_external_bootstrap"
    retry_safe = False


class ClusterNotInitialized(MCloudError):
    status_code = 409
    code = "cluster_not_initialized"
    retry_safe = True


class OperationInProgress(MCloudError):
    status_code = 409
    code = "operation_in_progress"
    retry_safe = True
