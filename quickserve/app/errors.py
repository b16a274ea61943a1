"""
Typed failures for the local-first core.

Callers branch on the exception class (or its `kind`), never on message text:
- StorageError: a local transaction failed; fatal to that operation.
- TransientRemoteError: retryable (network, timeout, 5xx); halts queue draining.
- RemoteRejected: the remote refused the payload; skip and flag for an operator.
- ConfigUnavailable: tenant settings could not be loaded; use defaults.
"""

from __future__ import annotations

from typing import Optional


class QuickserveError(Exception):
    kind = "error"

    def __init__(self, message: str = "", *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def as_dict(self) -> dict:
        out = {"kind": self.kind, "error": self.message}
        if self.detail:
            out["detail"] = self.detail
        return out


class StorageError(QuickserveError):
    kind = "storage"

    def __init__(self, message: str, *, collection: Optional[str] = None, op: Optional[str] = None):
        detail = {}
        if collection:
            detail["collection"] = collection
        if op:
            detail["op"] = op
        super().__init__(message, detail=detail)
        self.collection = collection
        self.op = op


class RemoteError(QuickserveError):
    kind = "remote"

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message, detail={"status": status} if status is not None else None)
        self.status = status


class TransientRemoteError(RemoteError):
    kind = "network"


# Same failure class, named the way the sync code talks about it.
NetworkError = TransientRemoteError


class RemoteRejected(RemoteError):
    kind = "rejected"


class ConfigUnavailable(QuickserveError):
    kind = "config_unavailable"
