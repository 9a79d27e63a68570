from __future__ import annotations


class VerificationError(RuntimeError):
    """Base class for failures that abort a restore verification scenario."""

    def __init__(self, *, phase: str, cluster_name: str | None, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        target = cluster_name or "<unassigned>"
        super().__init__(f"{phase} phase failed for cluster '{target}': {normalized_reason}")
        self.phase = phase
        self.cluster_name = cluster_name
        self.reason = normalized_reason


class SubmissionError(VerificationError):
    """Raised when the API server rejects a cluster descriptor."""


class ConvergenceTimeout(VerificationError):
    """Raised when the operator does not reach the expected state in time."""


class ProbeWriteError(VerificationError):
    pass


class ProbeReadError(VerificationError):
    pass


class DataMismatch(VerificationError):
    def __init__(self, *, phase: str, cluster_name: str | None, expected: str, observed: str | None) -> None:
        rendered = "<absent>" if observed is None else repr(observed)
        super().__init__(
            phase=phase,
            cluster_name=cluster_name,
            reason=f"expected {expected!r}, observed {rendered}",
        )
        self.expected = expected
        self.observed = observed


class BackupRequestError(VerificationError):
    pass


class TeardownVerificationError(VerificationError):
    pass
