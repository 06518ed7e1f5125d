from __future__ import annotations


class ControlPlaneError(RuntimeError):
    # Expected errors are reported to callers without a traceback in the logs.
    expected = True


class ConfigurationError(ControlPlaneError):
    """Declared configuration violates an invariant. Never retried."""

    def __init__(self, message: str, subject: str = "") -> None:
        super().__init__(message)
        self.subject = subject


class ResourceExhaustionError(ControlPlaneError):
    def __init__(self, message: str = "Ran out of rotations, unable to assign rotation") -> None:
        super().__init__(message)


class LockStateError(ControlPlaneError):
    """An operation needing the rotation lock got an invalid or lost token."""

    expected = False


class LockTimeoutError(ControlPlaneError):
    def __init__(self, lock_name: str, timeout_seconds: float) -> None:
        super().__init__(f"Timed out after {timeout_seconds:g}s waiting for lock '{lock_name}'")
        self.lock_name = lock_name
        self.timeout_seconds = timeout_seconds
