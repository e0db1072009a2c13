"""Failure taxonomy; each class maps to a stable result kind in ``cli.RESULT_CODES``."""

from __future__ import annotations


class ProvisionError(RuntimeError):
    result = "FAIL_UNHANDLED"

    def __init__(self, message: str, *, result: str | None = None, state: dict | None = None) -> None:
        super().__init__(message)
        if result:
            self.result = result
        self.state = state or {}


class ConfigurationError(ProvisionError):
    """Bad flag values, size overflow, boot-mode mismatch."""

    result = "FAIL_USAGE"


class SafetyError(ProvisionError):
    """The target already holds data that must not be destroyed silently."""

    result = "FAIL_ENCRYPTED_EXISTS"


class InfrastructureError(ProvisionError):
    """The environment is not the one we expect (privileges, directories, tools)."""

    result = "FAIL_MISSING_DIR"


class DeviceTimeout(ProvisionError):
    result = "FAIL_DEVICE_TIMEOUT"

    def __init__(self, missing, timeout: float) -> None:
        self.missing = sorted(missing)
        self.timeout = timeout
        super().__init__(
            f"device(s) {', '.join(self.missing)} did not appear within {timeout:g}s",
            state={"missing": self.missing, "timeout": timeout},
        )


class HandshakeCancelled(ProvisionError):
    result = "FAIL_CANCELLED"


class CommandError(ProvisionError):
    """A required external command failed."""

    result = "FAIL_COMMAND"

    def __init__(self, cmd, rc: int, stderr: str = "", *, result: str | None = None) -> None:
        self.cmd = list(cmd)
        self.rc = rc
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(
            f"command failed (rc={rc}): {' '.join(self.cmd)}{detail}",
            result=result,
            state={"cmd": self.cmd, "rc": rc, "stderr": self.stderr},
        )

    @classmethod
    def from_called_process(cls, exc, *, result: str | None = None) -> "CommandError":
        return cls(exc.cmd, exc.returncode, exc.stderr or exc.stdout or "", result=result)
