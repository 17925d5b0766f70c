from __future__ import annotations


class FileSetError(ValueError):
    """Submitted project was rejected before any workspace was created."""


class RateLimitedError(Exception):
    def __init__(self, retry_after: float, message: str = "Too many build requests. Please try again later.") -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.message = message


class ToolchainNotFoundError(RuntimeError):
    """The configured toolchain binary cannot be resolved."""


class CommandError(Exception):
    """Base class for external command outcomes other than success."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class CommandFailedError(CommandError):
    def __init__(self, returncode: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(f"Command exited with status {returncode}", stdout, stderr)
        self.returncode = returncode


class CommandTimeoutError(CommandError):
    def __init__(self, timeout: float, stdout: str = "", stderr: str = "") -> None:
        super().__init__("Command timeout", stdout, stderr)
        self.timeout = timeout
