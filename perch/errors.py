"""
perch exceptions
"""


class PerchError(Exception):
    """Base exception for all perch errors"""

    pass


class ConfigError(PerchError):
    """Raised when ~/.perch/config.yaml holds a value we cannot use"""

    pass


class CommandError(PerchError):
    """Raised when an external gt/bd/git command fails or prints garbage"""

    def __init__(self, message: str, args: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = list(args or [])
        self.stderr = stderr


class CommandTimeout(CommandError):
    """Raised when an external call runs past its deadline"""

    def __init__(self, message: str, args: list[str] | None = None, timeout: float | None = None):
        super().__init__(message, args=args)
        self.timeout = timeout


class ValidationError(PerchError):
    """Raised when an action lacks the context it needs (e.g. no rig selected)"""

    pass
