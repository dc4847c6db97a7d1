from __future__ import annotations


class WarmWorkerError(RuntimeError):
    """Base class for process-level warmworker failures."""


class UnsupportedServerError(WarmWorkerError):
    def __init__(self, name: str, supported: tuple[str, ...] = ()) -> None:
        self.name = str(name)
        self.supported = tuple(supported)
        hint = f" Supported: {'|'.join(self.supported)}" if self.supported else ""
        super().__init__(f"Unsupported server type: {self.name}.{hint}")


class ApplicationLoadError(WarmWorkerError):
    """The resident application import string could not be resolved."""


class ReloadNotSupportedError(WarmWorkerError):
    """Raised by backends that cannot reload in place (stop + start instead)."""
