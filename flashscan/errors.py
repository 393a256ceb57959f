"""
Error taxonomy for flash image analysis.

  ConfigurationError   — bad parameter, unknown profile, missing capability
  ImageIOError         — unreadable source, short read, unwritable output
  NotFoundError        — boundary search found no non-pad data (negative result)
  AmbiguousSignalError — weak / no alias signal (only raised on request)
"""

from typing import Optional


class FlashScanError(Exception):
    """Base class. Carries the operation and byte range involved."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        offset: Optional[int] = None,
        length: Optional[int] = None,
    ):
        self.operation = operation
        self.offset = offset
        self.length = length
        super().__init__(message)

    def __str__(self) -> str:
        msg = super().__str__()
        ctx = []
        if self.operation:
            ctx.append(f"op={self.operation}")
        if self.offset is not None:
            ctx.append(f"offset={self.offset}")
        if self.length is not None:
            ctx.append(f"length={self.length}")
        if ctx:
            return f"{msg} [{' '.join(ctx)}]"
        return msg


class ConfigurationError(FlashScanError, ValueError):
    pass


class ImageIOError(FlashScanError, OSError):
    pass


class NotFoundError(FlashScanError):
    """No non-pad block in the scanned range. `state` is the final ScanState."""

    def __init__(self, message: str, state=None, **kwargs):
        self.state = state
        super().__init__(message, **kwargs)


class AmbiguousSignalError(FlashScanError):
    """Alias classification below STRONG. `report` is the AliasReport."""

    def __init__(self, message: str, report=None, **kwargs):
        self.report = report
        super().__init__(message, **kwargs)
