from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from periods import Period


class CubeError(Exception):
    pass


class TransientStoreError(CubeError):
    """Timeout or contention in the store; the whole unit may be re-run."""


class CubeInvariantError(CubeError):
    def __init__(self, message: str, coordinate: Optional[object] = None) -> None:
        super().__init__(message)
        self.coordinate = coordinate


class NegativeCountError(CubeInvariantError):
    pass


class ResidualAmountError(CubeInvariantError):
    pass


class RebuildReadError(CubeError):
    pass


class RebuildFailedError(CubeError):
    def __init__(
        self, message: str, tenant_id: str, period: Optional["Period"] = None
    ) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id
        self.period = period
