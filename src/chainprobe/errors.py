"""chainprobe error kinds and exceptions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    TRANSPORT_FAILURE = "TransportFailure"
    BUSINESS_REJECTION = "BusinessRejection"
    OPAQUE_REJECTION = "OpaqueRejection"
    TIMEOUT = "Timeout"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    INVALID_FORMAT = "InvalidFormat"


@dataclass(frozen=True)
class ModuleError:
    """Named business-rule rejection: the remote module and its error name."""

    module: str
    name: str

    def __str__(self) -> str:
        return f"{self.module}.{self.name}"


@dataclass(frozen=True)
class HarnessError(Exception):
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class DispatchError(Exception):
    """Raised by ledger modules when a call is declined for a named reason."""

    module: str
    name: str
    message: str = ""

    @property
    def module_error(self) -> ModuleError:
        return ModuleError(self.module, self.name)

    def __str__(self) -> str:
        if self.message:
            return f"{self.module}.{self.name}: {self.message}"
        return f"{self.module}.{self.name}"


# Allow Python's Exception machinery to set __traceback__/__context__/__cause__
# while keeping dataclass fields frozen (Python 3.13 contextlib compat).
_EXCEPTION_ATTRS = frozenset(("__traceback__", "__context__", "__cause__", "__suppress_context__"))


def _thaw_exception_attrs(cls: type) -> None:
    frozen_setattr = cls.__setattr__

    def _setattr(self: object, name: str, value: object) -> None:
        if name in _EXCEPTION_ATTRS:
            object.__setattr__(self, name, value)
        else:
            frozen_setattr(self, name, value)

    cls.__setattr__ = _setattr  # type: ignore[method-assign]


_thaw_exception_attrs(HarnessError)
_thaw_exception_attrs(DispatchError)


def transport_error(message: str) -> HarnessError:
    return HarnessError(kind=ErrorKind.TRANSPORT_FAILURE, message=message)


def protocol_violation(message: str) -> HarnessError:
    return HarnessError(kind=ErrorKind.PROTOCOL_VIOLATION, message=message)


def format_error(message: str) -> HarnessError:
    return HarnessError(kind=ErrorKind.INVALID_FORMAT, message=message)


def timeout_error(message: str) -> HarnessError:
    return HarnessError(kind=ErrorKind.TIMEOUT, message=message)


def is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, HarnessError) and exc.kind == ErrorKind.TRANSPORT_FAILURE
