"""
Outcome comparison logic for scenario checks.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ..engine import describe
from ..errors import ErrorKind, ModuleError
from ..types import Confirmed, EmittedEvent, Outcome, Rejected, TimedOut

CONFIRMED = "confirmed"
REJECTED = "rejected"
TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Expectation:
    """What a check expects a single operation to resolve to."""
    kind: str
    events: Tuple[EmittedEvent, ...] = ()
    error_kind: Optional[ErrorKind] = None
    module_error: Optional[ModuleError] = None

    @classmethod
    def confirmed(cls, *events: str) -> "Expectation":
        """Confirmed, with `events` ("namespace.Name") present in this order."""
        parsed = []
        for name in events:
            namespace, _, event = name.partition(".")
            if not event:
                raise ValueError(f"event must be namespace.Name, got {name!r}")
            parsed.append(EmittedEvent(namespace, event))
        return cls(kind=CONFIRMED, events=tuple(parsed))

    @classmethod
    def module_error_of(cls, module: str, name: str) -> "Expectation":
        return cls(
            kind=REJECTED,
            error_kind=ErrorKind.BUSINESS_REJECTION,
            module_error=ModuleError(module, name),
        )

    @classmethod
    def rejected(cls, error_kind: ErrorKind) -> "Expectation":
        return cls(kind=REJECTED, error_kind=error_kind)

    @classmethod
    def timed_out(cls) -> "Expectation":
        return cls(kind=TIMED_OUT)

    def __str__(self) -> str:
        if self.kind == CONFIRMED:
            if self.events:
                return "confirmed with " + ", ".join(str(e) for e in self.events)
            return "confirmed"
        if self.kind == REJECTED:
            if self.module_error is not None:
                return f"rejected with {self.module_error}"
            return f"rejected ({self.error_kind.value if self.error_kind else 'any'})"
        return "timed out"


@dataclass
class Divergence:
    """A difference between what a check expected and what happened."""
    field: str
    expected: Any
    actual: Any
    check: str
    details: Optional[str] = None


def _kind_of(outcome: Outcome) -> str:
    if isinstance(outcome, Confirmed):
        return CONFIRMED
    if isinstance(outcome, Rejected):
        return REJECTED
    if isinstance(outcome, TimedOut):
        return TIMED_OUT
    raise TypeError(f"not an outcome: {outcome!r}")


def _contains_in_order(events: Tuple[EmittedEvent, ...], required: Tuple[EmittedEvent, ...]) -> bool:
    remaining = iter(events)
    return all(any(e == want for e in remaining) for want in required)


class OutcomeComparator:
    """Compares operation outcomes and observed values against expectations."""

    def compare(self, expectation: Expectation, outcome: Outcome, check: str) -> List[Divergence]:
        """
        Compare one outcome against its expectation.

        Args:
            expectation: The expected resolution
            outcome: The engine's resolution
            check: Name of the check, carried into each divergence

        Returns:
            List of divergences (empty when the outcome matches)
        """
        actual_kind = _kind_of(outcome)
        if actual_kind != expectation.kind:
            return [Divergence(
                field="outcome",
                expected=str(expectation),
                actual=describe(outcome),
                check=check,
                details=f"Expected {expectation.kind}, got {actual_kind}",
            )]

        divergences: List[Divergence] = []
        if isinstance(outcome, Confirmed) and expectation.events:
            if not _contains_in_order(outcome.events, expectation.events):
                divergences.append(Divergence(
                    field="events",
                    expected=[str(e) for e in expectation.events],
                    actual=[str(e) for e in outcome.events],
                    check=check,
                    details="Required events missing or out of order",
                ))

        if isinstance(outcome, Rejected):
            if expectation.error_kind is not None and outcome.error_kind != expectation.error_kind:
                divergences.append(Divergence(
                    field="error_kind",
                    expected=expectation.error_kind.value,
                    actual=outcome.error_kind.value,
                    check=check,
                    details=outcome.error_detail,
                ))
            if expectation.module_error is not None and outcome.module_error != expectation.module_error:
                divergences.append(Divergence(
                    field="module_error",
                    expected=str(expectation.module_error),
                    actual=str(outcome.module_error) if outcome.module_error else None,
                    check=check,
                    details=outcome.error_detail,
                ))
        return divergences

    def compare_value(self, field_name: str, expected: Any, actual: Any, check: str) -> List[Divergence]:
        """Compare a value read back from the remote system."""
        if expected == actual:
            return []
        return [Divergence(field=field_name, expected=expected, actual=actual, check=check)]
