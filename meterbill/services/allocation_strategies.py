"""Ordering policies deciding which outstanding bills a payment settles first."""

from abc import ABC, abstractmethod
from typing import Iterable

from meterbill.models import Bill, BillStatus
from meterbill.services.config import AllocationStrategyName
from meterbill.services.errors import InvalidInputError


def is_allocatable(bill: Bill) -> bool:
    """Voided, disputed and settled bills never receive automatic allocations."""
    return bill.status != BillStatus.VOID and not bill.is_disputed and bill.balance > 0


class AllocationStrategy(ABC):
    """Produces the order in which bills receive money.

    Ties on the strategy's key are broken by bill id ascending.
    """

    name: str

    @abstractmethod
    def sort_key(self, bill: Bill) -> tuple:
        """Primary ordering key of a bill."""

    def select_order(self, bills: Iterable[Bill]) -> list[Bill]:
        eligible = [bill for bill in bills if is_allocatable(bill)]
        return sorted(eligible, key=lambda bill: (*self.sort_key(bill), bill.id))


class FifoStrategy(AllocationStrategy):
    """Oldest issued bill first."""

    name = AllocationStrategyName.FIFO.value

    def sort_key(self, bill: Bill) -> tuple:
        return (bill.issued_at,)


class LifoStrategy(AllocationStrategy):
    """Most recently issued bill first."""

    name = AllocationStrategyName.LIFO.value

    def sort_key(self, bill: Bill) -> tuple:
        return (-bill.issued_at.toordinal(),)


class OldestDueStrategy(AllocationStrategy):
    """Earliest due date first."""

    name = AllocationStrategyName.OLDEST_DUE.value

    def sort_key(self, bill: Bill) -> tuple:
        return (bill.due_date,)


class SmallestFirstStrategy(AllocationStrategy):
    """Smallest outstanding balance first."""

    name = AllocationStrategyName.SMALLEST_FIRST.value

    def sort_key(self, bill: Bill) -> tuple:
        return (bill.balance,)


STRATEGIES: dict[str, type[AllocationStrategy]] = {
    cls.name: cls for cls in (FifoStrategy, LifoStrategy, OldestDueStrategy, SmallestFirstStrategy)
}


def get_strategy(name: str | AllocationStrategyName) -> AllocationStrategy:
    """Look up a strategy by its configured name.

    Raises:
        InvalidInputError: Unknown strategy name
    """
    key = name.value if isinstance(name, AllocationStrategyName) else str(name).lower()
    try:
        return STRATEGIES[key]()
    except KeyError as e:
        raise InvalidInputError(
            f"Unknown allocation strategy: {name}", field="allocation_strategy"
        ) from e


__all__ = [
    "AllocationStrategy",
    "FifoStrategy",
    "LifoStrategy",
    "OldestDueStrategy",
    "STRATEGIES",
    "SmallestFirstStrategy",
    "get_strategy",
    "is_allocatable",
]
