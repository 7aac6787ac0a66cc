from __future__ import annotations

from abc import ABC, abstractmethod

from ..executors import Executor


class Operation(ABC):
    """Shared surface for one idempotent change to the host.

    ``is_satisfied`` is the precondition check: when it holds, the runner
    records the action as skipped and never calls ``apply``. ``verify`` is the
    postcondition checked after ``apply`` returns.

    Operations flagged ``destructive`` wipe or repartition block devices.
    They are a point of no return: nothing in pvehost undoes them.
    """

    kind = "operation"
    destructive = False

    def is_satisfied(self, executor: Executor) -> bool:
        return False

    @abstractmethod
    def apply(self, executor: Executor) -> str:
        """Perform the change and return a short detail message."""

    def verify(self, executor: Executor) -> bool:
        return self.is_satisfied(executor)

    @abstractmethod
    def describe(self) -> str:
        """One line describing the change, used by ``pvehost plan``."""
