from __future__ import annotations

from typing import Callable, Optional
import logging

from .errors import ExternalCommandFailure, PveHostError
from .executors import Executor
from .types import Action, Plan, RunResult, Status

logger = logging.getLogger(__name__)

HALT = "halt"
CONTINUE = "continue"


class PlanRunner:
    """Applies a plan one action at a time.

    Each action's precondition is re-checked against the live host first, so
    an action satisfied since planning is skipped. A failed action is never
    retried and nothing is rolled back. Under the ``halt`` policy every later
    action is recorded as skipped; under ``continue`` only actions that depend,
    directly or transitively, on a failed action are skipped.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        policy: str = HALT,
        progress_callback: Optional[Callable[[Action], None]] = None,
    ):
        if policy not in {HALT, CONTINUE}:
            raise ValueError(f"unknown failure policy '{policy}'")
        self.executor = executor
        self.policy = policy
        self.progress_callback = progress_callback

    def run(self, plan: Plan) -> list[RunResult]:
        results: list[RunResult] = []
        blocked: dict[str, str] = {}
        halted_by: Optional[str] = None

        for action in plan:
            if halted_by is not None:
                results.append(self._result(action, Status.SKIPPED, f"not attempted: halted after {halted_by} failed"))
                continue
            blocker = next((dep for dep in action.depends_on if dep in blocked), None)
            if blocker is not None:
                blocked[action.id] = blocked[blocker]
                message = f"not attempted: depends on {blocker} ({blocked[blocker]} failed)"
                results.append(self._result(action, Status.SKIPPED, message))
                continue

            if self.progress_callback:
                self.progress_callback(action)
            result = self._apply(action)
            logger.debug("action=%s status=%s", action.id, result.status.value)
            results.append(result)
            if result.failed:
                blocked[action.id] = action.id
                if self.policy == HALT:
                    halted_by = action.id
        return results

    def _apply(self, action: Action) -> RunResult:
        operation = action.operation
        try:
            if operation.is_satisfied(self.executor):
                return self._result(action, Status.SKIPPED, "already satisfied")
            if action.destructive:
                logger.warning(
                    "Point of no return: %s (%s) cannot be undone", action.id, action.describe()
                )
            detail = operation.apply(self.executor)
            if not operation.verify(self.executor):
                logger.error("action=%s postcondition does not hold after apply", action.id)
                return self._result(action, Status.FAILED, f"postcondition not met after: {detail}")
        except ExternalCommandFailure as exc:
            logger.error("action=%s failed: %s", action.id, exc)
            output = (exc.stderr or exc.stdout or "").strip()
            if output:
                logger.debug("captured output for %s:\n%s", action.id, output)
            return self._result(action, Status.FAILED, str(exc))
        except PveHostError as exc:
            logger.error("action=%s failed: %s", action.id, exc)
            return self._result(action, Status.FAILED, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s failed: %s", action.id, exc, exc_info=True)
            return self._result(action, Status.FAILED, f"{type(exc).__name__}: {exc}")
        return self._result(action, Status.APPLIED, detail)

    @staticmethod
    def _result(action: Action, status: Status, message: str) -> RunResult:
        return RunResult(
            action_id=action.id,
            kind=action.kind,
            resource=action.resource,
            status=status,
            message=message,
        )
