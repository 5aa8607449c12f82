"""
Compensation steps for multi-step transactions.

Each forward step that leaves a side effect registers the action that
undoes it. On abort the actions run in reverse order; a failing action is
logged and the rest still run.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompensationStep:
    description: str
    action: Callable[..., Any]
    args: Tuple[Any, ...] = ()

    def run(self) -> None:
        self.action(*self.args)


class Saga:
    """Ordered list of compensations for one transaction attempt."""

    def __init__(self, name: str):
        self.name = name
        self._steps: List[CompensationStep] = []

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> List[CompensationStep]:
        return list(self._steps)

    def add_compensation(self, description: str, action: Callable[..., Any], *args: Any) -> None:
        self._steps.append(CompensationStep(description, action, args))

    def compensate(self) -> List[CompensationStep]:
        """Run every registered compensation, newest first.

        Returns:
            The steps whose action raised
        """
        failed = []
        for step in reversed(self._steps):
            try:
                step.run()
                logger.info(f"[{self.name}] compensated: {step.description}")
            except Exception:
                logger.exception(f"[{self.name}] compensation failed: {step.description}")
                failed.append(step)
        self._steps.clear()
        return failed

    def complete(self) -> None:
        """Forget the compensations once the transaction has committed."""
        self._steps.clear()
