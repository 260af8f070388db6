"""
Rollback log.

Purpose
Provisioning is a sequence of backend steps. When a later step fails, the
earlier ones must be undone in reverse order so the network returns to the
state it had before the operation started.

Each completed step pushes its undo. unwind runs the undos newest first.
An undo that fails is logged and reported, the remaining undos still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Tuple

from carrier_ethernet.core.errors import OrchestratorError

logger = logging.getLogger(__name__)


@dataclass
class RollbackLog:
    """
    Ordered undo steps for one operation.

    label
    Operation name used in log lines, for example "install FC-7".
    """

    label: str
    _steps: List[Tuple[str, Callable[[], None]]] = field(default_factory=list)

    def push(self, description: str, undo: Callable[[], None]) -> None:
        self._steps.append((description, undo))

    def __len__(self) -> int:
        return len(self._steps)

    def unwind(self) -> List[str]:
        """
        Run every undo newest first.

        Returns descriptions of undo steps that failed. Those leave resources
        behind and need operator attention.
        """
        failures: List[str] = []
        while self._steps:
            description, undo = self._steps.pop()
            try:
                undo()
            except OrchestratorError as exc:
                logger.error("%s: rollback step '%s' failed: %s", self.label, description, exc)
                failures.append(f"{description}: {exc}")
        if failures:
            logger.error("%s: rollback left %d steps undone", self.label, len(failures))
        else:
            logger.info("%s: rolled back", self.label)
        return failures

    def discard(self) -> None:
        """Forget the undo steps once the operation committed."""
        self._steps.clear()
