"""Ordered stage bring-up gated on readiness."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from devstack.errors import StageFailed
from devstack.readiness import Prober, ReadinessTarget

logger = logging.getLogger("devstack.gate")


@dataclass(frozen=True)
class Stage:
    """One launch plus the readiness target that gates the next stage."""

    name: str
    launch: Callable[[], None]
    target: ReadinessTarget | None = None


class DependencyGate:
    """Brings stages up strictly in order; aborts on the first failure.

    Already-started stages are left running so their state can be inspected.
    """

    def __init__(self, prober: Prober) -> None:
        self.prober = prober

    def bring_up(self, stages: Sequence[Stage]) -> None:
        for index, stage in enumerate(stages, start=1):
            logger.info("Stage %s/%s: %s", index, len(stages), stage.name)
            try:
                stage.launch()
                if stage.target is not None:
                    self.prober.probe(stage.target)
            except Exception as exc:
                logger.error("Stage '%s' failed: %s", stage.name, exc)
                if index > 1:
                    logger.warning(
                        "Leaving %s earlier stage(s) running; run `devstack stop` to tear down",
                        index - 1,
                    )
                raise StageFailed(stage.name, exc) from exc
