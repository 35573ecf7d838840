"""
Phase executor — fan a per-unit action out to one thread per unit, then wait
for all of them.

Failures are contained per unit: a raising action marks only its own unit as
errored and appends to the pipeline error log. run_parallel itself never
raises because of a worker.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Iterable

from models.schemas import Unit, UnitStatus

log = logging.getLogger(__name__)

UnitAction = Callable[[Unit], dict]
ApplyUpdate = Callable[..., None]
RecordError = Callable[[str], None]
Sanitize = Callable[[str], str]


class PhaseExecutor:
    """Runs actions against units and routes their results through the pipeline.

    apply_update(name, **fields) and record_error(message) are the pipeline's
    serialized entry points; the executor never touches shared state itself.
    """

    def __init__(
        self,
        apply_update: ApplyUpdate,
        record_error: RecordError,
        sanitize: Sanitize | None = None,
    ):
        self._apply_update = apply_update
        self._record_error = record_error
        self._sanitize = sanitize or (lambda msg: msg)

    def run_parallel(
        self,
        units: Iterable[Unit],
        action: UnitAction,
        label: str,
        start_status: UnitStatus | None = None,
    ) -> None:
        """Run ``action`` for every unit concurrently and block until all finish."""
        units = list(units)
        if not units:
            log.info("%s: no eligible units", label)
            return

        log.info("%s: dispatching %d units", label, len(units))
        # Full fan-out: one thread per unit, no pool cap
        with ThreadPoolExecutor(
            max_workers=len(units), thread_name_prefix=label.lower(),
        ) as pool:
            futures = [
                pool.submit(self.run_one, unit, action, label, start_status)
                for unit in units
            ]
            wait(futures)
        log.info("%s: all %d units finished", label, len(units))

    def run_one(
        self,
        unit: Unit,
        action: UnitAction,
        label: str,
        start_status: UnitStatus | None = None,
    ) -> None:
        """Run ``action`` for a single unit with the same failure containment."""
        try:
            if start_status is not None:
                self._apply_update(unit.name, status=start_status)
            update = action(unit)
            if update:
                self._apply_update(unit.name, **update)
        except Exception as e:
            message = self._sanitize(str(e))
            log.error("%s failed for %s: %s", label, unit.name, message)
            self._apply_update(unit.name, status=UnitStatus.ERROR, error=message)
            self._record_error(f"{label} failed for {unit.name}: {message}")
