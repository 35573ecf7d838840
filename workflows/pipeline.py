"""
Hardening Pipeline — the phase state machine.

    idle → discovering → analyzing → awaiting_decisions → hardening
         → verifying → complete
    (discovering → errored when the source root is missing)

  1. Discover units (source files) under the source root
  2. Analyze every unit in parallel
  3. Wait for a human decision per unit
  4. Harden every unit that was not skipped, in parallel
  5. Verify every hardened unit, in parallel

Each parallel phase is a fan-out/gather over PhaseExecutor: the next phase
starts only after every worker of the previous one has finished.

All state (phase, units, error log, timestamps) sits behind one lock. Workers
get copies of their unit and write back through _update_unit; snapshot()
takes the same lock, so observers never see a half-applied update.

reset() bumps the state generation. Every dispatch captures the generation
it started under, and writes tagged with an older one are dropped.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Callable

import config
from activities.analyze import analyze_unit
from activities.ask import ask_question, explain_finding, find_finding
from activities.harden import harden_unit
from activities.verify import verify_unit
from models.errors import FindingNotFound, PhaseConflict, UnitNotFound
from models.schemas import Phase, PipelineState, Unit, UnitStatus
from utils.llm import ToolClient, build_tool_client
from utils.sidecar import DECISION, SidecarStore
from utils.unit_scanner import ExcludePredicate, discover_units
from workflows.executor import PhaseExecutor

log = logging.getLogger(__name__)

UNIT_FIELDS = {"status", "analysis", "decision", "hardened", "verification", "error"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Pipeline:
    """
    Owns the unit registry and drives it through the hardening phases.

    One instance per process (or per reset). The tool client is injected so
    tests can stub the external tool.
    """

    def __init__(
        self,
        root: str | Path,
        client: ToolClient,
        source_dir: str | None = None,
        pattern: str | None = None,
        exclude: ExcludePredicate | None = None,
        sidecar_dir: str | None = None,
        runs_dir: str | Path | None = None,
    ):
        self._given_root = str(Path(root).absolute())
        self.root = Path(root).resolve()
        self._client = client
        self._source_dir = source_dir
        self._pattern = pattern
        self._exclude = exclude
        self._sidecars = SidecarStore(self.root, sidecar_dir)
        self._runs_dir = Path(runs_dir) if runs_dir else None

        self._lock = threading.RLock()
        self._state = PipelineState()

    @classmethod
    def from_config(cls, client: ToolClient | None = None) -> "Pipeline":
        return cls(
            root=config.SOURCE_ROOT,
            client=client or build_tool_client(),
            source_dir=config.UNIT_SOURCE_DIR,
            pattern=config.UNIT_PATTERN,
            sidecar_dir=config.SIDECAR_DIR,
            runs_dir=config.PIPELINE_RUNS_DIR,
        )

    # ── Discovery ──────────────────────────────────────────────────────

    def discover(self) -> bool:
        """Populate the registry. Returns False (and errors the pipeline) on failure."""
        with self._lock:
            if self._state.phase not in (Phase.IDLE, Phase.DISCOVERING):
                raise PhaseConflict(Phase.IDLE.value, self._state.phase.value)
            self._set_phase(Phase.DISCOVERING)
            generation = self._state.generation

        try:
            units = discover_units(
                self.root, self._source_dir, self._pattern, self._exclude,
                sidecar_dir=self._sidecars.dirname,
            )
        except Exception as e:
            message = self.sanitize_error(str(e))
            log.error("Discovery failed: %s", message)
            with self._lock:
                if self._is_stale(generation):
                    return False
                self._add_error(message)
                self._set_phase(Phase.ERRORED)
            return False

        with self._lock:
            if self._is_stale(generation):
                log.warning("Pipeline was reset during discovery; dropping results")
                return False
            self._state.units.update(units)
        return True

    def start(self) -> None:
        """Discover, then analyze everything that was found."""
        generation = self._generation()
        if self.discover():
            self._run_analysis(generation)

    # ── Phase 1: Parallel Analysis ─────────────────────────────────────

    def run_analysis(self) -> None:
        self._run_analysis(self._generation())

    def _run_analysis(self, generation: int) -> None:
        with self._lock:
            if self._is_stale(generation):
                return
            self._require_phase(Phase.DISCOVERING)
            self._set_phase(Phase.ANALYZING)
            self._state.run_id = (
                f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
            )
            self._state.started_at = _now()
            units = self._copy_units()

        self._executor_for(generation).run_parallel(
            units, self._analysis_action(), "Analysis", start_status=UnitStatus.ANALYZING,
        )

        with self._lock:
            if self._is_stale(generation):
                return
            self._set_phase(Phase.AWAITING_DECISIONS)

    # ── Phase 2: Human Decisions ───────────────────────────────────────

    def submit_decisions(self, decisions: dict[str, dict]) -> None:
        """Record one decision per unit, then run hardening and verification."""
        self.run_hardening(self.record_decisions(decisions))

    def record_decisions(self, decisions: dict[str, dict]) -> int:
        """
        Validate and store decisions, and claim the hardening phase.

        Everything is checked before anything is written, so a bad name or
        payload leaves the pipeline untouched. Once this returns, a second
        submission gets PhaseConflict. Returns the generation to pass to
        run_hardening.
        """
        with self._lock:
            self._require_phase(Phase.AWAITING_DECISIONS)
            for name, decision in decisions.items():
                if name not in self._state.units:
                    raise UnitNotFound(name)
                if not isinstance(decision, dict):
                    raise ValueError(f"Decision for {name} must be an object")
            for name, decision in decisions.items():
                self._update_unit(name, decision=dict(decision))
            self._set_phase(Phase.HARDENING)
            generation = self._state.generation
            recorded = {name: self._state.units[name].full_path for name in decisions}

        for name, full_path in recorded.items():
            try:
                self._sidecars.write(full_path, DECISION, decisions[name])
            except Exception as e:
                message = self.sanitize_error(str(e))
                log.error("Could not persist decision for %s: %s", name, message)
                self._add_error(f"Saving decision failed for {name}: {message}", generation)

        log.info("Received %d decisions", len(decisions))
        return generation

    # ── Phase 3: Parallel Hardening ────────────────────────────────────

    def run_hardening(self, generation: int | None = None) -> None:
        with self._lock:
            if generation is None:
                generation = self._state.generation
            if self._is_stale(generation):
                return
            if self._state.phase != Phase.HARDENING:
                self._set_phase(Phase.HARDENING)
            actionable = []
            for unit in self._state.units.values():
                if unit.skipped:
                    self._update_unit(unit.name, status=UnitStatus.SKIPPED)
                elif unit.decision is not None:
                    actionable.append(copy.deepcopy(unit))

        action = partial(harden_unit, client=self._client, sidecars=self._sidecars)
        self._executor_for(generation).run_parallel(
            actionable, action, "Hardening", start_status=UnitStatus.HARDENING,
        )

        self.run_verification(generation)

    # ── Phase 4: Parallel Verification ─────────────────────────────────

    def run_verification(self, generation: int | None = None) -> None:
        with self._lock:
            if generation is None:
                generation = self._state.generation
            if self._is_stale(generation):
                return
            self._set_phase(Phase.VERIFYING)
            hardened = [
                copy.deepcopy(u) for u in self._state.units.values()
                if u.status == UnitStatus.HARDENED
            ]

        action = partial(verify_unit, client=self._client, sidecars=self._sidecars)
        self._executor_for(generation).run_parallel(
            hardened, action, "Verification", start_status=UnitStatus.VERIFYING,
        )

        with self._lock:
            if self._is_stale(generation):
                return
            self._set_phase(Phase.COMPLETE)
            self._state.completed_at = _now()
            run_id = self._state.run_id or "run-unknown"
            record = self.snapshot()

        if self._runs_dir is not None:
            try:
                save_run_log(run_id, record, self._runs_dir)
            except OSError as e:
                log.warning("Could not save run log %s: %s", run_id, e)

    # ── Ad-hoc Queries ─────────────────────────────────────────────────

    def ask_about_screen(self, name: str, question: str) -> str:
        unit = self.get_unit(name)
        return ask_question(unit, question, self._client)

    def explain_finding(self, name: str, finding_id: str) -> str:
        unit = self.get_unit(name)
        finding = find_finding(unit.analysis, finding_id)
        if finding is None:
            raise FindingNotFound(name, finding_id)
        return explain_finding(unit, finding, self._client)

    def retry_screen(self, name: str) -> dict:
        """Re-run analysis for one unit in the background and return at once."""
        with self._lock:
            if name not in self._state.units:
                raise UnitNotFound(name)
            self._update_unit(name, status=UnitStatus.ANALYZING, error=None)
            unit = copy.deepcopy(self._state.units[name])
            generation = self._state.generation

        threading.Thread(
            target=self._executor_for(generation).run_one,
            args=(unit, self._analysis_action(), "Retry"),
            name=f"retry-{name}",
            daemon=True,
        ).start()
        log.info("Retrying analysis for %s", name)
        return {"status": "retrying", "controller": name}

    # ── Observation ────────────────────────────────────────────────────

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._state.phase

    def get_unit(self, name: str) -> Unit:
        """Return a copy of a unit; changes to it do not affect the registry."""
        with self._lock:
            unit = self._state.units.get(name)
            if unit is None:
                raise UnitNotFound(name)
            return copy.deepcopy(unit)

    def snapshot(self) -> dict:
        with self._lock:
            state = self._state
            return copy.deepcopy({
                "phase": state.phase.value,
                "run_id": state.run_id,
                "units": {name: unit.to_dict() for name, unit in state.units.items()},
                "errors": state.errors,
                "started_at": state.started_at,
                "completed_at": state.completed_at,
            })

    def to_json(self) -> str:
        with self._lock:
            return json.dumps(self.snapshot(), default=str)

    def list_runs(self) -> list[dict]:
        """Saved run logs for this pipeline's runs_dir; empty when logging is off."""
        if self._runs_dir is None:
            return []
        return list_run_logs(self._runs_dir)

    def reset(self) -> None:
        """Start a new lifecycle: back to idle with an empty registry.

        The error log is kept. Workers still running from the previous
        lifecycle cannot touch the new state: their updates, errors and
        phase changes carry the old generation and are dropped.
        """
        with self._lock:
            self._state = PipelineState(
                errors=self._state.errors,
                generation=self._state.generation + 1,
            )
        log.info("Pipeline reset")

    def sanitize_error(self, message: Any) -> Any:
        """Replace the project root in an error message with <project>."""
        if not isinstance(message, str):
            return message
        roots = {self._given_root, str(self.root), os.path.realpath(self.root)}
        for root in sorted(roots, key=len, reverse=True):
            message = message.replace(root, "<project>")
        return message

    # ── Internals ──────────────────────────────────────────────────────

    def _analysis_action(self) -> Callable[[Unit], dict]:
        return partial(analyze_unit, client=self._client, sidecars=self._sidecars)

    def _executor_for(self, generation: int) -> PhaseExecutor:
        return PhaseExecutor(
            partial(self._update_unit, generation=generation),
            partial(self._add_error, generation=generation),
            self.sanitize_error,
        )

    def _generation(self) -> int:
        with self._lock:
            return self._state.generation

    def _is_stale(self, generation: int | None) -> bool:
        if generation is None or generation == self._state.generation:
            return False
        log.info("Dropping work from generation %d (now %d)", generation, self._state.generation)
        return True

    def _copy_units(self) -> list[Unit]:
        return [copy.deepcopy(u) for u in self._state.units.values()]

    def _require_phase(self, expected: Phase) -> None:
        if self._state.phase != expected:
            raise PhaseConflict(expected.value, self._state.phase.value)

    def _set_phase(self, phase: Phase) -> None:
        with self._lock:
            log.info("Phase: %s → %s", self._state.phase.value, phase.value)
            self._state.phase = phase

    def _update_unit(self, name: str, generation: int | None = None, **fields: Any) -> None:
        """The single write path for unit fields."""
        unknown = set(fields) - UNIT_FIELDS
        if unknown:
            raise AttributeError(f"Unknown unit fields: {sorted(unknown)}")
        if "status" in fields:
            fields["status"] = UnitStatus(fields["status"])

        with self._lock:
            if self._is_stale(generation):
                return
            unit = self._state.units.get(name)
            if unit is None:
                log.warning("Dropping update for unknown unit %s", name)
                return
            for key, value in fields.items():
                setattr(unit, key, value)

    def _add_error(self, message: str, generation: int | None = None) -> None:
        with self._lock:
            if self._is_stale(generation):
                return
            self._state.errors.append({"message": message, "at": _now()})


# ── Run log ───────────────────────────────────────────────────────────

def save_run_log(run_id: str, record: dict, runs_dir: Path) -> str:
    """Save the final pipeline snapshot to runs_dir/<run_id>.json."""
    runs_dir.mkdir(parents=True, exist_ok=True)
    file_path = runs_dir / f"{run_id}.json"
    with open(file_path, "w") as f:
        json.dump(record, f, indent=2, default=str)
    log.info("Run log saved: %s", file_path)
    return str(file_path)


def list_run_logs(runs_dir: Path) -> list[dict]:
    """Summaries of saved runs, newest first. Unreadable files are skipped."""
    if not runs_dir.is_dir():
        return []
    runs = []
    for log_file in sorted(runs_dir.glob("*.json"), reverse=True):
        try:
            with open(log_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Skipping unreadable run log %s: %s", log_file, e)
            continue
        runs.append({
            "run_id": data.get("run_id"),
            "phase": data.get("phase"),
            "started_at": data.get("started_at"),
            "completed_at": data.get("completed_at"),
            "units": len(data.get("units", {})),
        })
    return runs
