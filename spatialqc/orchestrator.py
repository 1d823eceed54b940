"""
Stage Orchestrator
==================

Drives a validation run through the table, schema, geometry, relation and
attribute stages. Every finding is located by the resolver before it
reaches the sink. A run always ends with a RunSummary: failed units and
cancellation are recorded, never raised.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

from tqdm import tqdm

from .criteria import GeometryCriteria, PerformanceSettings, RuleSet
from .eta import RemainingTimeEstimator, StageHistory
from .exceptions import SpatialQCError
from .models import Finding, RunSummary, UnitStatus, WorkUnitResult
from .resolver import ErrorLocationResolver
from .scheduler import AdaptiveScheduler, CancellationToken
from .sink import FindingsSink
from .source import GeometrySource
from .stages import RunContext, Stage, default_stages


class StageOrchestrator:
    """
    Run the validation pipeline over one dataset.

    Args:
        source: Open geometry source
        rules: Rules for all stages
        criteria: Geometry thresholds
        performance: Parallelism and resource settings
        sink: Findings sink (a new one by default)
        scheduler: Work unit scheduler (built from ``performance`` by default)
        resolver: Location resolver (bound to ``source`` by default)
        stages: Stage sequence (the five standard stages by default)
        history: Stage duration history seeding the remaining-time estimate
            (read from ``performance.history_file`` by default)
        show_progress: Display a tqdm progress bar per stage
        logger: Logger instance for output
    """

    def __init__(
        self,
        source: GeometrySource,
        rules: Optional[RuleSet] = None,
        criteria: Optional[GeometryCriteria] = None,
        performance: Optional[PerformanceSettings] = None,
        sink: Optional[FindingsSink] = None,
        scheduler: Optional[AdaptiveScheduler] = None,
        resolver: Optional[ErrorLocationResolver] = None,
        stages: Optional[List[Stage]] = None,
        history: Optional[StageHistory] = None,
        show_progress: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.source = source
        self.rules = rules or RuleSet()
        self.criteria = criteria or GeometryCriteria()
        self.performance = performance or PerformanceSettings()
        self.sink = sink or FindingsSink(logger=self.logger)
        self.scheduler = scheduler or AdaptiveScheduler(self.performance, logger=self.logger)
        self.resolver = resolver or ErrorLocationResolver(source, logger=self.logger)
        self.stages = stages or default_stages()
        self.show_progress = show_progress
        if history is None and self.performance.history_file:
            history = StageHistory(self.performance.history_file, logger=self.logger)
        self.history = history
        self.estimator = RemainingTimeEstimator(
            [s.name for s in self.stages],
            predictions=history.predictions() if history else None,
            logger=self.logger,
        )
        self.stage_durations: Dict[str, float] = {}
        self._progress_lock = threading.Lock()

    def emit(self, findings: List[Finding]) -> int:
        """Resolve findings and append them to the sink."""
        if not findings:
            return 0
        return self.sink.extend(self.resolver.resolve_all(findings))

    def run(self, token: Optional[CancellationToken] = None) -> RunSummary:
        """
        Execute all stages in order.

        Args:
            token: Cancellation token; cancelling keeps emitted findings and
                marks the remaining units cancelled

        Returns:
            RunSummary of the run
        """
        token = token or CancellationToken()
        summary = RunSummary()
        start = time.time()
        context = RunContext(
            source=self.source,
            rules=self.rules,
            criteria=self.criteria,
            performance=self.performance,
            emit=self.emit,
            token=token,
            logger=self.logger,
        )

        for stage in self.stages:
            summary.units.extend(self._run_stage(stage, context))

        counts = self.sink.summary()
        summary.located = counts["located"]
        summary.unlocated = counts["unlocated"]
        summary.by_code = counts["by_code"]
        summary.cancelled = token.is_cancelled
        summary.elapsed_seconds = time.time() - start
        if self.history is not None and not summary.cancelled and self.stage_durations:
            self.history.record(self.stage_durations)
        self.logger.info(
            f"Run finished in {summary.elapsed_seconds:.1f}s: {summary.located} located, "
            f"{summary.unlocated} unlocated findings, {len(summary.failed_units)} failed units"
            + (" (cancelled)" if summary.cancelled else "")
        )
        return summary

    def _unit_names(self, stage: Stage, context: RunContext) -> List[str]:
        try:
            names = [unit.name for unit in stage.plan(context)]
        except SpatialQCError:
            names = []
        return names or [stage.name]

    def _run_stage(self, stage: Stage, context: RunContext) -> List[WorkUnitResult]:
        try:
            stage.validate_config(context)
            units = stage.plan(context)
        except SpatialQCError as e:
            self.logger.error(f"Stage {stage.name} not run: {e}")
            self.estimator.skip_stage(stage.name)
            return [
                WorkUnitResult(name, stage.name, UnitStatus.FAILED, error=str(e))
                for name in self._unit_names(stage, context)
            ]

        if context.token.is_cancelled:
            self.estimator.skip_stage(stage.name)
            return [WorkUnitResult(u.name, stage.name, UnitStatus.CANCELLED) for u in units]
        if not units:
            self.estimator.skip_stage(stage.name)
            return []

        self.logger.info(f"Stage {stage.name}: {len(units)} work units")
        self.estimator.start_stage(stage.name, total_units=len(units))
        started = time.perf_counter()
        finished = [0]
        bar = tqdm(total=len(units), desc=f"{stage.name} stage", unit="unit", disable=not self.show_progress)

        def on_complete(result: WorkUnitResult) -> None:
            with self._progress_lock:
                finished[0] += 1
                self.estimator.record_progress(stage.name, processed_units=finished[0])
                bar.update(1)
                estimate = self.estimator.estimate()
                self.logger.debug(
                    f"{stage.name}: {finished[0]}/{len(units)} units, about {estimate.display} "
                    f"remaining (confidence {estimate.confidence:.2f})"
                )

        try:
            with stage.scope(context):
                results = self.scheduler.run(units, stage=stage.name, token=context.token, on_complete=on_complete)
        finally:
            bar.close()
        self.estimator.complete_stage(stage.name)
        self.stage_durations[stage.name] = time.perf_counter() - started
        return results
