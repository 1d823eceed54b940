"""
Remaining-Time Estimator
========================

Per-stage and overall remaining-time estimates for a validation run.

Throughput is smoothed with an exponentially weighted moving average
whose weight on new samples grows with stage progress: early estimates
are smoothed heavily, estimates near completion follow recent rates.
The rate of the progress fraction is smoothed the same way for stages
that only report a ratio. Stage durations of earlier runs are kept in a
YAML history file and seed the estimate before progress is measurable.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Union

import numpy as np
import yaml

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
MIN_ALPHA = 0.1
MAX_ALPHA = 0.6
REQUIRED_SAMPLES = 5
PROGRESS_SATURATION = 0.05
STABLE_RATE_CV = 0.35
RATE_HISTORY = 30
DURATION_HISTORY = 10


def format_duration(seconds: Optional[float]) -> str:
    """Short display hint such as ``45s``, ``3m 20s`` or ``2h 05m``."""
    if seconds is None:
        return "unknown"
    seconds = max(0, int(round(seconds)))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60:02d}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60:02d}m"


@dataclass
class StageEstimate:
    stage: str
    remaining_seconds: Optional[float]
    confidence: float
    status: str

    @property
    def display(self) -> str:
        return format_duration(self.remaining_seconds)


@dataclass
class RunEstimate:
    remaining_seconds: Optional[float]
    confidence: float
    stages: List[StageEstimate]

    @property
    def display(self) -> str:
        return format_duration(self.remaining_seconds)


@dataclass
class _StageState:
    status: str = "pending"
    started: Optional[float] = None
    total_units: Optional[int] = None
    processed: int = 0
    fraction: float = 0.0
    last_time: Optional[float] = None
    last_processed: int = 0
    smoothed_rate: Optional[float] = None
    smoothed_fraction_rate: Optional[float] = None
    rates: Deque[float] = field(default_factory=lambda: deque(maxlen=RATE_HISTORY))


class RemainingTimeEstimator:
    """
    Track stage progress and estimate the remaining run time.

    Args:
        stages: Stage names in execution order
        clock: Monotonic time source
        predictions: Historical duration per stage, used before progress is measurable
        logger: Logger instance for output
    """

    def __init__(
        self,
        stages: List[str],
        clock: Callable[[], float] = time.monotonic,
        predictions: Optional[Dict[str, float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.clock = clock
        self.predictions = dict(predictions or {})
        self.logger = logger or logging.getLogger(__name__)
        self._stages: Dict[str, _StageState] = {name: _StageState() for name in stages}

    def _state(self, stage: str) -> _StageState:
        if stage not in self._stages:
            self._stages[stage] = _StageState()
        return self._stages[stage]

    def start_stage(self, stage: str, total_units: Optional[int] = None) -> None:
        state = self._state(stage)
        now = self.clock()
        state.status = "running"
        state.started = now
        state.last_time = now
        state.total_units = total_units

    def complete_stage(self, stage: str) -> None:
        state = self._state(stage)
        state.status = "completed"
        state.fraction = 1.0

    def skip_stage(self, stage: str) -> None:
        self._state(stage).status = "skipped"

    def alpha(self, fraction: float) -> float:
        fraction = min(max(fraction, 0.0), 1.0)
        return MIN_ALPHA + (MAX_ALPHA - MIN_ALPHA) * fraction

    def record_progress(
        self,
        stage: str,
        processed_units: Optional[int] = None,
        fraction: Optional[float] = None,
    ) -> None:
        """
        Record progress of a running stage.

        Args:
            stage: Stage name
            processed_units: Units finished so far, when unit counts are known
            fraction: Progress fraction in [0, 1], when only a ratio is known
        """
        state = self._state(stage)
        if state.started is None:
            self.start_stage(stage)
        now = self.clock()
        if processed_units is not None:
            if state.total_units:
                state.fraction = min(1.0, processed_units / state.total_units)
            delta_units = processed_units - state.last_processed
            delta_time = now - state.last_time
            if delta_units > 0 and delta_time > 0:
                rate = delta_units / delta_time
                state.rates.append(rate)
                if state.smoothed_rate is None:
                    state.smoothed_rate = rate
                else:
                    a = self.alpha(state.fraction)
                    state.smoothed_rate = a * rate + (1 - a) * state.smoothed_rate
                state.last_time = now
                state.last_processed = processed_units
            state.processed = processed_units
        if fraction is not None:
            state.fraction = min(max(fraction, 0.0), 1.0)
        self._update_fraction_rate(state, now)

    def _update_fraction_rate(self, state: _StageState, now: float) -> None:
        elapsed = now - state.started
        if elapsed <= 0 or state.fraction <= 0:
            return
        rate = state.fraction / elapsed
        if state.smoothed_fraction_rate is None:
            state.smoothed_fraction_rate = rate
        else:
            a = self.alpha(state.fraction)
            state.smoothed_fraction_rate = a * rate + (1 - a) * state.smoothed_fraction_rate

    def _confidence(self, state: _StageState) -> float:
        confidence = MIN_CONFIDENCE
        if state.rates or state.smoothed_fraction_rate:
            confidence = 0.5
        if len(state.rates) >= REQUIRED_SAMPLES:
            confidence = max(confidence, 0.7)
            rates = np.asarray(state.rates, dtype=float)
            mean = rates.mean()
            if mean > 0 and rates.std() / mean < STABLE_RATE_CV:
                confidence = min(MAX_CONFIDENCE, confidence + 0.2)
        if state.fraction >= 0.9:
            confidence += 0.1
        return min(max(confidence, MIN_CONFIDENCE), 1.0)

    def estimate_stage(self, stage: str) -> StageEstimate:
        state = self._state(stage)
        if state.status in ("completed", "skipped"):
            return StageEstimate(stage, 0.0, MAX_CONFIDENCE, state.status)
        predicted = self.predictions.get(stage)
        if state.started is None:
            return StageEstimate(stage, predicted, MIN_CONFIDENCE, state.status)

        if state.total_units is not None and state.smoothed_rate:
            remaining = max(0, state.total_units - state.processed) / state.smoothed_rate
        elif PROGRESS_SATURATION < state.fraction < 1.0 and state.smoothed_fraction_rate:
            remaining = (1.0 - state.fraction) / state.smoothed_fraction_rate
        else:
            remaining = predicted
        return StageEstimate(stage, remaining, self._confidence(state), state.status)

    def estimate(self) -> RunEstimate:
        """
        Overall estimate: the sum of incomplete stages' remaining time and
        the mean of all stages' confidence.
        """
        stages = [self.estimate_stage(name) for name in self._stages]
        known = [s.remaining_seconds for s in stages if s.remaining_seconds is not None]
        unknown = any(
            s.remaining_seconds is None for s in stages if s.status not in ("completed", "skipped")
        )
        remaining = None if unknown and not known else float(sum(known))
        confidence = sum(s.confidence for s in stages) / len(stages) if stages else MIN_CONFIDENCE
        return RunEstimate(remaining, confidence, stages)


class StageHistory:
    """
    Durations of earlier runs per stage, stored as YAML.

    The file maps stage names to the most recent durations in seconds.
    The prediction for a stage is the mean of its recorded durations.

    Args:
        path: History file; created on the first ``record``
        max_samples: Durations kept per stage
        logger: Logger instance for output
    """

    def __init__(
        self,
        path: Union[str, Path],
        max_samples: int = DURATION_HISTORY,
        logger: Optional[logging.Logger] = None,
    ):
        self.path = Path(path)
        self.max_samples = max_samples
        self.logger = logger or logging.getLogger(__name__)

    def load(self) -> Dict[str, List[float]]:
        """Read recorded durations; a missing or unreadable file is an empty history."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.logger.warning(f"Ignoring stage history {self.path}: {e}")
            return {}
        if not isinstance(content, dict):
            return {}
        history = {}
        for stage, durations in content.items():
            if isinstance(durations, list):
                values = [float(d) for d in durations if isinstance(d, (int, float)) and d > 0]
                if values:
                    history[str(stage)] = values
        return history

    def predictions(self) -> Dict[str, float]:
        return {stage: float(np.mean(values)) for stage, values in self.load().items()}

    def record(self, durations: Dict[str, float]) -> None:
        """Append one run's stage durations; non-positive durations are dropped."""
        history = self.load()
        for stage, seconds in durations.items():
            if seconds > 0:
                history.setdefault(stage, []).append(float(seconds))
                history[stage] = history[stage][-self.max_samples:]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                yaml.safe_dump(history, f, default_flow_style=False, sort_keys=True)
        except OSError as e:
            self.logger.warning(f"Could not write stage history {self.path}: {e}")
            return
        self.logger.debug(f"Recorded durations of {len(durations)} stages in {self.path}")
