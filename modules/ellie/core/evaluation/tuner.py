"""
Autonomous retrieval tuner.

One attempt mutates a single parameter of the retrieval config by one
step, evaluates baseline and candidate, and applies the candidate only
when it passes its gates, regresses none of the four core metrics and
improves at least one.  Every attempt, including rate-limited ones, is
written to the audit sink.
"""

import json
import logging
import os
import random
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from core.contracts.stores import TuningAuditSink
from core.evaluation.evaluator import EvaluatorCase, EvaluatorMetrics, EvaluatorResult
from lib.errors import ConfigurationError
from lib.normalize import format_timestamp, is_finite_number, parse_timestamp, utc_now
from lib.worker_pool import run_callables

logger = logging.getLogger(__name__)

HARD_MIN_RECALL_MIN_RELEVANCE = 0.60
DEFAULT_APPLY_INTERVAL = timedelta(hours=24)
METRIC_EPSILON = 1e-9

STATUS_APPLIED = "applied"
STATUS_SKIPPED = "skipped"
STATUS_ROLLED_BACK = "rolled_back"
STATUS_ROLLBACK_FAILED = "rollback_failed"

SENSITIVITIES = ("public", "internal", "restricted")
SCOPES = ("agent", "team", "org")


@dataclass
class RetrievalTuning:
    recall_min_relevance: float = 0.70
    recall_max_results: int = 5
    recall_max_chars: int = 4000
    sensitivity: str = "internal"
    scope: str = "org"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievalTuning":
        base = cls()
        return cls(
            recall_min_relevance=float(data.get("recall_min_relevance", base.recall_min_relevance)),
            recall_max_results=int(data.get("recall_max_results", base.recall_max_results)),
            recall_max_chars=int(data.get("recall_max_chars", base.recall_max_chars)),
            sensitivity=str(data.get("sensitivity", base.sensitivity)),
            scope=str(data.get("scope", base.scope)),
        )


@dataclass
class TunerBounds:
    min_relevance: float = HARD_MIN_RECALL_MIN_RELEVANCE
    max_relevance: float = 0.95
    relevance_step: float = 0.05
    min_results: int = 1
    max_results: int = 10
    results_step: int = 1
    min_chars: int = 500
    max_chars: int = 8000
    chars_step: int = 250

    def normalized(self) -> "TunerBounds":
        defaults = TunerBounds()
        b = replace(self)

        if not _finite_positive(b.min_relevance):
            b.min_relevance = defaults.min_relevance
        b.min_relevance = max(b.min_relevance, HARD_MIN_RECALL_MIN_RELEVANCE)
        if not _finite_positive(b.max_relevance):
            b.max_relevance = defaults.max_relevance
        if b.max_relevance < b.min_relevance:
            b.max_relevance = b.min_relevance
        if not _finite_positive(b.relevance_step):
            b.relevance_step = defaults.relevance_step

        if b.min_results <= 0:
            b.min_results = defaults.min_results
        if b.max_results <= 0:
            b.max_results = defaults.max_results
        if b.min_results > b.max_results:
            b.min_results, b.max_results = defaults.min_results, defaults.max_results
        if b.results_step <= 0:
            b.results_step = defaults.results_step

        if b.min_chars <= 0:
            b.min_chars = defaults.min_chars
        if b.max_chars <= 0:
            b.max_chars = defaults.max_chars
        if b.min_chars > b.max_chars:
            b.min_chars, b.max_chars = defaults.min_chars, defaults.max_chars
        if b.chars_step <= 0:
            b.chars_step = defaults.chars_step
        return b


@dataclass
class TuningAttempt:
    id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: str = ""
    reason: str = ""
    baseline_config: RetrievalTuning = field(default_factory=RetrievalTuning)
    candidate_config: RetrievalTuning = field(default_factory=RetrievalTuning)
    baseline_result: EvaluatorResult = field(default_factory=EvaluatorResult)
    candidate_result: EvaluatorResult = field(default_factory=EvaluatorResult)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "status": self.status,
            "baseline_config": asdict(self.baseline_config),
            "candidate_config": asdict(self.candidate_config),
            "baseline_result": self.baseline_result.to_dict(),
            "candidate_result": self.candidate_result.to_dict(),
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class TuningDecision:
    attempt_id: str
    status: str = ""
    reason: str = ""
    applied: bool = False
    rolled_back: bool = False
    baseline_config: RetrievalTuning = field(default_factory=RetrievalTuning)
    candidate_config: RetrievalTuning = field(default_factory=RetrievalTuning)
    baseline_result: EvaluatorResult = field(default_factory=EvaluatorResult)
    candidate_result: EvaluatorResult = field(default_factory=EvaluatorResult)


def _finite_positive(value: Any) -> bool:
    return is_finite_number(value) and float(value) > 0


def clamp_float(value: float, low: float, high: float) -> float:
    if not is_finite_number(value):
        return low
    return min(high, max(low, float(value)))


def clamp_int(value: int, low: int, high: int) -> int:
    return min(high, max(low, int(value)))


def normalize_sensitivity(value: str) -> str:
    value = str(value or "").strip().lower()
    return value if value in SENSITIVITIES else "internal"


def normalize_scope(value: str) -> str:
    value = str(value or "").strip().lower()
    return value if value in SCOPES else "org"


def normalize_tuning(cfg: RetrievalTuning, bounds: TunerBounds) -> RetrievalTuning:
    return RetrievalTuning(
        recall_min_relevance=clamp_float(cfg.recall_min_relevance, bounds.min_relevance, bounds.max_relevance),
        recall_max_results=clamp_int(cfg.recall_max_results, bounds.min_results, bounds.max_results),
        recall_max_chars=clamp_int(cfg.recall_max_chars, bounds.min_chars, bounds.max_chars),
        sensitivity=normalize_sensitivity(cfg.sensitivity),
        scope=normalize_scope(cfg.scope),
    )


def mutate_tuning(current: RetrievalTuning, bounds: TunerBounds, parameter: int, direction: int) -> RetrievalTuning:
    """Move one parameter one step; sensitivity and scope are never changed."""
    candidate = replace(current)
    parameter = abs(int(parameter)) % 3
    if parameter == 0:
        candidate.recall_min_relevance = clamp_float(
            current.recall_min_relevance + bounds.relevance_step * direction,
            bounds.min_relevance, bounds.max_relevance,
        )
    elif parameter == 1:
        candidate.recall_max_results = clamp_int(
            current.recall_max_results + bounds.results_step * direction,
            bounds.min_results, bounds.max_results,
        )
    else:
        candidate.recall_max_chars = clamp_int(
            current.recall_max_chars + bounds.chars_step * direction,
            bounds.min_chars, bounds.max_chars,
        )
    candidate.sensitivity = current.sensitivity
    candidate.scope = current.scope
    return candidate


def direction_from_choice(choice: int) -> int:
    return -1 if choice % 2 == 0 else 1


def compare_metrics(candidate: EvaluatorMetrics, baseline: EvaluatorMetrics) -> Tuple[bool, bool]:
    """Return (better, regressed) over precision, false injection, recovery and p95."""
    eps = METRIC_EPSILON
    regressed = (
        candidate.recall_precision_at_k + eps < baseline.recall_precision_at_k
        or candidate.false_injection_rate > baseline.false_injection_rate + eps
        or candidate.compaction_recovery_success_rate + eps < baseline.compaction_recovery_success_rate
        or candidate.p95_recall_latency_ms > baseline.p95_recall_latency_ms + eps
    )
    better = (
        candidate.recall_precision_at_k > baseline.recall_precision_at_k + eps
        or candidate.false_injection_rate + eps < baseline.false_injection_rate
        or candidate.compaction_recovery_success_rate > baseline.compaction_recovery_success_rate + eps
        or candidate.p95_recall_latency_ms + eps < baseline.p95_recall_latency_ms
    )
    return better, regressed


def apply_tuning_to_case(case: EvaluatorCase, cfg: RetrievalTuning) -> EvaluatorCase:
    """View a labeled case through a retrieval config.

    Retrieved ids scoring under ``recall_min_relevance`` are dropped (only
    when scores are present) and the list is capped at ``recall_max_results``.
    A case whose retrieved list empties this way no longer injects.
    """
    retrieved = list(case.retrieved_ids)
    scores = list(case.retrieved_scores or [])
    if scores and len(scores) == len(retrieved):
        retrieved = [
            item_id for item_id, score in zip(retrieved, scores)
            if is_finite_number(score) and float(score) >= cfg.recall_min_relevance
        ]
    retrieved = retrieved[: max(0, cfg.recall_max_results)]
    injected = case.injected and (bool(retrieved) or not case.retrieved_ids)
    return replace(case, retrieved_ids=retrieved, injected=injected)


class JSONLTuningAuditStore:
    """Append-only JSONL audit log, one attempt per line."""

    def __init__(self, path: Union[str, Path]):
        self.path = str(path or "")

    def record(self, attempt: TuningAttempt) -> None:
        if not self.path:
            raise ConfigurationError("jsonl tuning audit path is required")
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        except OSError as e:
            raise OSError(f"create tuning audit directory: {e}") from e
        line = json.dumps(attempt.to_dict(), sort_keys=True)
        fd = os.open(self.path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")


class FileTunerStateStore:
    """Persists the applied retrieval config and the last apply time."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return data if isinstance(data, dict) else {}

    def load(self, default: RetrievalTuning) -> RetrievalTuning:
        data = self._read().get("config")
        if not isinstance(data, dict):
            return default
        return RetrievalTuning.from_dict({**asdict(default), **data})

    def last_applied_at(self) -> Optional[datetime]:
        return parse_timestamp(self._read().get("last_applied_at"))

    def save(self, cfg: RetrievalTuning, applied_at: Optional[datetime] = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"config": asdict(cfg), "last_applied_at": format_timestamp(applied_at or utc_now())}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)


class Tuner:
    def __init__(
        self,
        evaluator: Callable[[RetrievalTuning], EvaluatorResult],
        apply: Callable[[RetrievalTuning], None],
        *,
        rollback: Optional[Callable[[RetrievalTuning], None]] = None,
        bounds: Optional[TunerBounds] = None,
        audit_sink: Optional[TuningAuditSink] = None,
        last_applied_at: Optional[Callable[[], Optional[datetime]]] = None,
        min_apply_interval: Optional[timedelta] = None,
        rng: Optional[random.Random] = None,
        now: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.evaluator = evaluator
        self.apply = apply
        self.rollback = rollback
        self.bounds = bounds or TunerBounds()
        self.audit_sink = audit_sink
        self.last_applied_at = last_applied_at
        self.min_apply_interval = min_apply_interval
        self.rng = rng or random.Random()
        self._now = now or utc_now
        self._id_factory = id_factory
        self.logger = logger or logging.getLogger(__name__)

    def _next_id(self) -> str:
        if self._id_factory is not None:
            return self._id_factory()
        now = self._now()
        return f"attempt-{int(now.timestamp() * 1_000_000)}"

    def run_once(self, current: RetrievalTuning) -> TuningDecision:
        if self.evaluator is None:
            raise ConfigurationError("tuner evaluator is required")
        if self.apply is None:
            raise ConfigurationError("tuner apply callback is required")

        bounds = self.bounds.normalized()
        baseline = normalize_tuning(current, bounds)
        parameter = self.rng.randrange(3)
        direction = direction_from_choice(self.rng.randrange(2))
        candidate = mutate_tuning(baseline, bounds, parameter, direction)

        attempt = TuningAttempt(
            id=self._next_id(),
            started_at=self._now(),
            baseline_config=baseline,
            candidate_config=candidate,
        )
        decision = TuningDecision(
            attempt_id=attempt.id, baseline_config=baseline, candidate_config=candidate
        )

        if self._rate_limited():
            decision.status = attempt.status = STATUS_SKIPPED
            decision.reason = attempt.reason = "rate_limited"
            attempt.completed_at = self._now()
            self._persist(attempt)
            self.logger.info("[tuner] attempt %s skipped: rate_limited", attempt.id)
            return decision

        baseline_result, candidate_result = run_callables(
            [
                lambda: self._evaluate("baseline", baseline),
                lambda: self._evaluate("candidate", candidate),
            ],
            max_workers=2,
            pool_name="tuner",
        )
        attempt.baseline_result = decision.baseline_result = baseline_result
        attempt.candidate_result = decision.candidate_result = candidate_result

        better, regressed = compare_metrics(candidate_result.metrics, baseline_result.metrics)
        if not candidate_result.passed:
            decision.status, decision.reason = STATUS_SKIPPED, "candidate_failed_gates"
        elif regressed:
            decision.status, decision.reason = STATUS_SKIPPED, "candidate_regressed"
        elif not better:
            decision.status, decision.reason = STATUS_SKIPPED, "no_objective_improvement"
        else:
            self._apply(decision, baseline, candidate)

        attempt.status = decision.status
        attempt.reason = decision.reason
        attempt.completed_at = self._now()
        self._persist(attempt)
        self.logger.info(
            "[tuner] attempt %s %s%s", attempt.id, decision.status,
            f": {decision.reason}" if decision.reason else "",
        )
        return decision

    def _evaluate(self, label: str, cfg: RetrievalTuning) -> EvaluatorResult:
        try:
            return self.evaluator(cfg)
        except Exception as e:
            raise RuntimeError(f"run {label} evaluator: {e}") from e

    def _apply(self, decision: TuningDecision, baseline: RetrievalTuning, candidate: RetrievalTuning) -> None:
        try:
            self.apply(candidate)
        except Exception as e:
            decision.status = STATUS_ROLLED_BACK
            decision.reason = f"apply_failed: {e}"
            decision.rolled_back = True
            if self.rollback is not None:
                try:
                    self.rollback(baseline)
                except Exception as rollback_error:
                    decision.status = STATUS_ROLLBACK_FAILED
                    decision.reason = f"apply_failed: {e}; rollback_failed: {rollback_error}"
            self.logger.warning("[tuner] %s", decision.reason)
            return
        decision.status = STATUS_APPLIED
        decision.applied = True

    def _rate_limited(self) -> bool:
        if self.last_applied_at is None:
            return False
        try:
            last = self.last_applied_at()
        except Exception as e:
            raise RuntimeError(f"get last applied time: {e}") from e
        if last is None:
            return False
        interval = self.min_apply_interval
        if interval is None or interval <= timedelta(0):
            interval = DEFAULT_APPLY_INTERVAL
        return self._now() - last < interval

    def _persist(self, attempt: TuningAttempt) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(attempt)
        except Exception as e:
            raise RuntimeError(f"persist tuning attempt: {e}") from e


def tuner_from_config(evaluate_cases, cases, *, rng: Optional[random.Random] = None) -> Tuple[Tuner, RetrievalTuning]:
    """Build a file-backed tuner plus the currently applied config.

    ``evaluate_cases`` runs an evaluator over a case list; each config is
    evaluated on ``cases`` seen through :func:`apply_tuning_to_case`.
    """
    from config import get_config
    from lib.config import get_ellie_home, get_tuning_audit_path

    cfg = get_config().tuner
    state_path = Path(cfg.state_path)
    if not state_path.is_absolute():
        state_path = get_ellie_home() / state_path
    state = FileTunerStateStore(state_path)
    b = cfg.bounds
    bounds = TunerBounds(
        min_relevance=b.min_relevance, max_relevance=b.max_relevance, relevance_step=b.relevance_step,
        min_results=b.min_results, max_results=b.max_results, results_step=b.results_step,
        min_chars=b.min_chars, max_chars=b.max_chars, chars_step=b.chars_step,
    )
    current = state.load(RetrievalTuning(
        recall_min_relevance=cfg.recall_min_relevance,
        recall_max_results=cfg.recall_max_results,
        recall_max_chars=cfg.recall_max_chars,
        sensitivity=cfg.sensitivity,
        scope=cfg.scope,
    ))
    interval_hours = cfg.interval_hours if _finite_positive(cfg.interval_hours) else 24.0
    tuner = Tuner(
        evaluator=lambda tuning: evaluate_cases([apply_tuning_to_case(c, tuning) for c in cases]),
        apply=lambda tuning: state.save(tuning),
        rollback=lambda tuning: state.save(tuning, state.last_applied_at()),
        bounds=bounds,
        audit_sink=JSONLTuningAuditStore(get_tuning_audit_path()),
        last_applied_at=state.last_applied_at,
        min_apply_interval=timedelta(hours=interval_hours),
        rng=rng,
    )
    return tuner, current
