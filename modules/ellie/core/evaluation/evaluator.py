"""
Retrieval quality evaluator.

Computes metrics over labeled cases (one JSON object per fixture line) and
checks four release gates:

    recall_precision_at_k             >=  min_precision_at_k
    false_injection_rate              <=  max_false_injection_rate
    compaction_recovery_success_rate  >=  min_recovery_success_rate
    p95_recall_latency_ms             <=  max_p95_latency_ms
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from lib.normalize import clamp_unit, is_finite_number

logger = logging.getLogger(__name__)

DEFAULT_K = 5


@dataclass
class EvaluatorCase:
    id: str = ""
    query: str = ""
    retrieved_ids: List[str] = field(default_factory=list)
    relevant_ids: List[str] = field(default_factory=list)
    # Optional per-retrieved-id relevance scores, aligned with retrieved_ids.
    retrieved_scores: List[float] = field(default_factory=list)
    should_inject: bool = False
    injected: bool = False
    injected_tokens: int = 0
    recovery_expected: bool = False
    recovery_succeeded: bool = False
    shared_promoted: bool = False
    shared_correct: bool = False
    latency_ms: float = 0.0
    ellie_injected_count: int = 0
    ellie_referenced_count: int = 0
    ellie_missed_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluatorCase":
        """Build a case from one fixture object.

        ``null`` means the field's zero value; any other type mismatch
        raises ``ValueError``.
        """
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            kind = _FIELD_KINDS[f.name]
            if value is None:
                values[f.name] = [] if kind == "list" else _ZERO[kind]
            else:
                values[f.name] = _coerce_field(f.name, kind, value)
        return cls(**values)


_ZERO = {"str": "", "bool": False, "int": 0, "float": 0.0}

_FIELD_KINDS = {
    "id": "str",
    "query": "str",
    "retrieved_ids": "list",
    "relevant_ids": "list",
    "retrieved_scores": "list",
    "should_inject": "bool",
    "injected": "bool",
    "injected_tokens": "int",
    "recovery_expected": "bool",
    "recovery_succeeded": "bool",
    "shared_promoted": "bool",
    "shared_correct": "bool",
    "latency_ms": "float",
    "ellie_injected_count": "int",
    "ellie_referenced_count": "int",
    "ellie_missed_count": "int",
}


def _coerce_field(name: str, kind: str, value: Any) -> Any:
    if kind == "str":
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ValueError(f"{name} must be a string")
        return str(value)
    if kind == "bool":
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean")
        return value
    if kind == "list":
        if not isinstance(value, list):
            raise ValueError(f"{name} must be a list")
        if name == "retrieved_scores":
            if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in value):
                raise ValueError(f"{name} must contain numbers")
            return [float(v) for v in value]
        return [str(v) for v in value if v is not None]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if kind == "int":
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{name} must be an integer")
        return int(value)
    return float(value)


@dataclass
class EvaluatorSettings:
    k: int = DEFAULT_K
    min_precision_at_k: float = 0.80
    max_false_injection_rate: float = 0.02
    min_recovery_success_rate: float = 0.95
    max_p95_latency_ms: float = 0.0

    @classmethod
    def from_config(cls) -> "EvaluatorSettings":
        from config import get_config

        cfg = get_config().evaluator
        return cls(
            k=cfg.k,
            min_precision_at_k=cfg.min_precision_at_k,
            max_false_injection_rate=cfg.max_false_injection_rate,
            min_recovery_success_rate=cfg.min_recovery_success_rate,
            max_p95_latency_ms=cfg.max_p95_latency_ms,
        )

    def normalized(self) -> "EvaluatorSettings":
        k = self.k if isinstance(self.k, int) and self.k > 0 else DEFAULT_K
        p95 = self.max_p95_latency_ms
        if not is_finite_number(p95) or p95 <= 0:
            p95 = math.inf
        return EvaluatorSettings(
            k=k,
            min_precision_at_k=clamp_unit(self.min_precision_at_k),
            max_false_injection_rate=clamp_unit(self.max_false_injection_rate),
            min_recovery_success_rate=clamp_unit(self.min_recovery_success_rate),
            max_p95_latency_ms=float(p95),
        )


@dataclass
class EvaluatorMetrics:
    recall_precision_at_k: float = 0.0
    false_injection_rate: float = 0.0
    compaction_recovery_success_rate: float = 0.0
    p95_recall_latency_ms: float = 0.0
    avg_injected_tokens: float = 0.0
    shared_promotion_precision: float = 0.0
    ellie_retrieval_precision: float = 0.0
    ellie_retrieval_recall: float = 0.0
    case_count: int = 0


@dataclass
class EvaluatorGateResult:
    name: str
    comparator: str
    actual: float
    threshold: float
    passed: bool


@dataclass
class EvaluatorResult:
    metrics: EvaluatorMetrics = field(default_factory=EvaluatorMetrics)
    gates: List[EvaluatorGateResult] = field(default_factory=list)
    passed: bool = False
    failed_gates: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # JSON has no infinity
        for gate in data["gates"]:
            if math.isinf(gate["threshold"]):
                gate["threshold"] = None
        return data


def load_evaluator_cases_jsonl(path: Union[str, Path]) -> List[EvaluatorCase]:
    """Parse a fixture file; blank and ``#`` lines are skipped."""
    try:
        fh = open(path, "r", encoding="utf-8")
    except OSError as e:
        raise OSError(f"open evaluator fixture: {e}") from e

    cases: List[EvaluatorCase] = []
    with fh:
        for line_no, raw in enumerate(fh, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise ValueError("expected a JSON object")
                case = EvaluatorCase.from_dict(data)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                raise ValueError(f"parse evaluator fixture line {line_no}: {e}") from e
            if not str(case.id or "").strip():
                case.id = f"line-{line_no}"
            if not is_finite_number(case.latency_ms) or case.latency_ms < 0:
                case.latency_ms = 0.0
            cases.append(case)
    return cases


def _trimmed_set(values: Sequence[Any]) -> set:
    return {str(v).strip() for v in values or [] if str(v or "").strip()}


def compute_precision_at_k(cases: Sequence[EvaluatorCase], k: int) -> float:
    """Hits in the top ``k`` divided by ``k``, averaged over cases that should inject."""
    if k <= 0:
        k = DEFAULT_K
    total = 0.0
    denominator = 0
    for case in cases:
        if not case.should_inject:
            continue
        denominator += 1
        relevant = _trimmed_set(case.relevant_ids)
        if not case.retrieved_ids or not relevant:
            continue
        hits = sum(
            1 for item_id in case.retrieved_ids[:k]
            if str(item_id or "").strip() in relevant
        )
        total += hits / k
    if denominator == 0:
        return 0.0
    return total / denominator


def compute_false_injection_rate(cases: Sequence[EvaluatorCase]) -> float:
    negatives = [c for c in cases if not c.should_inject]
    if not negatives:
        return 0.0
    return sum(1 for c in negatives if c.injected) / len(negatives)


def compute_recovery_success_rate(cases: Sequence[EvaluatorCase]) -> float:
    expected = [c for c in cases if c.recovery_expected]
    if not expected:
        return 0.0
    return sum(1 for c in expected if c.recovery_succeeded) / len(expected)


def compute_avg_injected_tokens(cases: Sequence[EvaluatorCase]) -> float:
    tokens = [c.injected_tokens for c in cases if c.injected and c.injected_tokens >= 0]
    if not tokens:
        return 0.0
    return sum(tokens) / len(tokens)


def compute_shared_promotion_precision(cases: Sequence[EvaluatorCase]) -> float:
    promoted = [c for c in cases if c.shared_promoted]
    if not promoted:
        return 0.0
    return sum(1 for c in promoted if c.shared_correct) / len(promoted)


def compute_p95_latency_ms(cases: Sequence[EvaluatorCase]) -> float:
    """Nearest-rank p95 over finite, non-negative latencies."""
    values = sorted(
        float(c.latency_ms) for c in cases
        if is_finite_number(c.latency_ms) and c.latency_ms >= 0
    )
    if not values:
        return 0.0
    position = math.ceil(0.95 * len(values)) - 1
    position = min(max(position, 0), len(values) - 1)
    return values[position]


def compute_ellie_retrieval_precision(cases: Sequence[EvaluatorCase]) -> float:
    injected = sum(c.ellie_injected_count for c in cases if c.ellie_injected_count > 0)
    referenced = sum(c.ellie_referenced_count for c in cases if c.ellie_referenced_count > 0)
    if injected <= 0:
        return 0.0
    return clamp_unit(referenced / injected)


def compute_ellie_retrieval_recall(cases: Sequence[EvaluatorCase]) -> float:
    referenced = sum(c.ellie_referenced_count for c in cases if c.ellie_referenced_count > 0)
    missed = sum(c.ellie_missed_count for c in cases if c.ellie_missed_count > 0)
    if referenced + missed <= 0:
        return 0.0
    return clamp_unit(referenced / (referenced + missed))


class Evaluator:
    def __init__(self, settings: Optional[EvaluatorSettings] = None):
        self.settings = settings or EvaluatorSettings()

    def run_from_jsonl(self, path: Union[str, Path]) -> EvaluatorResult:
        return self.run(load_evaluator_cases_jsonl(path))

    def run(self, cases: Sequence[EvaluatorCase]) -> EvaluatorResult:
        cfg = self.settings.normalized()
        metrics = EvaluatorMetrics(
            recall_precision_at_k=compute_precision_at_k(cases, cfg.k),
            false_injection_rate=compute_false_injection_rate(cases),
            compaction_recovery_success_rate=compute_recovery_success_rate(cases),
            p95_recall_latency_ms=compute_p95_latency_ms(cases),
            avg_injected_tokens=compute_avg_injected_tokens(cases),
            shared_promotion_precision=compute_shared_promotion_precision(cases),
            ellie_retrieval_precision=compute_ellie_retrieval_precision(cases),
            ellie_retrieval_recall=compute_ellie_retrieval_recall(cases),
            case_count=len(cases),
        )
        gates = [
            EvaluatorGateResult(
                "recall_precision_at_k", ">=", metrics.recall_precision_at_k, cfg.min_precision_at_k,
                metrics.recall_precision_at_k >= cfg.min_precision_at_k,
            ),
            EvaluatorGateResult(
                "false_injection_rate", "<=", metrics.false_injection_rate, cfg.max_false_injection_rate,
                metrics.false_injection_rate <= cfg.max_false_injection_rate,
            ),
            EvaluatorGateResult(
                "compaction_recovery_success_rate", ">=", metrics.compaction_recovery_success_rate,
                cfg.min_recovery_success_rate,
                metrics.compaction_recovery_success_rate >= cfg.min_recovery_success_rate,
            ),
            EvaluatorGateResult(
                "p95_recall_latency_ms", "<=", metrics.p95_recall_latency_ms, cfg.max_p95_latency_ms,
                metrics.p95_recall_latency_ms <= cfg.max_p95_latency_ms,
            ),
        ]
        failed = [g.name for g in gates if not g.passed]
        if failed:
            logger.info("[evaluator] %d cases, failed gates: %s", len(cases), ", ".join(failed))
        return EvaluatorResult(metrics=metrics, gates=gates, passed=not failed, failed_gates=failed)
