"""
Configuration loader for the Ellie memory engine

Loads settings from <ellie_home>/config/ellie.json
Falls back to sensible defaults if config is missing.
"""

import json
import logging
import math
import os
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from lib.config import get_ellie_home
logger = logging.getLogger(__name__)


def _coerce_positive_int(raw: Any, default: int) -> int:
    """Return a positive int; fallback to default for invalid values."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _coerce_nonnegative_int(raw: Any, default: int) -> int:
    """Return a non-negative int; fallback to default for invalid values."""
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return default


def _coerce_positive_float(raw: Any, default: float) -> float:
    """Return a positive finite float; fallback to default for invalid values."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return default
    return value


def _coerce_unit_float(raw: Any, default: float) -> float:
    """Return a float in [0, 1]; fallback to default for invalid values."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or value < 0 or value > 1:
        return default
    return value


def _config_paths() -> list:
    """Config file search paths (in priority order)."""
    return [
        get_ellie_home() / "config" / "ellie.json",
        Path.home() / ".ellie" / "ellie-config.json",
        Path("./ellie-config.json"),
    ]


@dataclass
class ModelConfig:
    llm_provider: str = "anthropic"  # anthropic | openai-compatible | test
    fast_reasoning: str = "claude-haiku-4-5"
    deep_reasoning: str = "claude-sonnet-4-5"
    api_key_env: str = "ANTHROPIC_API_KEY"
    base_url: str = ""
    gateway_tier: str = "fast"
    # Reported model name must contain this token; empty disables the check.
    expected_model_token: str = "haiku"
    gateway_timeout_seconds: float = 90.0
    gateway_max_output: int = 4000
    gateway_max_retries: int = 0


@dataclass
class EmbeddingsConfig:
    provider: str = "ollama"  # ollama | openai | mock
    url: str = "http://localhost:11434"
    base_url: str = ""
    model: str = "nomic-embed-text"
    dim: int = 768
    api_key_env: str = "OPENAI_API_KEY"
    timeout_seconds: float = 30.0


@dataclass
class DatabaseConfig:
    path: str = "data/ellie.db"


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class RetrievalConfig:
    default_limit: int = 5
    jsonl_root: str = ""  # Directory of raw session logs for tier 4; empty disables
    jsonl_max_files: int = 200
    fail_hard: bool = True  # If true, embedding outages raise instead of degrading


@dataclass
class InjectionConfig:
    poll_interval_seconds: float = 3.0
    batch_size: int = 50
    max_memories: int = 5
    cooldown_messages: int = 4
    threshold: float = 0.62
    max_items: int = 5


@dataclass
class DedupConfig:
    similarity_threshold: float = 0.88
    pair_limit: int = 2000
    # Upper bound on memories fed to the O(n^2) pair scan per run.
    max_candidate_memories: int = 2000
    poll_interval_seconds: float = 300.0


@dataclass
class TaxonomyConfig:
    batch_size: int = 100
    max_assignments: int = 3
    max_retries: int = 1
    poll_interval_seconds: float = 300.0


@dataclass
class SynthesisConfig:
    min_mentions: int = 5
    candidate_batch: int = 50
    source_limit: int = 250
    poll_interval_seconds: float = 600.0


@dataclass
class IngestionConfig:
    mode: str = "normal"  # normal | backfill
    use_llm: bool = False
    interval_seconds: float = 300.0
    bridge_retry_seconds: float = 10.0
    batch_size: int = 100
    max_per_room: int = 200
    backfill_max_per_room: int = 250
    backfill_window_size: int = 0
    backfill_window_stride: int = 0
    window_gap_minutes: float = 15.0
    max_prompt_chars: int = 0  # 0 disables prompt-budget splitting
    max_message_chars: int = 0


@dataclass
class EvaluatorConfig:
    k: int = 5
    min_precision_at_k: float = 0.80
    max_false_injection_rate: float = 0.02
    min_recovery_success_rate: float = 0.95
    max_p95_latency_ms: float = 500.0
    fixture_path: str = ""


@dataclass
class TunerBoundsConfig:
    min_relevance: float = 0.60
    max_relevance: float = 0.95
    relevance_step: float = 0.05
    min_results: int = 1
    max_results: int = 10
    results_step: int = 1
    min_chars: int = 500
    max_chars: int = 8000
    chars_step: int = 250


@dataclass
class TunerConfig:
    interval_hours: float = 24.0
    audit_path: str = "logs/tuning-audit.jsonl"
    state_path: str = "data/tuner-config.json"
    recall_min_relevance: float = 0.70
    recall_max_results: int = 5
    recall_max_chars: int = 4000
    sensitivity: str = "internal"
    scope: str = "org"
    bounds: TunerBoundsConfig = field(default_factory=TunerBoundsConfig)


@dataclass
class EllieConfig:
    models: ModelConfig = field(default_factory=ModelConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    injection: InjectionConfig = field(default_factory=InjectionConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    taxonomy: TaxonomyConfig = field(default_factory=TaxonomyConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    evaluator: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    tuner: TunerConfig = field(default_factory=TunerConfig)


# Global config instance
_config: Optional[EllieConfig] = None
_config_lock = threading.RLock()
_warned_unknown_config_keys: set = set()

_KNOWN_TOP_LEVEL_CONFIG_KEYS = set(EllieConfig.__dataclass_fields__.keys())


def _section_keys(cls) -> set:
    return set(cls.__dataclass_fields__.keys())


def _warn_unknown_keys(section: str, data: Any, known_keys: set) -> None:
    if not isinstance(data, dict):
        return
    for key in data.keys():
        token = f"{section}.{key}" if section else str(key)
        if key in known_keys or token in _warned_unknown_config_keys:
            continue
        _warned_unknown_config_keys.add(token)
        if not os.environ.get("ELLIE_QUIET"):
            print(f"[config] Unknown config key ignored: {token}", file=sys.stderr)


def _camel_to_snake(camel_str: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(camel_str):
        if char.isupper() and i > 0:
            result.append('_')
        result.append(char.lower())
    return ''.join(result)


def _load_nested(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert camelCase keys to snake_case recursively."""
    result = {}
    for key, value in data.items():
        snake_key = _camel_to_snake(key)
        if isinstance(value, dict):
            result[snake_key] = _load_nested(value)
        else:
            result[snake_key] = value
    return result


def _section(config_data: Dict[str, Any], name: str, cls) -> Dict[str, Any]:
    data = config_data.get(name, {})
    if not isinstance(data, dict):
        logger.warning("Invalid type for %s (expected object, got %s); using defaults",
                       name, type(data).__name__)
        return {}
    _warn_unknown_keys(name, data, _section_keys(cls))
    return data


def _str(raw: Any, default: str) -> str:
    value = str(raw if raw is not None else default).strip()
    return value or default


def load_config() -> EllieConfig:
    """Load configuration from file or use defaults."""
    global _config

    with _config_lock:
        if _config is not None:
            return _config
        _config = _load_config_inner()
        return _config


def _load_config_inner() -> EllieConfig:
    raw_config: Dict[str, Any] = {}

    for config_path in _config_paths():
        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    raw_config = json.load(f)
                if not os.environ.get("ELLIE_QUIET"):
                    print(f"[config] Loaded from {config_path}", file=sys.stderr)
                break
            except json.JSONDecodeError as e:
                print(f"[config] Failed to parse {config_path}: {e}", file=sys.stderr)
            except OSError as e:
                print(f"[config] Failed to read {config_path}: {e}", file=sys.stderr)

    if not isinstance(raw_config, dict):
        print("[config] Top-level config must be an object; using defaults", file=sys.stderr)
        raw_config = {}
    if not raw_config and not os.environ.get("ELLIE_QUIET"):
        print("[config] Using defaults (no config file found)", file=sys.stderr)

    config_data = _load_nested(raw_config)
    _warn_unknown_keys("", config_data, _KNOWN_TOP_LEVEL_CONFIG_KEYS)

    models_data = _section(config_data, "models", ModelConfig)
    models = ModelConfig(
        llm_provider=_str(models_data.get('llm_provider'), ModelConfig.llm_provider).lower(),
        fast_reasoning=_str(models_data.get('fast_reasoning'), ModelConfig.fast_reasoning),
        deep_reasoning=_str(models_data.get('deep_reasoning'), ModelConfig.deep_reasoning),
        api_key_env=_str(models_data.get('api_key_env'), ModelConfig.api_key_env),
        base_url=str(models_data.get('base_url', '') or ''),
        gateway_tier=_str(models_data.get('gateway_tier'), ModelConfig.gateway_tier),
        expected_model_token=str(models_data.get('expected_model_token', ModelConfig.expected_model_token) or ''),
        gateway_timeout_seconds=_coerce_positive_float(models_data.get('gateway_timeout_seconds'), 90.0),
        gateway_max_output=_coerce_positive_int(models_data.get('gateway_max_output'), 4000),
        gateway_max_retries=_coerce_nonnegative_int(models_data.get('gateway_max_retries'), 0),
    )

    emb_data = _section(config_data, "embeddings", EmbeddingsConfig)
    embeddings = EmbeddingsConfig(
        provider=_str(emb_data.get('provider'), EmbeddingsConfig.provider).lower(),
        url=_str(emb_data.get('url'), EmbeddingsConfig.url),
        base_url=str(emb_data.get('base_url', '') or ''),
        model=_str(emb_data.get('model'), EmbeddingsConfig.model),
        dim=_coerce_positive_int(emb_data.get('dim'), 768),
        api_key_env=_str(emb_data.get('api_key_env'), EmbeddingsConfig.api_key_env),
        timeout_seconds=_coerce_positive_float(emb_data.get('timeout_seconds'), 30.0),
    )

    db_data = _section(config_data, "database", DatabaseConfig)
    database = DatabaseConfig(path=_str(db_data.get('path'), DatabaseConfig.path))

    log_data = _section(config_data, "logging", LoggingConfig)
    logging_cfg = LoggingConfig(level=_str(log_data.get('level'), 'info').lower())

    ret_data = _section(config_data, "retrieval", RetrievalConfig)
    retrieval = RetrievalConfig(
        default_limit=_coerce_positive_int(ret_data.get('default_limit'), 5),
        jsonl_root=str(ret_data.get('jsonl_root', '') or ''),
        jsonl_max_files=_coerce_positive_int(ret_data.get('jsonl_max_files'), 200),
        fail_hard=bool(ret_data.get('fail_hard', True)),
    )

    inj_data = _section(config_data, "injection", InjectionConfig)
    injection = InjectionConfig(
        poll_interval_seconds=_coerce_positive_float(inj_data.get('poll_interval_seconds'), 3.0),
        batch_size=_coerce_positive_int(inj_data.get('batch_size'), 50),
        max_memories=_coerce_positive_int(inj_data.get('max_memories'), 5),
        cooldown_messages=_coerce_positive_int(inj_data.get('cooldown_messages'), 4),
        threshold=_coerce_unit_float(inj_data.get('threshold'), 0.62),
        max_items=min(10, _coerce_positive_int(inj_data.get('max_items'), 5)),
    )

    dedup_data = _section(config_data, "dedup", DedupConfig)
    dedup = DedupConfig(
        similarity_threshold=_coerce_unit_float(dedup_data.get('similarity_threshold'), 0.88),
        pair_limit=_coerce_positive_int(dedup_data.get('pair_limit'), 2000),
        max_candidate_memories=_coerce_positive_int(dedup_data.get('max_candidate_memories'), 2000),
        poll_interval_seconds=_coerce_positive_float(dedup_data.get('poll_interval_seconds'), 300.0),
    )

    tax_data = _section(config_data, "taxonomy", TaxonomyConfig)
    taxonomy = TaxonomyConfig(
        batch_size=_coerce_positive_int(tax_data.get('batch_size'), 100),
        max_assignments=min(3, _coerce_positive_int(tax_data.get('max_assignments'), 3)),
        max_retries=_coerce_nonnegative_int(tax_data.get('max_retries'), 1),
        poll_interval_seconds=_coerce_positive_float(tax_data.get('poll_interval_seconds'), 300.0),
    )

    syn_data = _section(config_data, "synthesis", SynthesisConfig)
    synthesis = SynthesisConfig(
        min_mentions=_coerce_positive_int(syn_data.get('min_mentions'), 5),
        candidate_batch=_coerce_positive_int(syn_data.get('candidate_batch'), 50),
        source_limit=_coerce_positive_int(syn_data.get('source_limit'), 250),
        poll_interval_seconds=_coerce_positive_float(syn_data.get('poll_interval_seconds'), 600.0),
    )

    ing_data = _section(config_data, "ingestion", IngestionConfig)
    mode = _str(ing_data.get('mode'), 'normal').lower()
    if mode not in ("normal", "backfill"):
        logger.warning("Invalid ingestion.mode %r; using normal", mode)
        mode = "normal"
    ingestion = IngestionConfig(
        mode=mode,
        use_llm=bool(ing_data.get('use_llm', False)),
        interval_seconds=_coerce_positive_float(ing_data.get('interval_seconds'), 300.0),
        bridge_retry_seconds=_coerce_positive_float(ing_data.get('bridge_retry_seconds'), 10.0),
        batch_size=_coerce_positive_int(ing_data.get('batch_size'), 100),
        max_per_room=_coerce_positive_int(ing_data.get('max_per_room'), 200),
        backfill_max_per_room=_coerce_positive_int(ing_data.get('backfill_max_per_room'), 250),
        backfill_window_size=_coerce_nonnegative_int(ing_data.get('backfill_window_size'), 0),
        backfill_window_stride=_coerce_nonnegative_int(ing_data.get('backfill_window_stride'), 0),
        window_gap_minutes=_coerce_positive_float(ing_data.get('window_gap_minutes'), 15.0),
        max_prompt_chars=_coerce_nonnegative_int(ing_data.get('max_prompt_chars'), 0),
        max_message_chars=_coerce_nonnegative_int(ing_data.get('max_message_chars'), 0),
    )

    eval_data = _section(config_data, "evaluator", EvaluatorConfig)
    evaluator = EvaluatorConfig(
        k=_coerce_positive_int(eval_data.get('k'), 5),
        min_precision_at_k=_coerce_unit_float(eval_data.get('min_precision_at_k'), 0.80),
        max_false_injection_rate=_coerce_unit_float(eval_data.get('max_false_injection_rate'), 0.02),
        min_recovery_success_rate=_coerce_unit_float(eval_data.get('min_recovery_success_rate'), 0.95),
        max_p95_latency_ms=_coerce_positive_float(eval_data.get('max_p95_latency_ms'), 500.0),
        fixture_path=str(eval_data.get('fixture_path', '') or ''),
    )

    tuner_data = _section(config_data, "tuner", TunerConfig)
    bounds_data = tuner_data.get('bounds', {})
    if not isinstance(bounds_data, dict):
        bounds_data = {}
    _warn_unknown_keys("tuner.bounds", bounds_data, _section_keys(TunerBoundsConfig))
    defaults = TunerBoundsConfig()
    bounds = TunerBoundsConfig(
        min_relevance=_coerce_positive_float(bounds_data.get('min_relevance'), defaults.min_relevance),
        max_relevance=_coerce_positive_float(bounds_data.get('max_relevance'), defaults.max_relevance),
        relevance_step=_coerce_positive_float(bounds_data.get('relevance_step'), defaults.relevance_step),
        min_results=_coerce_positive_int(bounds_data.get('min_results'), defaults.min_results),
        max_results=_coerce_positive_int(bounds_data.get('max_results'), defaults.max_results),
        results_step=_coerce_positive_int(bounds_data.get('results_step'), defaults.results_step),
        min_chars=_coerce_positive_int(bounds_data.get('min_chars'), defaults.min_chars),
        max_chars=_coerce_positive_int(bounds_data.get('max_chars'), defaults.max_chars),
        chars_step=_coerce_positive_int(bounds_data.get('chars_step'), defaults.chars_step),
    )
    tuner = TunerConfig(
        interval_hours=_coerce_positive_float(tuner_data.get('interval_hours'), 24.0),
        audit_path=_str(tuner_data.get('audit_path'), TunerConfig.audit_path),
        state_path=_str(tuner_data.get('state_path'), TunerConfig.state_path),
        recall_min_relevance=_coerce_unit_float(tuner_data.get('recall_min_relevance'), 0.70),
        recall_max_results=_coerce_positive_int(tuner_data.get('recall_max_results'), 5),
        recall_max_chars=_coerce_positive_int(tuner_data.get('recall_max_chars'), 4000),
        sensitivity=_str(tuner_data.get('sensitivity'), 'internal').lower(),
        scope=_str(tuner_data.get('scope'), 'org').lower(),
        bounds=bounds,
    )

    return EllieConfig(
        models=models,
        embeddings=embeddings,
        database=database,
        logging=logging_cfg,
        retrieval=retrieval,
        injection=injection,
        dedup=dedup,
        taxonomy=taxonomy,
        synthesis=synthesis,
        ingestion=ingestion,
        evaluator=evaluator,
        tuner=tuner,
    )


def get_config() -> EllieConfig:
    """Get the loaded config (loads on first call)."""
    return load_config()


def reload_config() -> EllieConfig:
    """Force reload configuration from file."""
    global _config
    with _config_lock:
        _config = None
        _warned_unknown_config_keys.clear()
        return load_config()
