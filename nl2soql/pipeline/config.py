from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[1] / "config.env"

if _ENV_PATH.exists():
    load_dotenv(_ENV_PATH)
else:
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DEFAULT_OPENAI_MODEL_PLAN = os.getenv("OPENAI_MODEL_PLAN", "gpt-4o-mini")
DEFAULT_OPENAI_MODEL_CODE = os.getenv("OPENAI_MODEL_CODE", "gpt-4o-mini")
DEFAULT_OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")

DEFAULT_LOG_LEVEL = os.getenv("NL2SOQL_LOG_LEVEL", "WARNING")
DEFAULT_LOG_DIR: Optional[str] = os.getenv("NL2SOQL_LOG_DIR")

# Governor limits
DEFAULT_LIMIT = _env_int("NL2SOQL_DEFAULT_LIMIT", 1000)
MAX_ROW_CEILING = _env_int("NL2SOQL_MAX_ROWS", 50000)

# Repair loop budgets
MAX_REPAIR_PASSES = _env_int("NL2SOQL_MAX_REPAIR_PASSES", 5)
MAX_REGENERATIONS = _env_int("NL2SOQL_MAX_REGENERATIONS", 2)
STALL_LIMIT = 2

# Timeouts (seconds)
DEFAULT_DEADLINE = _env_float("NL2SOQL_DEADLINE", 60.0)
COMPLETION_TIMEOUT = _env_float("NL2SOQL_COMPLETION_TIMEOUT", 30.0)
INSTANCE_SEARCH_TIMEOUT = _env_float("NL2SOQL_SEARCH_TIMEOUT", 5.0)

# Schema context
CACHE_TTL_SECONDS = _env_float("NL2SOQL_CACHE_TTL", 300.0)
CACHE_MAX_ENTRIES = _env_int("NL2SOQL_CACHE_MAX_ENTRIES", 100)
CACHE_SIMILARITY_THRESHOLD = 0.8
MAX_FIELDS_PER_OBJECT = 25
MAX_NEIGHBORS = 30
HUB_OBJECT_THRESHOLD = 50
HUB_OBJECT_MAX_NEIGHBORS = 10
MIN_PERIPHERAL_RELEVANCE = 0.15

# Scorer weights
LEXICAL_WEIGHT = 0.2
SEMANTIC_WEIGHT = 0.5
GRAPH_WEIGHT = 0.3
JUNCTION_BONUS = 0.15

# Matching and grounding
MAX_EDIT_DISTANCE = 3
MIN_TERM_LENGTH = 3
FUZZY_MATCH_THRESHOLD = 0.8
CONFIDENT_MATCH = 0.85
SOSL_MIN_TERM_LENGTH = 2
SOSL_RESULT_LIMIT = 5


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic stderr handler for the package loggers."""
    logging.basicConfig(
        level=(level or DEFAULT_LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
