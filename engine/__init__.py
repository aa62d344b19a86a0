"""
Decision Core - Engine Package

Ambient infrastructure shared by the coordinator, the protocol layer
and the API:

  - engine.logging: JSON structured logging, StructuredLogger
  - engine.retry:   retry with backoff, circuit breakers
  - engine.config:  layered YAML config with CC_ env overrides
  - engine.secrets: env var secrets with TTL cache
  - engine.db:      SQLite / PostgreSQL backend abstraction
  - engine.llm:     LangChain chat-model factory (imported lazily by the LLM oracle)
"""

from engine.config import load_config, get_config_value
from engine.db import DatabaseBackend, create_backend
from engine.logging import StructuredLogger, configure_logging, get_logger
from engine.retry import (
    CircuitBreaker, CircuitBreakerOpen, RetriesExhausted, RetryPolicy,
    call_with_retry, policy_from_config,
)
from engine.secrets import get_secret
