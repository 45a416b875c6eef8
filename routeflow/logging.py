from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Correlation ID for per-execution tracing; the workflow engine binds the
# execution id here while an execution is running.
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Key fragments naming Bedrock/AWS credentials in log fields and header maps
_SECRET_KEYS = (
    "password",
    "secret",
    "api_key",
    "authorization",
    "access_key",
    "session_token",
    "security-token",
    "x-amz-security-token",
)

# AWS access key ids can turn up inside endpoint errors and request ids
_AWS_ACCESS_KEY_RE = re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    # Keep first/last 2 chars for debugging
    return value[:2] + "***" + value[-2:]


def _is_secret_key(key: Any) -> bool:
    lower_key = str(key).lower()
    return any(secret in lower_key for secret in _SECRET_KEYS)


def _redact_value(value: Any, depth: int = 0) -> Any:
    if depth > 5:
        return value
    if isinstance(value, dict):
        return {
            k: _mask(v) if _is_secret_key(k) and isinstance(v, str) else _redact_value(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, str):
        return _AWS_ACCESS_KEY_RE.sub("AK***", value)
    return value


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact provider credentials from log entries.

    Top-level credential fields are masked, header maps (``headers``,
    ``request_headers``) are masked per key, and AWS access key ids are
    scrubbed from any string value.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if _is_secret_key(key) and isinstance(value, str):
            event_dict[key] = _mask(value)
        else:
            event_dict[key] = _redact_value(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def summarize_routing_trace(trace: List[Dict[str, Any]]) -> str:
    """Condense router stages into ``task:4>health:3>quality:1``."""
    parts = []
    for entry in trace:
        survivors = entry.get("survivors")
        if survivors is None:
            continue
        parts.append(f"{entry.get('stage')}:{len(survivors)}")
    return ">".join(parts)


def log_routing_trace(trace: List[Dict[str, Any]], logger: Optional[Any] = None) -> None:
    """Log the router's filter trace: a stage summary plus the full survivor lists."""
    log = logger or get_logger("routing")
    log.info("routing_trace", stages=summarize_routing_trace(trace), trace=trace)


def summarize_workflow_trace(trace: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Count node trace entries per status and list failed nodes with their codes."""
    counts: Dict[str, int] = {}
    failed: List[str] = []
    for entry in trace:
        status = str(entry.get("status", "unknown"))
        counts[status] = counts.get(status, 0) + 1
        if status == "failed":
            failed.append(f"{entry.get('node')}:{entry.get('error_code')}")
    return {"counts": counts, "failed": failed}


def log_workflow_trace(trace: List[Dict[str, Any]], logger: Optional[Any] = None) -> None:
    """Log the engine's node trace with a per-status summary."""
    log = logger or get_logger("workflow")
    log.info("workflow_trace", summary=summarize_workflow_trace(trace), trace=trace)


# Patterns that indicate sensitive information in provider and engine errors
_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)bearer\s+[a-z0-9._\-]+',
    r'(?i)traceback\s*\(most recent call last\)',
    # Presigned Bedrock/S3 query parameters
    r'(?i)x-amz-(?:signature|credential|security-token)=[^\s&]+',
    r'\b(?:AKIA|ASIA)[0-9A-Z]{16}\b',
    # Account-scoped ARNs (inference profiles, provisioned throughput)
    r'arn:aws[a-z-]*:[a-z0-9-]+:[a-z0-9-]*:\d{12}:[^\s]+',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize an error message before it is surfaced through status queries.

    Removes credentials, bearer tokens, filesystem paths and stack traces, and
    caps the length at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
