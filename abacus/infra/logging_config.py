"""Custom logging -- mask credentials and shorten module paths in log output."""

from __future__ import annotations

import logging
import re
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

# Anthropic admin keys, GitHub tokens, bearer/basic headers
_SECRET_PATTERNS = (
    re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\b(?:ghp|ghs|gho|github_pat)_[A-Za-z0-9_]{8,}"),
    re.compile(r"(?i)\b(Bearer|Basic)\s+[A-Za-z0-9._\-+/=]{8,}"),
)


def mask_secrets(text: str) -> str:
    if not text:
        return text
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            text = pattern.sub(lambda m: f"{m.group(1)} ***", text)
        else:
            text = pattern.sub("***", text)
    return text


class ShortNameFormatter(logging.Formatter):

    def __init__(self, *args, project_root: Path | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._root_norm = str(project_root or _PROJECT_ROOT).replace("\\", "/")

    def _shorten_logger_name(self, name: str) -> str:
        if name.startswith("abacus."):
            return name
        if name.startswith("apscheduler"):
            return "apscheduler"
        if "." in name:
            return ".".join(name.split(".")[-2:])
        return name

    def format(self, record: logging.LogRecord) -> str:
        original_name = record.name
        record.name = self._shorten_logger_name(record.name)
        try:
            message = self._safe_format(record)
        finally:
            record.name = original_name
        return mask_secrets(message.replace(self._root_norm + "/", ""))

    def _safe_format(self, record: logging.LogRecord) -> str:
        """Format with fallback for mismatched %-style args from third-party loggers."""
        try:
            return super().format(record)
        except TypeError:
            record.msg = f"{record.msg} {record.args}"
            record.args = None
            return super().format(record)


class SecretMaskingFilter(logging.Filter):

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                mask_secrets(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


def configure_logging(level: int = logging.INFO, formatter: logging.Formatter | None = None) -> None:
    if formatter is None:
        formatter = ShortNameFormatter("%(asctime)s %(levelname)-8s [%(name)s] %(message)s")

    mask_filter = SecretMaskingFilter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(mask_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request URL at INFO
    for name in ["httpx", "httpcore"]:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
