"""Logging helpers — keep resolved secrets out of every log handler.

Provides:
- MaskingFilter: a logging.Filter that rewrites each record's message and
  arguments through the run's SecretMasker.
- configure_logging: the CLI's logging setup (stdlib ``basicConfig`` plus the
  masking filter on every root handler).

Design Notes:
- The filter is attached to handlers, not loggers, so records propagated
  from any ``conduit.*`` logger are masked before they are formatted.
- Formatting happens once inside the filter; the record is then frozen to the
  masked string (``args`` cleared) so later formatting cannot reintroduce
  the clear value. Tracebacks are rendered into ``exc_text`` and masked the
  same way, and ``exc_info`` is dropped.
"""

from __future__ import annotations

import logging

from conduit.engine.secrets import SecretMasker

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_TRACEBACK_FORMATTER = logging.Formatter()


class MaskingFilter(logging.Filter):
    """Masks secret values in log records.

    Attach this to handlers after ``logging.basicConfig()``::

        handler.addFilter(MaskingFilter(masker))
    """

    def __init__(self, masker: SecretMasker) -> None:
        super().__init__()
        self._masker = masker

    def filter(self, record: logging.LogRecord) -> bool:
        if not len(self._masker):
            return True
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self._masker.mask(message)
        record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = _TRACEBACK_FORMATTER.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self._masker.mask(record.exc_text)
        # Formatters reuse exc_text once exc_info is cleared
        record.exc_info = None
        if record.stack_info:
            record.stack_info = self._masker.mask(record.stack_info)
        return True


def configure_logging(level: str, masker: SecretMasker) -> None:
    """Configure root logging for the CLI and install the masking filter."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    install_masking(masker)


def install_masking(masker: SecretMasker, logger: logging.Logger | None = None) -> MaskingFilter:
    """Add a MaskingFilter to every handler of ``logger`` (root by default)."""
    target = logger or logging.getLogger()
    mask_filter = MaskingFilter(masker)
    for handler in target.handlers:
        handler.addFilter(mask_filter)
    return mask_filter
