import logging


def debug_event(logger: logging.Logger, event: str, **kwargs):
    """Emit a structured debug log if DEBUG is enabled."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    payload = " ".join(f"{k}={kwargs[k]!r}" for k in sorted(kwargs))
    logger.debug("%s %s", event, payload.strip())


def token_preview(tok: str | None):
    if not tok:
        return None
    return f"{tok[:6]}...len={len(tok)}"
