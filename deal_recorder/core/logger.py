import logging

_configured = False


def setup_logging(level: str = "INFO"):
    """Attach a single console handler to the root logger (idempotent)."""
    global _configured
    console_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(console_level, int):
        console_level = logging.INFO

    if _configured:
        logging.getLogger().setLevel(console_level)
        return

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    logging.basicConfig(level=console_level, handlers=[console_handler])
    _configured = True
