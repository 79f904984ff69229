import logging
import sys
from pathlib import Path


def setup_logging(level: str = 'INFO', log_file: str | None = None, verbose: bool = False) -> None:
    """Configure root logging once for the server or CLI process."""
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=resolved,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )
    # requests/urllib3 are chatty at DEBUG
    logging.getLogger('urllib3').setLevel(max(resolved, logging.INFO))
