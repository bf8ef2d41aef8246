import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path("logs")

FORMAT = (
    "%(asctime)s | %(levelname)-7s | %(name)s | "
    "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
)
formatter = logging.Formatter(FORMAT)


def _file_handler(path: Path, level=logging.INFO) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _attach(logger: logging.Logger, handler: logging.Handler) -> None:
    for h in logger.handlers:
        if getattr(h, "baseFilename", None) == getattr(handler, "baseFilename", None):
            return
    logger.addHandler(handler)


def setup_logging(log_dir: Path | None = None) -> None:
    """
    Wire file handlers onto the installer's named loggers.

    - extinstaller.*             -> logs/installer.log
    - extinstaller.activation.*  -> logs/activation.log (DEBUG, registrar traffic)
    - uvicorn*                   -> logs/uvicorn.log
    """
    base = log_dir or LOG_DIR
    base.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # --- Core ---
    core_handler = _file_handler(base / "installer.log")

    core_parent = logging.getLogger("extinstaller")
    _attach(core_parent, core_handler)
    core_parent.propagate = False

    # --- Registrar / activation ---
    activation_handler = _file_handler(base / "activation.log", level=logging.DEBUG)

    activation_parent = logging.getLogger("extinstaller.activation")
    _attach(activation_parent, activation_handler)
    _attach(activation_parent, core_handler)
    activation_parent.propagate = False

    # --- Uvicorn ---
    uvicorn_handler = _file_handler(base / "uvicorn.log")
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        ul = logging.getLogger(name)
        _attach(ul, uvicorn_handler)
        ul.propagate = False
