import logging
import sys
import os


def configure_logging(level: str = "INFO", log_dir: str = "logs") -> None:
    # Preparar directorio de logs
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "chatsync.log")

    # Limpiar handlers previos para evitar duplicados en reinicios
    root = logging.getLogger()
    if root.handlers:
        root.handlers.clear()

    fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
    formatter = logging.Formatter(fmt)
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)

    root.setLevel(numeric_level)
    root.addHandler(console_handler)
    root.addHandler(file_handler)

    # httpx loguea cada request a INFO; el stream SSE lo vuelve ruidoso
    logging.getLogger("httpx").setLevel(logging.WARNING)
