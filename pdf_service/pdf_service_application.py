import argparse
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path

import uvicorn

from pdf_service import pdf_controller

DEFAULT_PORT = 3000


def setup_logging() -> Path:
    """
    Configure logging for the PDF service with both file and console output.

    The function:
    - Sets log level from LOG_LEVEL environment variable (defaults to INFO)
    - Creates timestamped log files in the LOG_DIR directory (defaults to /opt/pdf-service/logs)
    - Configures both file and console logging handlers
    - Uses format: timestamp - logger name - log level - message

    The log files are not rotated and a new file is created on each service start.

    Returns:
        Path: The path to the created log file
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "/opt/pdf-service/logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    current_time = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_file = log_dir / f"pdf-service_{current_time}.log"

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_file, encoding="utf-8", delay=False)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    configured_level = getattr(logging, log_level, logging.INFO)  # Default to INFO if invalid
    root_logger.setLevel(configured_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Third-party loggers follow LOG_LEVEL as well
    for logger_name in ["playwright", "uvicorn", "uvicorn.error"]:
        logging.getLogger(logger_name).setLevel(configured_level)

    root_logger.info(f"Logging initialized with level: {log_level}")
    root_logger.info(f"Log file: {log_file}")

    for handler in root_logger.handlers:
        handler.flush()

    return log_file


def start_server_single_worker(port: int) -> None:
    uvicorn.run(app=pdf_controller.app, host="", port=port)


def start_server_multi_worker(port: int, workers: int) -> None:
    """
    Run the service under gunicorn with uvicorn workers.

    Every worker process owns its own BrowserManager and therefore its own browser.
    """
    os.environ["PORT"] = str(port)
    os.environ["WORKERS"] = str(workers)
    result = subprocess.run(["gunicorn", "pdf_service.pdf_controller:app", "--config", "gunicorn.conf.py"], check=False)  # noqa: S603, S607
    sys.exit(result.returncode)


def main() -> None:
    """
    Main entry point for the PDF service.

    Parses command line arguments, initializes logging, and starts the server.
    PORT and WORKERS environment variables take precedence over the command line.
    """
    parser = argparse.ArgumentParser(description="HTML to PDF service")
    parser.add_argument("--port", default=DEFAULT_PORT, type=int, required=False, help="Service port")
    parser.add_argument("--workers", default=1, type=int, required=False, help="Number of worker processes")
    args = parser.parse_args()

    port = int(os.environ.get("PORT", args.port))
    workers = int(os.environ.get("WORKERS", args.workers))

    setup_logging()
    logging.info("PDF service listening port: " + str(port))

    if workers > 1:
        logging.info("Starting %d workers via gunicorn", workers)
        start_server_multi_worker(port, workers)
    else:
        start_server_single_worker(port)


if __name__ == "__main__":
    main()
