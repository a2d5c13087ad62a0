import logging
import os

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(settings, log_name: str = "einvoice.log") -> logging.Logger:
    """Attach a file handler to the ``einvoice`` package logger."""
    os.makedirs(settings.log_dir, exist_ok=True)
    log_file = os.path.join(settings.log_dir, log_name)

    logger = logging.getLogger("einvoice")
    logger.setLevel(settings.log_level)

    # Remove previous handlers if any
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return logger
