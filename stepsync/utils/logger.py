import logging
import sys

def setup_logger(name: str = "stepsync", verbose: bool = False) -> logging.Logger:
    """
    Sets up a logger with the specified name and verbosity.
    Child loggers (stepsync.parser, stepsync.client, ...) propagate to it.
    """
    logger = logging.getLogger(name)

    # Avoid adding multiple handlers if setup is called multiple times
    if logger.handlers:
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)
        return logger

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    # stderr keeps stdout free for JSON output of the CLI
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
