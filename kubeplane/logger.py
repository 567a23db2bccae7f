import logging

# Create a logger
logger = logging.getLogger("kubeplane")


# "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
def setup_logger(verbose: bool = False, format: str = "%(message)s") -> None:
    # Set the logging level based on the verbose flag
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter(format))
    logger.addHandler(ch)


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package logger, e.g. ``kubeplane.ttl``."""
    return logger.getChild(name)


setup_logger()
