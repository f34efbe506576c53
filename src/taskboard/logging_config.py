import logging

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s: %(message)s"


def setup_logging(level="INFO") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level.upper() if isinstance(level, str) else level)
