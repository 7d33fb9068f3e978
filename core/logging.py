import logging
import sys

_CLIENT_LOGGERS = ("aiokafka", "kafka")


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level.upper())
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    # broker client chatter only shows up when debugging
    client_level = logging.DEBUG if level.upper() == "DEBUG" else logging.WARNING
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(client_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
