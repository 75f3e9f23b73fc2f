import logging, sys

LEVEL = logging.INFO
NOISY = ("httpx", "httpcore", "urllib3", "web3", "apscheduler")

def configure_logging(level: str | int = LEVEL) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    for name in NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
