import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once per process (app startup or serverless cold start)."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # The razorpay SDK logs through urllib3; keep it quiet unless debugging.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
