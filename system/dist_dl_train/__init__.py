import logging

__version__ = "0.1.0"

# Set a reasonable default logging configuration if the user hasn't configured it.
_root = logging.getLogger()
if not _root.handlers:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
