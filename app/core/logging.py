import logging
import sys


class ContextFormatter(logging.Formatter):
    """Custom formatter that handles optional execution_id and stage fields."""
    def format(self, record):
        # Add default values for execution_id and stage if not present
        if not hasattr(record, 'execution_id'):
            record.execution_id = '-'
        if not hasattr(record, 'stage'):
            record.stage = '-'
        return super().format(record)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(
        "%(asctime)s %(levelname)s %(name)s [execution_id=%(execution_id)s stage=%(stage)s] - %(message)s"
    ))
    logging.basicConfig(
        level=level,
        handlers=[handler],
    )
