import signal
from logging import getLogger

logger = getLogger(__name__)


class GracefulKiller:
    """Turns SIGINT / SIGTERM into a graceful drain of the run."""

    def __init__(self, on_kill=None):
        self.on_kill = on_kill
        signal.signal(signal.SIGINT, self.exit_gracefully)
        signal.signal(signal.SIGTERM, self.exit_gracefully)

    def exit_gracefully(self, signum, frame):
        logger.info(f'received signal {signal.Signals(signum).name}, stopping')
        if self.on_kill is not None:
            self.on_kill()


def format_floats(data):
    if isinstance(data, dict):
        return {k: format_floats(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [format_floats(v) for v in data]
    elif isinstance(data, float):
        return round(data, 3)
    return data
