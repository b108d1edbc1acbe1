import sys
import logging
from pathlib import Path

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

logger = logging.getLogger(__name__)


def get_config_path(argv=None) -> Path:
    """Config file named on the command line if it exists, else the system one."""
    from .config import CONFIG_FILE

    argv = sys.argv if argv is None else argv
    if len(argv) > 1 and Path(argv[1]).exists():
        return Path(argv[1])
    return CONFIG_FILE


def main_cli():
    """Entry point for the fancontrol daemon."""
    from .core import FanController
    from .errors import FanControlError

    controller = FanController(get_config_path())
    try:
        controller.run()
    except FanControlError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main_cli()
