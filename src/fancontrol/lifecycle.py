import enum
import logging
import os
import sys
from pathlib import Path
from typing import Union

from .config import Configuration, Mapping
from .errors import AlreadyRunningError, FanIOError
from .hardware import AttributeStore, enable_path_for

logger = logging.getLogger(__name__)

PID_FILE = Path("/var/run/fancontrol.pid")

FULL_SPEED = 255
# read-back pwm value accepted as "full speed" after a fallback disable
FULL_SPEED_THRESHOLD = 190
MANUAL_MODE = 1
AUTOMATIC_MODE = 0


class PidFile:
    """Advisory lock marker; an existence check only, not a kernel lock."""

    def __init__(self, path: Union[str, Path] = PID_FILE):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def acquire(self, pid: int = None):
        if self.exists():
            raise AlreadyRunningError(f"File {self.path} exists, is fancontrol already running?")
        self.create(os.getpid() if pid is None else pid)

    def create(self, pid: int):
        try:
            self.path.write_text(str(pid))
        except OSError as e:
            raise FanIOError(f"Can't create {self.path}: {e}", str(self.path)) from e

    def remove(self):
        if self.path.exists():
            self.path.unlink()


class LifecycleState(enum.Enum):
    STOPPED = "stopped"
    ENABLING = "enabling"
    RUNNING = "running"
    RESTORING = "restoring"


_TRANSITIONS = {
    LifecycleState.STOPPED: {LifecycleState.ENABLING, LifecycleState.RESTORING},
    LifecycleState.ENABLING: {LifecycleState.RUNNING, LifecycleState.RESTORING},
    LifecycleState.RUNNING: {LifecycleState.RESTORING},
    LifecycleState.RESTORING: set(),
}


class LifecycleManager:
    """Puts the configured pwm outputs under manual control and gives them back.

    ``restore`` is the only way out once fans were touched: every channel is
    returned to full speed (or automatic mode), the lock marker is removed
    and the process exits.
    """

    def __init__(self, config: Configuration, store: AttributeStore, pid_file: PidFile):
        self.config = config
        self.store = store
        self.pid_file = pid_file
        self.state = LifecycleState.STOPPED

    def _transition(self, new_state: LifecycleState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid lifecycle transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Lifecycle {self.state.value} -> {new_state.value}")
        self.state = new_state

    def enable(self, mapping: Mapping):
        enable = enable_path_for(mapping.pwm)
        if self.store.exists(enable):
            self.store.write(enable, MANUAL_MODE)
        self.store.write(mapping.pwm, FULL_SPEED)

    def enable_all(self):
        self._transition(LifecycleState.ENABLING)
        logger.info("Enabling PWM on fans...")
        for mapping in self.config.mappings:
            try:
                self.enable(mapping)
            except FanIOError as e:
                logger.error(f"Error enabling PWM on {mapping.pwm}: {e}")
                self.restore(1)
            except Exception:
                logger.error(f"Unexpected error enabling PWM on {mapping.pwm}", exc_info=True)
                self.restore(1)
        self._transition(LifecycleState.RUNNING)

    def _try_write(self, path: str, value: int):
        try:
            self.store.write(path, value)
        except FanIOError as e:
            logger.warning(str(e))

    def _try_read(self, path: str):
        try:
            return self.store.read(path)
        except FanIOError as e:
            logger.warning(str(e))
            return None

    def disable(self, mapping: Mapping) -> bool:
        """Best effort return of one channel to full speed; never raises."""
        enable = enable_path_for(mapping.pwm)

        if not self.store.exists(enable):
            self._try_write(mapping.pwm, FULL_SPEED)
            return True

        self._try_write(enable, AUTOMATIC_MODE)
        if self._try_read(enable) == AUTOMATIC_MODE:
            return True

        # automatic mode refused, fall back to manual full speed
        self._try_write(enable, MANUAL_MODE)
        self._try_write(mapping.pwm, FULL_SPEED)
        mode = self._try_read(enable)
        pwm = self._try_read(mapping.pwm)
        if mode == MANUAL_MODE and pwm is not None and pwm >= FULL_SPEED_THRESHOLD:
            return True

        logger.error(f"{enable} stuck to {mode}")
        return False

    def restore(self, exit_code: int):
        self._transition(LifecycleState.RESTORING)
        logger.info("Aborting, restoring fans...")
        for mapping in self.config.mappings:
            try:
                self.disable(mapping)
            except Exception:
                logger.error(f"Unexpected error restoring {mapping.pwm}", exc_info=True)
        logger.info("Verify fans have returned to full speed")
        try:
            self.pid_file.remove()
        except OSError as e:
            logger.error(f"Could not remove {self.pid_file.path}: {e}")
        sys.exit(exit_code)
