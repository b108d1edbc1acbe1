import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Union

import numpy as np

from .config import Configuration, Mapping, load_config
from .errors import FanIOError
from .hardware import AttributeStore, SysfsStore
from .lifecycle import LifecycleManager, PidFile, PID_FILE
from .paths import HWMON_DIR, I2C_DIR, RootKind, fixup_legacy_paths, resolve_root, verify_attributes

logger = logging.getLogger(__name__)

STALL_SETTLE_SECONDS = 1
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGQUIT, signal.SIGHUP, signal.SIGTERM)


def calculate_duty_cycle(mapping: Mapping, temps):
    """Duty cycle for one or many temperature readings in millidegrees.

    Below MINTEMP the output is MINPWM, above MAXTEMP it is MAXPWM, and in
    between it ramps linearly from MINSTOP (not MINPWM) up to MAXPWM.
    """
    # object dtype keeps exact Python int arithmetic for any reading
    t = np.asarray(temps, dtype=object)
    min_t = mapping.min_temp * 1000
    max_t = mapping.max_temp * 1000
    # numerator is positive wherever the ramp is selected, so // truncates
    ramp = (t - min_t) * (mapping.max_pwm - mapping.min_stop) // (max_t - min_t) + mapping.min_stop
    return np.where(t <= min_t, mapping.min_pwm, np.where(t >= max_t, mapping.max_pwm, ramp))


def in_ramp(mapping: Mapping, temp: int) -> bool:
    return mapping.min_temp * 1000 < temp < mapping.max_temp * 1000


class ControlLoop:
    def __init__(self, config: Configuration, store: AttributeStore,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.store = store
        self.sleep = sleep

    def tick(self, mapping: Mapping) -> int:
        temp = self.store.read(mapping.temp)
        pwm = self.store.read(mapping.pwm)
        # without a fan input assume the fan is spinning
        fan = self.store.read(mapping.fan) if mapping.fan is not None else 1

        target = int(calculate_duty_cycle(mapping, temp))
        if in_ramp(mapping, temp) and (pwm == 0 or fan == 0):
            logger.info(f"Fan on {mapping.pwm} stopped, starting it at {mapping.min_start}")
            self.store.write(mapping.pwm, mapping.min_start)
            self.sleep(STALL_SETTLE_SECONDS)

        self.store.write(mapping.pwm, target)
        logger.debug(f"{mapping.pwm}: Temp {temp / 1000:.1f}°C -> PWM {target}")
        return target

    def run_once(self):
        for mapping in self.config.mappings:
            self.tick(mapping)


class FanController:
    """Startup checks, the control loop and the fail-safe exit, in that order."""

    def __init__(self, config_path: Path, pid_path: Union[str, Path] = PID_FILE,
                 hwmon_dir: Path = HWMON_DIR, i2c_dir: Path = I2C_DIR,
                 sleep: Callable[[float], None] = time.sleep):
        self.config_path = config_path
        self.pid_file = PidFile(pid_path)
        self.hwmon_dir = hwmon_dir
        self.i2c_dir = i2c_dir
        self.sleep = sleep
        self.stop_requested = False

    def _request_stop(self, signum, _frame):
        # runs in signal context: only flip the flag
        self.stop_requested = True

    def prepare(self):
        """Load and check everything before any hardware is touched."""
        config, hints = load_config(self.config_path)
        kind, root = resolve_root(config.mappings[0].pwm, self.hwmon_dir, self.i2c_dir)
        store = SysfsStore(root)
        if kind is RootKind.HWMON_CLASS:
            config = fixup_legacy_paths(config, hints, store)
        verify_attributes(config, store)
        return config, store

    def run(self):
        config, store = self.prepare()
        self.pid_file.acquire(os.getpid())

        for signum in TERMINATION_SIGNALS:
            signal.signal(signum, self._request_stop)

        lifecycle = LifecycleManager(config, store, self.pid_file)
        lifecycle.enable_all()
        loop = ControlLoop(config, store, sleep=self.sleep)

        logger.info("Starting automatic fan control...")
        while True:
            try:
                loop.run_once()
            except FanIOError as e:
                logger.error(f"Error updating fan speeds: {e}")
                lifecycle.restore(1)
            except Exception as e:
                logger.error(f"Unhandled exception: {e}", exc_info=True)
                lifecycle.restore(1)
            self.sleep(config.interval)
            if self.stop_requested:
                logger.info("Termination requested")
                lifecycle.restore(0)
