"""Tests for the core.py module."""
import os
import shutil
import signal
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, call, patch

import numpy as np

from fancontrol.config import Configuration, Mapping
from fancontrol.core import ControlLoop, FanController, calculate_duty_cycle
from fancontrol.errors import (
    AlreadyRunningError, FanIOError, MissingSysfsNode, NodeNotFoundError,
)
from memory_store import MemoryStore


def make_mapping(**overrides):
    fields = dict(pwm="hwmon0/pwm1", temp="hwmon0/temp1_input", fan=None,
                  min_temp=40, max_temp=70, min_start=150, min_stop=100,
                  min_pwm=0, max_pwm=200)
    fields.update(overrides)
    return Mapping(**fields)


class TestCalculateDutyCycle(unittest.TestCase):
    def setUp(self):
        self.mapping = make_mapping()

    def test_midpoint(self):
        """55C between 40C and 70C ramps halfway from MINSTOP to MAXPWM."""
        self.assertEqual(int(calculate_duty_cycle(self.mapping, 55000)), 150)

    def test_truncates(self):
        # 41000: 1000 * 100 / 30000 = 3.33
        self.assertEqual(int(calculate_duty_cycle(self.mapping, 41000)), 103)

    def test_ramp_starts_at_min_stop(self):
        mapping = make_mapping(min_pwm=30)
        self.assertEqual(int(calculate_duty_cycle(mapping, 40001)), 100)

    def test_below_min_temp(self):
        temps = np.arange(-20000, 40001, 500)
        self.assertTrue(np.all(calculate_duty_cycle(self.mapping, temps) == 0))
        mapping = make_mapping(min_pwm=60)
        self.assertTrue(np.all(calculate_duty_cycle(mapping, temps) == 60))

    def test_above_max_temp(self):
        temps = np.arange(70000, 120001, 500)
        self.assertTrue(np.all(calculate_duty_cycle(self.mapping, temps) == 200))

    def test_ramp_is_monotonic_and_bounded(self):
        curve = calculate_duty_cycle(self.mapping, np.arange(40001, 70000, 37))
        self.assertTrue(np.all(np.diff(curve) >= 0))
        self.assertTrue(np.all((curve >= 100) & (curve < 200)))

    def test_readings_beyond_int64(self):
        """Millidegree scaling of large limits does not overflow."""
        mapping = make_mapping(min_temp=10 ** 16, max_temp=10 ** 16 + 30)
        self.assertEqual(int(calculate_duty_cycle(mapping, 10 ** 19 + 15000)), 150)
        self.assertEqual(int(calculate_duty_cycle(mapping, 10 ** 19)), 0)
        self.assertEqual(int(calculate_duty_cycle(mapping, 2 ** 64)), 200)


class TestControlLoop(unittest.TestCase):
    def setUp(self):
        self.mapping = make_mapping()
        self.config = Configuration(interval=5, mappings=(self.mapping,))
        self.sleep = MagicMock()

    def loop(self, store):
        return ControlLoop(self.config, store, sleep=self.sleep)

    def test_tick_writes_target(self):
        store = MemoryStore({"hwmon0/temp1_input": 55000, "hwmon0/pwm1": 120})
        self.assertEqual(self.loop(store).tick(self.mapping), 150)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 150)])
        self.sleep.assert_not_called()

    def test_stalled_fan_restarted_with_min_start(self):
        """A stopped fan in the ramp gets MINSTART, a settle delay, then the target."""
        mapping = make_mapping(min_start=180)
        store = MemoryStore({"hwmon0/temp1_input": 55000, "hwmon0/pwm1": 0})
        self.sleep.side_effect = lambda seconds: store.writes.append("sleep")
        self.loop(store).tick(mapping)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 180), "sleep", ("hwmon0/pwm1", 150)])
        self.sleep.assert_called_once_with(1)

    def test_zero_tachometer_restarts_fan(self):
        mapping = make_mapping(fan="hwmon0/fan1_input", min_start=180)
        store = MemoryStore({"hwmon0/temp1_input": 46000, "hwmon0/pwm1": 110,
                             "hwmon0/fan1_input": 0})
        self.sleep.side_effect = lambda seconds: store.writes.append("sleep")
        self.loop(store).tick(mapping)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 180), "sleep", ("hwmon0/pwm1", 120)])
        self.sleep.assert_called_once_with(1)

    def test_huge_temperature_reading(self):
        mapping = make_mapping(min_temp=10 ** 16, max_temp=10 ** 16 + 30)
        store = MemoryStore({"hwmon0/temp1_input": 10 ** 19 + 15000, "hwmon0/pwm1": 120})
        self.assertEqual(self.loop(store).tick(mapping), 150)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 150)])

    def test_spinning_fan_not_restarted(self):
        mapping = make_mapping(fan="hwmon0/fan1_input", min_start=180)
        store = MemoryStore({"hwmon0/temp1_input": 46000, "hwmon0/pwm1": 110,
                             "hwmon0/fan1_input": 900})
        self.loop(store).tick(mapping)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 120)])

    def test_no_restart_outside_ramp(self):
        store = MemoryStore({"hwmon0/temp1_input": 30000, "hwmon0/pwm1": 0})
        self.loop(store).tick(self.mapping)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 0)])
        store = MemoryStore({"hwmon0/temp1_input": 90000, "hwmon0/pwm1": 0})
        self.loop(store).tick(self.mapping)
        self.assertEqual(store.writes, [("hwmon0/pwm1", 200)])
        self.sleep.assert_not_called()

    def test_read_failure_propagates(self):
        store = MemoryStore({"hwmon0/pwm1": 100})
        with self.assertRaises(NodeNotFoundError):
            self.loop(store).tick(self.mapping)
        self.assertEqual(store.writes, [])

    def test_missing_fan_input_propagates(self):
        mapping = make_mapping(fan="hwmon0/fan1_input")
        store = MemoryStore({"hwmon0/temp1_input": 55000, "hwmon0/pwm1": 100})
        with self.assertRaises(FanIOError):
            self.loop(store).tick(mapping)

    def test_write_failure_propagates(self):
        store = MemoryStore({"hwmon0/temp1_input": 55000, "hwmon0/pwm1": 100},
                            read_only=["hwmon0/pwm1"])
        with self.assertRaises(FanIOError):
            self.loop(store).tick(self.mapping)

    def test_run_once_keeps_earlier_writes(self):
        second = make_mapping(pwm="hwmon0/pwm2", temp="hwmon0/temp2_input")
        config = Configuration(interval=5, mappings=(self.mapping, second))
        store = MemoryStore({"hwmon0/temp1_input": 80000, "hwmon0/pwm1": 100,
                             "hwmon0/pwm2": 100})
        with self.assertRaises(NodeNotFoundError):
            ControlLoop(config, store, sleep=self.sleep).run_once()
        self.assertEqual(store.writes, [("hwmon0/pwm1", 200)])


class TestFanController(unittest.TestCase):
    def setUp(self):
        """Set up a fake hwmon device in a temporary directory."""
        self.test_dir = tempfile.mkdtemp()
        self.hwmon = Path(self.test_dir) / "hwmon0"
        self.hwmon.mkdir()
        (self.hwmon / "temp1_input").write_text("55000\n")
        (self.hwmon / "pwm1").write_text("120\n")
        (self.hwmon / "pwm1_enable").write_text("2\n")
        self.pid_path = Path(self.test_dir) / "fancontrol.pid"
        self.config_path = Path(self.test_dir) / "fancontrol"
        self.config_path.write_text(
            "INTERVAL=3\n"
            f"FCTEMPS={self.hwmon}/pwm1={self.hwmon}/temp1_input\n"
            f"MINTEMP={self.hwmon}/pwm1=40\n"
            f"MAXTEMP={self.hwmon}/pwm1=70\n"
            f"MINSTART={self.hwmon}/pwm1=150\n"
            f"MINSTOP={self.hwmon}/pwm1=100\n"
            f"MAXPWM={self.hwmon}/pwm1=200\n"
        )
        self.handlers = {sig: signal.getsignal(sig) for sig in
                         (signal.SIGINT, signal.SIGQUIT, signal.SIGHUP, signal.SIGTERM)}

    def controller(self, sleep):
        return FanController(self.config_path, pid_path=self.pid_path, sleep=sleep)

    def test_runs_until_termination_requested(self):
        """Termination restores the fans, removes the pid file and exits 0."""
        seen = []

        def sleep(seconds):
            seen.append((seconds, (self.hwmon / "pwm1").read_text()))
            self.assertTrue(self.pid_path.exists())
            controller.stop_requested = len(seen) == 2

        controller = self.controller(sleep)
        with self.assertRaises(SystemExit) as ctx:
            controller.run()
        self.assertEqual(ctx.exception.code, 0)
        self.assertEqual(seen, [(3, "150"), (3, "150")])
        self.assertEqual((self.hwmon / "pwm1_enable").read_text(), "0")
        self.assertFalse(self.pid_path.exists())

    def test_signal_handler_only_sets_flag(self):
        controller = self.controller(MagicMock())
        controller._request_stop(signal.SIGTERM, None)
        self.assertTrue(controller.stop_requested)

    def test_installs_signal_handlers(self):
        controller = self.controller(MagicMock())
        controller.stop_requested = True
        with patch("fancontrol.core.signal.signal") as mock_signal:
            with self.assertRaises(SystemExit):
                controller.run()
        mock_signal.assert_has_calls([
            call(signal.SIGINT, controller._request_stop),
            call(signal.SIGQUIT, controller._request_stop),
            call(signal.SIGHUP, controller._request_stop),
            call(signal.SIGTERM, controller._request_stop),
        ])

    def test_read_error_restores_and_exits_1(self):
        def sleep(seconds):
            (self.hwmon / "temp1_input").write_text("garbage\n")

        with self.assertRaises(SystemExit) as ctx:
            self.controller(sleep).run()
        self.assertEqual(ctx.exception.code, 1)
        self.assertEqual((self.hwmon / "pwm1_enable").read_text(), "0")
        self.assertFalse(self.pid_path.exists())

    def test_second_instance_refused(self):
        """An existing pid file aborts startup before any attribute write."""
        self.pid_path.write_text("1234")
        sleep = MagicMock()
        with self.assertRaises(AlreadyRunningError):
            self.controller(sleep).run()
        self.assertEqual((self.hwmon / "pwm1").read_text(), "120\n")
        self.assertEqual((self.hwmon / "pwm1_enable").read_text(), "2\n")
        self.assertEqual(self.pid_path.read_text(), "1234")
        sleep.assert_not_called()

    def test_missing_attribute_refused(self):
        (self.hwmon / "temp1_input").unlink()
        with self.assertRaises(MissingSysfsNode):
            self.controller(MagicMock()).run()
        self.assertFalse(self.pid_path.exists())
        self.assertEqual((self.hwmon / "pwm1").read_text(), "120\n")

    def test_pid_file_holds_pid(self):
        def sleep(seconds):
            self.assertEqual(self.pid_path.read_text(), str(os.getpid()))
            controller.stop_requested = True

        controller = self.controller(sleep)
        with self.assertRaises(SystemExit):
            controller.run()

    def tearDown(self):
        for sig, handler in self.handlers.items():
            signal.signal(sig, handler)
        shutil.rmtree(self.test_dir)


if __name__ == "__main__":
    unittest.main()
