"""Parsing and validation of the fancontrol configuration file.

The file is line oriented ``KEY=value`` text as written by pwmconfig::

    INTERVAL=10
    DEVPATH=hwmon0=devices/platform/it87.656
    DEVNAME=hwmon0=it8718
    FCTEMPS=hwmon0/pwm1=hwmon0/temp1_input
    FCFANS=hwmon0/pwm1=hwmon0/fan1_input
    MINTEMP=hwmon0/pwm1=35
    MAXTEMP=hwmon0/pwm1=60
    MINSTART=hwmon0/pwm1=150
    MINSTOP=hwmon0/pwm1=100
"""
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import (
    ConfigError, InvalidRange, MalformedMapping, MissingField, UnsupportedFanGroup,
)

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("/etc/fancontrol")
MAX_MAPPINGS = 32

KNOWN_KEYS = (
    "INTERVAL", "DEVPATH", "DEVNAME", "FCTEMPS", "MINTEMP", "MAXTEMP",
    "MINSTART", "MINSTOP", "FCFANS", "MINPWM", "MAXPWM",
)
MANDATORY_LISTS = ("FCTEMPS", "MINTEMP", "MAXTEMP", "MINSTART", "MINSTOP")

_LEADING_INT = re.compile(r"\s*([-+]?\d+)")


@dataclass(frozen=True)
class Mapping:
    """One fan channel: a pwm output driven by one temperature input."""
    pwm: str
    temp: str
    fan: Optional[str]
    min_temp: int
    max_temp: int
    min_start: int
    min_stop: int
    min_pwm: int = 0
    max_pwm: int = 255

    def __post_init__(self):
        if self.fan is not None and "+" in self.fan:
            raise UnsupportedFanGroup(
                f"Config error ({self.pwm}): Multiple fans per input currently unsupported",
                self.pwm,
            )
        if self.min_temp >= self.max_temp:
            self._reject("MINTEMP must be less than MAXTEMP")
        if self.max_pwm > 255:
            self._reject("MAXPWM must be at most 255")
        if self.min_stop >= self.max_pwm:
            self._reject("MINSTOP must be less than MAXPWM")
        if self.min_stop < self.min_pwm:
            self._reject("MINSTOP must be greater than or equal to MINPWM")
        if self.min_pwm < 0:
            self._reject("MINPWM must be at least 0")

    def _reject(self, reason: str):
        raise InvalidRange(f"Config error ({self.pwm}): {reason}", self.pwm)

    @property
    def paths(self) -> Tuple[str, ...]:
        if self.fan is None:
            return (self.pwm, self.temp)
        return (self.pwm, self.temp, self.fan)


@dataclass(frozen=True)
class Configuration:
    interval: int
    mappings: Tuple[Mapping, ...]

    def __post_init__(self):
        if self.interval <= 0:
            raise MissingField(f"INTERVAL must be a positive number of seconds, got {self.interval}")
        if not self.mappings:
            raise MissingField("No fan channels configured")


@dataclass(frozen=True)
class DeviceHints:
    """DEVPATH/DEVNAME aliases, only needed while fixing up legacy paths."""
    devpath: Dict[str, str] = field(default_factory=dict)
    devname: Dict[str, str] = field(default_factory=dict)


def _read_settings(text: str) -> Dict[str, str]:
    settings = {}
    for line in text.splitlines():
        line = line.rstrip("\r\n")
        if line.startswith("#"):
            continue
        for key in KNOWN_KEYS:
            if line.startswith(key + "="):
                # later lines override earlier ones
                settings[key] = line[len(key) + 1:]
                break
    return settings


def _atoi(value: str) -> Optional[int]:
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else None


def _split_pairs(value: str) -> Dict[str, str]:
    pairs = {}
    for token in value.split():
        if "=" not in token:
            continue
        key, _, val = token.partition("=")
        pairs.setdefault(key, val)
    return pairs


def _lookup_int(lists: Dict[str, Dict[str, str]], name: str, channel: str,
                default: Optional[int] = None) -> int:
    raw = lists.get(name, {}).get(channel)
    if raw is None:
        if default is not None:
            return default
        raise MalformedMapping(f"Config error ({channel}): no {name} value given", channel)
    value = _atoi(raw)
    if value is None:
        raise MalformedMapping(
            f"Config error ({channel}): {name} value {raw!r} is not an integer", channel
        )
    return value


def parse(text: str, max_mappings: int = MAX_MAPPINGS) -> Configuration:
    settings = _read_settings(text)

    interval = _atoi(settings.get("INTERVAL", ""))
    missing = [key for key in MANDATORY_LISTS if key not in settings]
    if interval is None or interval <= 0 or missing:
        raise MissingField("Some mandatory settings missing, please check your config file!")

    tokens = settings["FCTEMPS"].split()
    if not tokens:
        raise MissingField("FCTEMPS does not list any fan channel")

    lists = {
        name: _split_pairs(settings.get(name, ""))
        for name in ("FCFANS", "MINTEMP", "MAXTEMP", "MINSTART", "MINSTOP", "MINPWM", "MAXPWM")
    }

    mappings = []
    for token in tokens:
        if "=" not in token:
            raise MalformedMapping("Config error: FCTEMPS value is improperly formatted")
        channel, _, temp = token.partition("=")
        fan = lists["FCFANS"].get(channel) or None
        mappings.append(Mapping(
            pwm=channel,
            temp=temp,
            fan=fan,
            min_temp=_lookup_int(lists, "MINTEMP", channel),
            max_temp=_lookup_int(lists, "MAXTEMP", channel),
            min_start=_lookup_int(lists, "MINSTART", channel),
            min_stop=_lookup_int(lists, "MINSTOP", channel),
            min_pwm=_lookup_int(lists, "MINPWM", channel, default=0),
            max_pwm=_lookup_int(lists, "MAXPWM", channel, default=255),
        ))

    if len(mappings) > max_mappings:
        logger.warning(f"{len(mappings)} fan channels configured, more than the usual {max_mappings}")

    return Configuration(interval=interval, mappings=tuple(mappings))


def parse_device_hints(text: str) -> DeviceHints:
    settings = _read_settings(text)
    return DeviceHints(
        devpath=_split_pairs(settings.get("DEVPATH", "")),
        devname=_split_pairs(settings.get("DEVNAME", "")),
    )


def log_configuration(config: Configuration):
    logger.info("Common settings:")
    logger.info(f"  INTERVAL={config.interval}")
    for mapping in config.mappings:
        logger.info(f"Settings for {mapping.pwm}:")
        logger.info(f"  Depends on {mapping.temp}")
        logger.info(f"  Controls {mapping.fan}")
        logger.info(f"  MINTEMP={mapping.min_temp}")
        logger.info(f"  MAXTEMP={mapping.max_temp}")
        logger.info(f"  MINSTART={mapping.min_start}")
        logger.info(f"  MINSTOP={mapping.min_stop}")
        logger.info(f"  MINPWM={mapping.min_pwm}")
        logger.info(f"  MAXPWM={mapping.max_pwm}")


def load_config(path: Path) -> Tuple[Configuration, DeviceHints]:
    """Read, parse and validate ``path``; nothing is returned on any error."""
    logger.info(f"Loading configuration from {path}...")
    try:
        text = Path(path).read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Can't read configuration file: {e}") from e

    config = parse(text)
    log_configuration(config)
    return config, parse_device_hints(text)
