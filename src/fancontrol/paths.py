import enum
import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from .config import Configuration, DeviceHints, Mapping
from .errors import MissingSysfsNode, RootNotFound, UnrecognizedRoot
from .hardware import AttributeStore

logger = logging.getLogger(__name__)

HWMON_DIR = Path("/sys/class/hwmon")
I2C_DIR = Path("/sys/bus/i2c/devices")

# i2c client names look like "0-0290"
_I2C_DEVICE = re.compile(r"^[0-9]+-")


class RootKind(enum.Enum):
    ABSOLUTE = "absolute"
    HWMON_CLASS = "hwmon"
    I2C_BUS = "i2c"


def classify_root(first_pwm_path: str) -> Optional[RootKind]:
    if first_pwm_path.startswith("/"):
        return RootKind.ABSOLUTE
    if first_pwm_path.startswith("hwmon"):
        return RootKind.HWMON_CLASS
    if _I2C_DEVICE.match(first_pwm_path):
        return RootKind.I2C_BUS
    return None


def resolve_root(first_pwm_path: str, hwmon_dir: Path = HWMON_DIR,
                 i2c_dir: Path = I2C_DIR) -> Tuple[RootKind, Path]:
    """Find the directory every configured attribute path is relative to."""
    kind = classify_root(first_pwm_path)
    if kind is None:
        raise UnrecognizedRoot(f"Invalid path to sensors: {first_pwm_path}")

    directory = {
        RootKind.ABSOLUTE: Path("/"),
        RootKind.HWMON_CLASS: Path(hwmon_dir),
        RootKind.I2C_BUS: Path(i2c_dir),
    }[kind]
    if not directory.is_dir():
        raise RootNotFound("No sensors found! (did you load the necessary modules?)")
    return kind, directory


def _drop_device_segment(path: Optional[str], device: str) -> Optional[str]:
    search = device + "/device/"
    if path is None or search not in path:
        return path
    fixed = path.replace(search, device + "/", 1)
    logger.info(f"Adjusting {path} -> {fixed}")
    return fixed


def fixup_legacy_paths(config: Configuration, hints: DeviceHints,
                       store: AttributeStore) -> Configuration:
    """Move attribute paths from the hard device to the class device.

    Some drivers moved their attributes from ``hwmonN/device/`` to
    ``hwmonN/``; a DEVPATH alias whose ``name`` attribute now sits on the
    class device gets its ``device`` segment dropped.
    """
    mappings = list(config.mappings)
    for device in hints.devpath:
        if not store.exists(f"{device}/name"):
            continue
        mappings = [
            replace(
                m,
                pwm=_drop_device_segment(m.pwm, device),
                temp=_drop_device_segment(m.temp, device),
                fan=_drop_device_segment(m.fan, device),
            )
            for m in mappings
        ]
    return replace(config, mappings=tuple(mappings))


def _missing_nodes(mapping: Mapping, store: AttributeStore) -> List[str]:
    missing = []
    if not store.is_writable(mapping.pwm):
        logger.error(f"File {mapping.pwm} doesn't exist or isn't writable")
        missing.append(mapping.pwm)
    for path in mapping.paths[1:]:
        if not store.is_readable(path):
            logger.error(f"File {path} doesn't exist")
            missing.append(path)
    return missing


def verify_attributes(config: Configuration, store: AttributeStore):
    missing = []
    for mapping in config.mappings:
        missing.extend(_missing_nodes(mapping, store))
    if missing:
        raise MissingSysfsNode(missing)
