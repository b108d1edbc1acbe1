import abc
import logging
import os
import re
from pathlib import Path
from typing import Union

from .errors import FanIOError, NodeNotFoundError, NodeParseError

logger = logging.getLogger(__name__)

# sysfs attributes hold at most an int plus a newline
READ_SIZE = 12

_LEADING_INT = re.compile(rb"\s*([-+]?\d+)")


def enable_path_for(pwm_path: str) -> str:
    return pwm_path + "_enable"


class AttributeStore(abc.ABC):
    """Integer valued attribute files, addressed by path."""

    @abc.abstractmethod
    def read(self, path: str) -> int:
        pass

    @abc.abstractmethod
    def write(self, path: str, value: int):
        pass

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    def is_readable(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    def is_writable(self, path: str) -> bool:
        pass


class SysfsStore(AttributeStore):
    """Attribute files on disk, relative paths resolved against ``root``."""

    def __init__(self, root: Union[str, Path] = "/"):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def read(self, path: str) -> int:
        full = self._resolve(path)
        try:
            with open(full, "rb") as f:
                raw = f.read(READ_SIZE)
        except FileNotFoundError as e:
            raise NodeNotFoundError(f"{full} does not exist", path) from e
        except OSError as e:
            raise FanIOError(f"Failed to read {full}: {e}", path) from e

        match = _LEADING_INT.match(raw)
        if not match:
            raise NodeParseError(f"{full} does not hold an integer: {raw!r}", path)
        return int(match.group(1))

    def write(self, path: str, value: int):
        full = self._resolve(path)
        try:
            full.write_text(str(int(value)))
        except OSError as e:
            raise FanIOError(f"Failed to write {value} to {full}: {e}", path) from e

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def is_readable(self, path: str) -> bool:
        return os.access(self._resolve(path), os.R_OK)

    def is_writable(self, path: str) -> bool:
        return os.access(self._resolve(path), os.W_OK)
